"""
Audio primitives: chunks, utterances, loudness, WAV codec and chunk sources.

Samples travel as mono int16 numpy arrays. WAV encoding and decoding go
through soundfile. Device capture and playback live in palaver.devices.
"""

from __future__ import annotations

import io
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

import numpy as np
import soundfile as sf

from palaver.config import AudioConfig
from palaver.errors import DeviceError

INT16_SCALE = 32768.0


@dataclass
class AudioChunk:
    """Fixed-duration slice of one speaker's audio with its measured loudness."""

    samples: np.ndarray
    sample_rate: int
    loudness_db: float
    captured_at: float = field(default_factory=time.time)

    @property
    def duration_ms(self) -> float:
        return len(self.samples) * 1000.0 / self.sample_rate


@dataclass
class Utterance:
    """One continuous speech event for one user."""

    user_id: str
    audio: np.ndarray
    sample_rate: int
    duration_ms: float
    speech_ms: float
    created_at: float = field(default_factory=time.time)

    @property
    def duration_s(self) -> float:
        return self.duration_ms / 1000.0

    @property
    def pcm(self) -> bytes:
        """Signed 16-bit little-endian PCM."""
        return self.audio.astype("<i2").tobytes()


# =========================
# Signal helpers
# =========================

def pcm16_to_float32(pcm: Union[bytes, np.ndarray]) -> np.ndarray:
    """Convert signed 16-bit PCM to float32 in [-1, 1)."""
    if isinstance(pcm, (bytes, bytearray, memoryview)):
        pcm = np.frombuffer(pcm, dtype="<i2")
    return pcm.astype(np.float32) / INT16_SCALE


def loudness_db(samples: np.ndarray, method: str = "mean") -> float:
    """Loudness in dBFS; -inf for silence or an empty buffer."""
    if samples.size == 0:
        return -math.inf
    x = samples.astype(np.float64)
    if samples.dtype == np.int16:
        x = x / INT16_SCALE
    if method == "peak":
        level = float(np.max(np.abs(x)))
    else:
        level = float(np.sqrt(np.mean(np.square(x))))
    if level <= 0.0:
        return -math.inf
    return 20.0 * math.log10(level)


def resample_linear(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Linear interpolation resampling."""
    if from_rate == to_rate or samples.size == 0:
        return samples.astype(np.float32, copy=False)
    ratio = from_rate / to_rate
    out_len = int(math.floor(len(samples) / ratio))
    positions = np.arange(out_len, dtype=np.float64) * ratio
    return np.interp(positions, np.arange(len(samples)), samples).astype(np.float32)


def pcm_to_wav(pcm: Union[bytes, np.ndarray], sample_rate: int) -> bytes:
    """Wrap mono 16-bit PCM in a WAV container."""
    if isinstance(pcm, (bytes, bytearray, memoryview)):
        pcm = np.frombuffer(pcm, dtype="<i2")
    buf = io.BytesIO()
    sf.write(buf, pcm.astype(np.int16, copy=False), sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def wav_to_pcm(data: bytes) -> Tuple[np.ndarray, int]:
    """Decode a WAV payload to mono int16 samples and its sample rate."""
    samples, sample_rate = sf.read(io.BytesIO(data), dtype="int16")
    if samples.ndim > 1:
        samples = samples.mean(axis=1).astype(np.int16)
    return samples, sample_rate


def make_earcon(sample_rate: int = 16000, duration_ms: int = 100, frequency: int = 800) -> bytes:
    """Brief sine tone used as an audible cue, as WAV."""
    n = int(sample_rate * duration_ms / 1000)
    t = np.linspace(0, duration_ms / 1000, n, False)
    tone = np.sin(2 * np.pi * frequency * t) * 0.3  # 30% volume
    return pcm_to_wav((tone * 32767).astype(np.int16), sample_rate)


# =========================
# Chunk sources
# =========================

class AudioChunker:
    """Produces fixed-size chunks from one speaker's audio."""

    def __init__(self, cfg: AudioConfig):
        self.sample_rate = cfg.sample_rate
        self.chunk_samples = max(1, int(cfg.sample_rate * cfg.chunk_ms / 1000))
        self.loudness = cfg.loudness

    def _make_chunk(self, samples: np.ndarray) -> AudioChunk:
        return AudioChunk(samples, self.sample_rate, loudness_db(samples, self.loudness))

    @property
    def closed(self) -> bool:
        return False

    def record_chunk(self) -> AudioChunk:
        raise NotImplementedError

    def close(self) -> None:
        pass


class StreamChunker(AudioChunker):
    """Chunks PCM pushed by a transport for one user.

    Transports typically send nothing while a user is silent, so when no audio
    at all arrives within ``gap_timeout_s`` a chunk of zeros is returned. Once
    part of a chunk is buffered the reader waits up to ``grace_s`` more for the
    rest; only a stream that stalls mid-chunk is padded.
    """

    def __init__(self, cfg: AudioConfig, gap_timeout_s: Optional[float] = None, grace_s: Optional[float] = None):
        super().__init__(cfg)
        chunk_s = cfg.chunk_ms / 1000.0
        self.gap_timeout_s = chunk_s if gap_timeout_s is None else gap_timeout_s
        self.grace_s = chunk_s if grace_s is None else grace_s
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, pcm: bytes) -> None:
        with self._cond:
            if self._closed:
                return
            self._buffer.extend(pcm)
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def record_chunk(self) -> AudioChunk:
        need = self.chunk_samples * 2
        deadline = time.monotonic() + self.gap_timeout_s
        extended = False
        with self._cond:
            while len(self._buffer) < need and not self._closed:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    if not self._buffer or extended:
                        break
                    # late packets of ongoing speech
                    deadline += self.grace_s
                    extended = True
                    continue
                self._cond.wait(remaining)

            if self._closed and not self._buffer:
                raise DeviceError("audio stream closed")

            take = min(need, len(self._buffer) - len(self._buffer) % 2)
            raw = bytes(self._buffer[:take])
            del self._buffer[:take]

        samples = np.frombuffer(raw, dtype="<i2").astype(np.int16)
        if len(samples) < self.chunk_samples:
            samples = np.concatenate([samples, np.zeros(self.chunk_samples - len(samples), dtype=np.int16)])
        return self._make_chunk(samples)
