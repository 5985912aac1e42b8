"""Local audio devices through sounddevice."""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Optional

import numpy as np
import sounddevice as sd

from palaver.audio import AudioChunk, AudioChunker, wav_to_pcm
from palaver.config import AudioConfig, log_event
from palaver.errors import DeviceError
from palaver.interfaces import AudioPlayer


class DeviceChunker(AudioChunker):
    """Records fixed-size chunks from a local input device."""

    def __init__(self, cfg: AudioConfig, logger: logging.Logger):
        super().__init__(cfg)
        self.device = cfg.input_device
        self.logger = logger
        self._stream: Optional[sd.InputStream] = None

    def _open(self) -> sd.InputStream:
        if self._stream is None:
            try:
                stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=1,
                    dtype="int16",
                    blocksize=self.chunk_samples,
                    device=self.device,
                )
                stream.start()
            except (sd.PortAudioError, ValueError) as e:
                raise DeviceError(f"cannot open input device {self.device}: {e}") from e
            self._stream = stream
            log_event(self.logger, "capture_open", {"device": self.device, "rate": self.sample_rate})
        return self._stream

    def record_chunk(self) -> AudioChunk:
        stream = self._open()
        try:
            data, overflowed = stream.read(self.chunk_samples)
        except sd.PortAudioError as e:
            self.close()
            raise DeviceError(f"capture failed: {e}") from e
        if overflowed:
            self.logger.debug("capture_overflow %s", json.dumps({"device": self.device}))
        # sounddevice returns [N, 1] even with channels=1
        return self._make_chunk(np.asarray(data).reshape(-1).astype(np.int16))

    def close(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as e:
                self.logger.warning("capture_close_failed %s", json.dumps({"error": str(e)}))
            self._stream = None


class SoundDevicePlayer(AudioPlayer):
    """Plays WAV payloads on the default output, interruptible."""

    def __init__(self, logger: logging.Logger, device: Optional[int] = None, poll_s: float = 0.05):
        self.logger = logger
        self.device = device
        self.poll_s = poll_s
        self._lock = threading.Lock()

    def play(self, wav: bytes, stop_event: threading.Event) -> None:
        samples, sample_rate = wav_to_pcm(wav)
        if samples.size == 0:
            return
        duration = len(samples) / sample_rate

        with self._lock:
            t0 = time.time()
            try:
                sd.play(samples, sample_rate, device=self.device)
            except sd.PortAudioError as e:
                raise DeviceError(f"playback failed: {e}") from e

            # Poll for interrupt instead of blocking wait
            while time.time() - t0 < duration:
                if stop_event.is_set():
                    sd.stop()
                    log_event(self.logger, "playback_interrupted", {
                        "played_ms": int((time.time() - t0) * 1000),
                        "total_ms": int(duration * 1000),
                    })
                    return
                time.sleep(self.poll_s)
            sd.wait()

    def stop(self) -> None:
        sd.stop()
