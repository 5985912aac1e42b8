"""Shared fakes for engine tests. No audio hardware, models or network."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

import numpy as np
import pytest

from palaver.audio import AudioChunk, AudioChunker, loudness_db
from palaver.config import AudioConfig, EngineConfig
from palaver.errors import DeviceError
from palaver.interfaces import AudioPlayer, ChannelTransport, ChatBackend, SpeechToText, TextToSpeech

RATE = 16000
CHUNK_MS = 100


def tone_chunk(ms: int = CHUNK_MS, amplitude: int = 8000, rate: int = RATE) -> AudioChunk:
    n = int(rate * ms / 1000)
    t = np.arange(n) / rate
    samples = (np.sin(2 * np.pi * 440 * t) * amplitude).astype(np.int16)
    return AudioChunk(samples, rate, loudness_db(samples))


def silent_chunk(ms: int = CHUNK_MS, rate: int = RATE) -> AudioChunk:
    samples = np.zeros(int(rate * ms / 1000), dtype=np.int16)
    return AudioChunk(samples, rate, loudness_db(samples))


class ListChunker(AudioChunker):
    """Replays a fixed list of chunks, then reports a closed stream."""

    def __init__(self, chunks: List[AudioChunk]):
        super().__init__(AudioConfig(sample_rate=RATE, chunk_ms=CHUNK_MS))
        self._chunks = list(chunks)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def record_chunk(self) -> AudioChunk:
        if not self._chunks:
            self._closed = True
            raise DeviceError("no more audio")
        return self._chunks.pop(0)


class FakeSTT(SpeechToText):
    def __init__(self, text: str = "", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls: List[Tuple[int, int, Optional[str]]] = []

    def transcribe(self, audio, sample_rate, language=None):
        self.calls.append((len(audio), sample_rate, language))
        if self.error is not None:
            raise self.error
        return self.text


class FakeTTS(TextToSpeech):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.texts: List[str] = []

    def synthesize(self, text):
        self.texts.append(text)
        if self.error is not None:
            raise self.error
        return b"RIFF" + text.encode()


class FakeBackend(ChatBackend):
    def __init__(self, reply="sure", delay_s: float = 0.0):
        self.reply = reply
        self.delay_s = delay_s
        self.calls: List[Tuple[str, str, float]] = []
        self.cancelled: List[str] = []
        self.usernames: Dict[str, str] = {}

    def chat(self, user_id, text, duration_s):
        self.calls.append((user_id, text, duration_s))
        if self.delay_s:
            time.sleep(self.delay_s)
        return self.reply(text) if callable(self.reply) else self.reply

    def cancel(self, user_id):
        self.cancelled.append(user_id)

    def set_username(self, user_id, username):
        self.usernames[user_id] = username


class FakePlayer(AudioPlayer):
    """Records what was played; each play lasts ``play_s`` unless stopped."""

    def __init__(self, play_s: float = 0.0):
        self.play_s = play_s
        self.played: List[bytes] = []
        self.stops = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def play(self, wav, stop_event):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.played.append(wav)
            stop_event.wait(self.play_s)
        finally:
            with self._lock:
                self.active -= 1

    def stop(self):
        self.stops += 1


class FakeTransport(ChannelTransport):
    def __init__(self, channel_id: str = "chan-1", members=None, owner_id: Optional[str] = None, play_s: float = 0.0):
        self.channel_id = channel_id
        self.owner_id = owner_id
        self._members = list(members or [])
        self.player = FakePlayer(play_s)
        self.opened: List[str] = []
        self.closed: List[str] = []

    def members(self):
        return list(self._members)

    def open_user_stream(self, user_id):
        self.opened.append(user_id)
        return ListChunker([])

    def close_user_stream(self, user_id):
        self.closed.append(user_id)

    def play(self, wav, stop_event):
        self.player.play(wav, stop_event)

    def stop(self):
        self.player.stop()


def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture()
def logger():
    return logging.getLogger("test_palaver")


@pytest.fixture()
def engine_config():
    return EngineConfig.from_dict({
        "audio": {"sample_rate": RATE, "chunk_ms": CHUNK_MS},
        "triggers": {"phrases": ["hey bot", "ok bot"]},
        "response": {"timeout_s": 2.0},
        "call": {"connect_timeout_s": 0.2, "retry_delay_s": 0.01},
        "vad": {"device_retry_s": 0.0},
    })
