"""
Collaborator interfaces consumed by the engine.

Concrete speech, synthesis, response and transport backends live outside the
core; palaver.speech, palaver.backends and palaver.devices carry reference adapters.
"""

from __future__ import annotations

import threading
from typing import List, Optional, Tuple

import numpy as np

from palaver.audio import AudioChunker


class SpeechToText:
    name = "stt"

    def transcribe(self, audio: np.ndarray, sample_rate: int, language: Optional[str] = None) -> str:
        """Transcribe mono int16 audio. Raises ProviderError on failure."""
        raise NotImplementedError


class TextToSpeech:
    name = "tts"

    def synthesize(self, text: str) -> bytes:
        """Return WAV bytes for ``text``. Raises ProviderError on failure."""
        raise NotImplementedError


class ChatBackend:
    name = "backend"

    def chat(self, user_id: str, text: str, duration_s: float) -> str:
        """Reply to one turn. An empty string means no reply."""
        raise NotImplementedError

    def cancel(self, user_id: str) -> None:
        """Drop any pending request for ``user_id``. Must be idempotent."""

    def set_username(self, user_id: str, username: str) -> None:
        pass


class AudioPlayer:
    def play(self, wav: bytes, stop_event: threading.Event) -> None:
        """Play WAV bytes, returning early once ``stop_event`` is set."""
        raise NotImplementedError

    def stop(self) -> None:
        pass


class ChannelTransport(AudioPlayer):
    """Raw audio transport for one shared channel.

    Delivers decoded per-user audio through chunkers and accepts the single
    outbound stream for the channel.
    """

    channel_id: str = ""
    owner_id: Optional[str] = None

    def members(self) -> List[Tuple[str, str]]:
        """(user_id, display_name) for everyone currently in the channel."""
        raise NotImplementedError

    def open_user_stream(self, user_id: str) -> AudioChunker:
        raise NotImplementedError

    def close_user_stream(self, user_id: str) -> None:
        pass


class CallSignaling:
    """External call control for a one-to-one call."""

    def dial(self, user_id: str) -> bool:
        raise NotImplementedError

    def answer(self) -> bool:
        raise NotImplementedError

    def wait_for_connection(self, timeout_s: float) -> bool:
        """True once the remote side is connected, False on timeout."""
        raise NotImplementedError

    def hang_up(self) -> None:
        raise NotImplementedError
