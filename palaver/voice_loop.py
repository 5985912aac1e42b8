#!/usr/bin/env python3
"""
Palaver local voice loop.

Runs the engine against the default microphone and speakers as a channel with
a single member, using faster-whisper, piper and a local Ollama server.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import List, Optional, Tuple

from palaver.audio import AudioChunker
from palaver.backends import OllamaBackend
from palaver.config import AudioConfig, ensure_logger, load_config, log_event, now_iso
from palaver.devices import DeviceChunker, SoundDevicePlayer
from palaver.errors import PalaverError
from palaver.events import EventType, VoiceEvent
from palaver.interfaces import ChannelTransport
from palaver.memory import ConversationMemory
from palaver.session import SessionOrchestrator
from palaver.speech import FasterWhisperSTT, PiperTTS
from palaver.wakeword import WakeWordModels, fetch_models

LOCAL_USER = "local"


class LocalTransport(ChannelTransport):
    """The machine's own input and output device as a one-member channel."""

    channel_id = "local"

    def __init__(self, cfg: AudioConfig, logger: logging.Logger, username: str = "you"):
        self.cfg = cfg
        self.logger = logger
        self.username = username
        self.owner_id = LOCAL_USER
        self.player = SoundDevicePlayer(logger)
        self._chunker: Optional[DeviceChunker] = None

    def members(self) -> List[Tuple[str, str]]:
        return [(LOCAL_USER, self.username)]

    def open_user_stream(self, user_id: str) -> AudioChunker:
        if self._chunker is None:
            self._chunker = DeviceChunker(self.cfg, self.logger)
        return self._chunker

    def close_user_stream(self, user_id: str) -> None:
        if self._chunker is not None:
            self._chunker.close()
            self._chunker = None

    def play(self, wav: bytes, stop_event: threading.Event) -> None:
        self.player.play(wav, stop_event)

    def stop(self) -> None:
        self.player.stop()


def _print_event(event: VoiceEvent) -> None:
    if event.type is EventType.TRANSCRIPTION:
        print(f"you> {event.text}", flush=True)
    elif event.type is EventType.RESPONSE:
        print(f"bot> {event.text}", flush=True)


def main():
    """Main entry point."""
    cfg = load_config()
    logger, log_path = ensure_logger(cfg.logging)

    log_event(logger, "boot", {
        "log_file": log_path,
        "time": now_iso(),
        "mode": cfg.mode.value,
        "wake": cfg.wake.provider,
        "stt": cfg.stt.model,
        "llm": cfg.llm.model,
    })

    orchestrator = None
    try:
        wake_models = None
        if cfg.wake.provider == "openwakeword":
            if not WakeWordModels.is_available(cfg.wake):
                fetch_models(cfg.wake.model_path, cfg.wake.keywords, logger)
            wake_models = WakeWordModels.load(cfg.wake, logger)

        memory = ConversationMemory(cfg.memory, logger)
        orchestrator = SessionOrchestrator(
            cfg,
            logger,
            stt=FasterWhisperSTT(cfg.stt, logger),
            tts=PiperTTS(cfg.tts, logger),
            backend=OllamaBackend(cfg.llm, memory, logger),
            wake_models=wake_models,
        )
        orchestrator.events.on(EventType.TRANSCRIPTION, _print_event)
        orchestrator.events.on(EventType.RESPONSE, _print_event)
        orchestrator.start(LocalTransport(cfg.audio, logger))

        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("shutdown_requested %s", json.dumps({"reason": "keyboard_interrupt"}))
    except PalaverError as e:
        logger.error("fatal_error %s", json.dumps({
            "error": str(e),
            "type": type(e).__name__
        }))
        raise
    finally:
        if orchestrator is not None:
            orchestrator.shutdown()


if __name__ == "__main__":
    main()
