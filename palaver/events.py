"""Typed listener registration for cross-component notifications."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from palaver.config import log_event


class EventType(str, Enum):
    TRANSCRIPTION = "transcription"
    RESPONSE = "response"
    STATE_CHANGE = "state_change"
    ERROR = "error"


@dataclass
class VoiceEvent:
    type: EventType
    source: str  # channel id or call/loop name
    user_id: Optional[str] = None
    text: Optional[str] = None
    state: Optional[str] = None
    error: Optional[BaseException] = None
    metadata: Dict[str, object] = field(default_factory=dict)


Listener = Callable[[VoiceEvent], None]


class EventHub:
    """Delivers events to listeners in registration order, on the emitting thread.

    Every listener sees every event it registered for; a failing listener is
    logged and does not stop delivery to the others.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._listeners: Dict[EventType, List[Listener]] = {t: [] for t in EventType}
        self._lock = threading.Lock()

    def on(self, event_type: EventType, listener: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(listener)

    def off(self, event_type: EventType, listener: Listener) -> None:
        with self._lock:
            try:
                self._listeners[event_type].remove(listener)
            except ValueError:
                pass

    def emit(self, event: VoiceEvent) -> None:
        with self._lock:
            listeners = list(self._listeners[event.type])

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                log_event(self.logger, "listener_failed", {
                    "event": event.type.value,
                    "error": str(e),
                    "type": type(e).__name__,
                }, level=logging.ERROR)
