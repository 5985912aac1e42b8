"""Per-channel response queue with a single exclusive playback slot."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

Handler = Callable[[], None]


@dataclass
class QueuedResponse:
    user_id: str
    username: str
    text: str
    timestamp: float = field(default_factory=time.time)
    priority: int = 0  # lower plays sooner


class ResponseQueue:
    """Queue of spoken responses for one output channel.

    Holds at most one entry per user (the latest replaces earlier ones) and at
    most one response in the playing slot. Ready listeners are told when
    something can be played; interrupt handlers are told to stop the current
    playback. Handlers run outside the queue lock.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._queue: List[QueuedResponse] = []
        self._playing = False
        self._current: Optional[QueuedResponse] = None
        self._lock = threading.RLock()
        self._ready_listeners: List[Handler] = []
        self._interrupt_handlers: List[Handler] = []

    # --- registration

    def on_ready(self, listener: Handler) -> None:
        self._ready_listeners.append(listener)

    def on_interrupt(self, handler: Handler) -> None:
        if handler not in self._interrupt_handlers:
            self._interrupt_handlers.append(handler)

    def off_interrupt(self, handler: Handler) -> None:
        if handler in self._interrupt_handlers:
            self._interrupt_handlers.remove(handler)

    # --- queue operations

    def enqueue(self, response: QueuedResponse) -> None:
        """Add a response, replacing any queued one from the same user."""
        with self._lock:
            self._queue = [r for r in self._queue if r.user_id != response.user_id]
            self._queue.append(response)
            # list.sort is stable
            self._queue.sort(key=lambda r: (r.priority, r.timestamp))
            signal = not self._playing
            queued = len(self._queue)

        self.logger.debug("response_queued %s", json.dumps({
            "user": response.user_id, "queue": queued, "priority": response.priority
        }))
        if signal:
            self._signal_ready()

    def dequeue(self) -> Optional[QueuedResponse]:
        with self._lock:
            if not self._queue:
                return None
            response = self._queue.pop(0)
            self._current = response
            return response

    def start_next(self) -> Optional[QueuedResponse]:
        """Atomically take the head and mark it playing; None when busy or empty."""
        with self._lock:
            if self._playing or not self._queue:
                return None
            response = self.dequeue()
            self._playing = True
            return response

    def mark_complete(self) -> None:
        with self._lock:
            if self._current is not None:
                self.logger.debug("response_complete %s", json.dumps({"user": self._current.user_id}))
            self._current = None
            self._playing = False
            signal = bool(self._queue)
        if signal:
            self._signal_ready()

    def cancel_user(self, user_id: str) -> bool:
        """Drop the user's queued response, or interrupt it when it is playing."""
        with self._lock:
            before = len(self._queue)
            self._queue = [r for r in self._queue if r.user_id != user_id]
            if len(self._queue) < before:
                self.logger.debug("response_cancelled %s", json.dumps({"user": user_id}))
                return True
            playing_user = self._playing and self._current is not None and self._current.user_id == user_id

        if playing_user:
            self.logger.debug("response_interrupt %s", json.dumps({"user": user_id}))
            self._trigger_interrupt()
            return True
        return False

    def cancel_all(self) -> None:
        with self._lock:
            dropped = len(self._queue)
            self._queue = []
            playing = self._playing

        if dropped:
            self.logger.debug("responses_cancelled %s", json.dumps({"count": dropped}))
        if playing:
            self._trigger_interrupt()

    # --- inspection

    @property
    def playing(self) -> bool:
        return self._playing

    @property
    def current(self) -> Optional[QueuedResponse]:
        return self._current

    def __len__(self) -> int:
        return len(self._queue)

    def is_empty(self) -> bool:
        return not self._queue

    def snapshot(self) -> List[QueuedResponse]:
        with self._lock:
            return list(self._queue)

    # --- signalling

    def _signal_ready(self) -> None:
        for listener in list(self._ready_listeners):
            try:
                listener()
            except Exception as e:
                self.logger.error("ready_listener_failed %s", json.dumps({"error": str(e)}))

    def _trigger_interrupt(self) -> None:
        for handler in list(self._interrupt_handlers):
            try:
                handler()
            except Exception as e:
                self.logger.error("interrupt_handler_failed %s", json.dumps({"error": str(e)}))
