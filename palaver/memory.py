"""Short per-user conversation history."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from palaver.config import MemoryConfig


@dataclass
class MemoryMessage:
    role: str  # "user" | "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class _UserMemory:
    messages: Deque[MemoryMessage]
    last_activity: float = field(default_factory=time.time)


class ConversationMemory:
    """Keeps the last N messages per user; histories expire after inactivity."""

    def __init__(self, cfg: MemoryConfig, logger: logging.Logger, clock=time.time):
        self.max_messages = cfg.max_messages
        self.ttl_s = cfg.ttl_minutes * 60
        self.logger = logger
        self._clock = clock
        self._store: Dict[str, _UserMemory] = {}
        self._lock = threading.Lock()

    def add_message(self, user_id: str, role: str, content: str) -> None:
        now = self._clock()
        with self._lock:
            self._cleanup(now)
            memory = self._store.get(user_id)
            if memory is None:
                memory = _UserMemory(deque(maxlen=self.max_messages), now)
                self._store[user_id] = memory
            memory.messages.append(MemoryMessage(role, content, now))
            memory.last_activity = now
            count = len(memory.messages)
        self.logger.debug("memory_add %s", json.dumps({"user": user_id, "role": role, "total": count}))

    def get_history(self, user_id: str) -> List[MemoryMessage]:
        now = self._clock()
        with self._lock:
            memory = self._store.get(user_id)
            if memory is None:
                return []
            if now - memory.last_activity > self.ttl_s:
                del self._store[user_id]
                return []
            return list(memory.messages)

    def clear(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._store.clear()
            else:
                self._store.pop(user_id, None)

    def format_context(self, user_id: str) -> str:
        lines = []
        for msg in self.get_history(user_id):
            prefix = "User" if msg.role == "user" else "Assistant"
            lines.append(f"{prefix}: {msg.content}")
        return "\n".join(lines)

    def _cleanup(self, now: float) -> None:
        expired = [uid for uid, m in self._store.items() if now - m.last_activity > self.ttl_s]
        for uid in expired:
            del self._store[uid]
        if expired:
            self.logger.debug("memory_expired %s", json.dumps({"count": len(expired)}))
