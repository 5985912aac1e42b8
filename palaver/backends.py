"""Conversation backend talking to a local Ollama server."""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from typing import Dict, Optional

import requests

from palaver.config import LLMConfig, log_event
from palaver.errors import ProviderError
from palaver.interfaces import ChatBackend
from palaver.memory import ConversationMemory


class OllamaBackend(ChatBackend):
    """Per-user chat over /api/generate with short conversation memory."""

    name = "ollama"

    def __init__(self, cfg: LLMConfig, memory: ConversationMemory, logger: logging.Logger,
                 session: Optional[requests.Session] = None):
        self.model = cfg.model
        self.host = cfg.host.rstrip("/")
        self.timeout = cfg.timeout_s
        self.system_prompt = cfg.system_prompt.strip()
        self.memory = memory
        self.logger = logger
        self.session = session or requests.Session()
        self._usernames: Dict[str, str] = {}
        self._pending: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

        log_event(logger, "backend_ready", {"model": self.model, "host": self.host})

    def set_username(self, user_id: str, username: str) -> None:
        self._usernames[user_id] = username

    def chat(self, user_id: str, text: str, duration_s: float) -> str:
        t0 = time.time()
        cancelled = threading.Event()
        with self._lock:
            previous = self._pending.get(user_id)
            if previous is not None:
                previous.set()
            self._pending[user_id] = cancelled

        context = self.memory.format_context(user_id)
        prompt = self._build_prompt(text, context, self._usernames.get(user_id, user_id))

        try:
            response = self._call_ollama(prompt)
        except requests.Timeout:
            self.logger.warning("backend_timeout %s", json.dumps({"user": user_id, "timeout_s": self.timeout}))
            return ""
        except requests.RequestException as e:
            raise ProviderError(self.name, str(e)) from e
        finally:
            with self._lock:
                if self._pending.get(user_id) is cancelled:
                    del self._pending[user_id]

        if cancelled.is_set():
            self.logger.info("backend_reply_dropped %s", json.dumps({"user": user_id, "reason": "cancelled"}))
            return ""

        response = self._strip_reasoning_tags(response)
        # only completed turns enter the history
        if response:
            self.memory.add_message(user_id, "user", text)
            self.memory.add_message(user_id, "assistant", response)

        self.logger.info("backend_done %s", json.dumps({
            "user": user_id,
            "chars": len(response),
            "speech_s": round(duration_s, 2),
            "ms": int((time.time() - t0) * 1000),
        }))
        return response

    def cancel(self, user_id: str) -> None:
        with self._lock:
            event = self._pending.pop(user_id, None)
        if event is not None:
            event.set()
            self.logger.debug("backend_cancel %s", json.dumps({"user": user_id}))

    def _strip_reasoning_tags(self, text: str) -> str:
        """Remove <think>...</think> reasoning blocks."""
        text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL)
        text = re.sub(r"\n\s*\n", "\n", text)
        return text.strip()

    def _build_prompt(self, prompt: str, context: str, username: str) -> str:
        parts = []

        if self.system_prompt:
            parts.append(f"System: {self.system_prompt}")

        if context:
            parts.append(f"Conversation history:\n{context}")

        parts.append(f"User ({username}): {prompt}")
        parts.append("Assistant:")

        return "\n\n".join(parts)

    def _call_ollama(self, prompt: str) -> str:
        url = f"{self.host}/api/generate"
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": 0.7,
                "top_p": 0.9,
                "top_k": 40
            }
        }

        resp = self.session.post(url, json=payload, timeout=self.timeout)
        resp.raise_for_status()

        data = resp.json()
        return data.get("response", "").strip()
