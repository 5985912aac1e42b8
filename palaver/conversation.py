"""
Single-party conversation: a listen / transcribe / respond / speak loop, and
the call lifecycle that runs it once the remote side is connected.
"""

from __future__ import annotations

import json
import logging
import threading
from enum import Enum
from typing import Callable, Optional

from palaver.audio import AudioChunker
from palaver.config import EngineConfig, log_event
from palaver.events import EventHub, EventType, VoiceEvent
from palaver.interfaces import AudioPlayer, CallSignaling, SpeechToText, TextToSpeech
from palaver.segmenter import UtteranceSegmenter

ResponseCallback = Callable[[str], str]


class ConversationState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    CONNECTED = "connected"
    HANGING_UP = "hanging-up"


class CallOutcome(str, Enum):
    CONNECTED = "connected"
    NO_ANSWER = "no_answer"
    FAILED = "failed"
    INVALID_STATE = "invalid_state"


# =========================
# Conversation loop
# =========================

class ConversationLoop:
    """Continuous listen -> transcribe -> respond -> speak loop on one audio source.

    Errors inside an iteration are logged and reported as ``error`` events;
    the loop waits ``call.retry_delay_s`` and carries on.
    """

    def __init__(
        self,
        config: EngineConfig,
        logger: logging.Logger,
        chunker: AudioChunker,
        stt: SpeechToText,
        tts: TextToSpeech,
        player: AudioPlayer,
        events: Optional[EventHub] = None,
        response_callback: Optional[ResponseCallback] = None,
        name: str = "conversation",
    ):
        self.config = config
        self.logger = logger
        self.chunker = chunker
        self.stt = stt
        self.tts = tts
        self.player = player
        self.events = events or EventHub(logger)
        self.response_callback = response_callback
        self.name = name

        self.language = config.call.language or config.stt.language
        self.retry_delay_s = config.call.retry_delay_s
        self.min_chars = config.triggers.min_transcript_chars
        self.hallucinations = tuple(p.lower() for p in config.call.hallucination_phrases)
        self.segmenter = UtteranceSegmenter(config.vad, logger)

        self._state = ConversationState.IDLE
        self._running = False
        self._halt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    # --- lifecycle

    def start(self) -> None:
        if self._running:
            self.logger.warning("loop_already_running %s", json.dumps({"loop": self.name}))
            return
        self._running = True
        self._halt.clear()
        self._set_state(ConversationState.LISTENING)
        self._thread = threading.Thread(target=self._run, name=f"palaver-{self.name}", daemon=True)
        self._thread.start()
        log_event(self.logger, "loop_start", {"loop": self.name, "language": self.language})

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._halt.set()
        self.player.stop()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)
        self._thread = None
        self._set_state(ConversationState.IDLE)
        log_event(self.logger, "loop_stop", {"loop": self.name})

    def _run(self) -> None:
        while self._running:
            try:
                self.run_once()
            except Exception as e:
                if not self._running:
                    break
                self.logger.error("loop_error %s", json.dumps({
                    "loop": self.name, "error": str(e), "type": type(e).__name__
                }))
                self._emit(EventType.ERROR, error=e)
                # Brief pause before retry
                self._halt.wait(self.retry_delay_s)
            if self.chunker.closed and self._running:
                log_event(self.logger, "loop_source_closed", {"loop": self.name})
                self._running = False
                self._set_state(ConversationState.IDLE)

    # --- one turn

    def run_once(self) -> Optional[str]:
        """Listen for one utterance and answer it. Returns the accepted transcript."""
        self._set_state(ConversationState.LISTENING)
        transcript = self._listen()
        if not transcript or self._halt.is_set():
            return None

        self._emit(EventType.TRANSCRIPTION, text=transcript)

        if self.response_callback is not None:
            try:
                response = self.response_callback(transcript)
            except Exception as e:
                self.logger.error("response_callback_failed %s", json.dumps({"loop": self.name, "error": str(e)}))
                self._emit(EventType.ERROR, error=e)
                return transcript
            if response and not self._halt.is_set():
                self.speak(response)
        return transcript

    def listen_once(self) -> Optional[str]:
        """Wait for a single utterance and return its transcript, or None."""
        prev = self._state
        try:
            return self._listen()
        finally:
            self._set_state(prev if self._running else ConversationState.IDLE)

    def _listen(self) -> Optional[str]:
        self._set_state(ConversationState.LISTENING)
        utterance = self.segmenter.collect(self.chunker, self.name, lambda: not self._halt.is_set())
        if utterance is None:
            return None

        self._set_state(ConversationState.PROCESSING)
        text = self.stt.transcribe(utterance.audio, utterance.sample_rate, language=self.language).strip()
        if self.is_hallucination(text):
            self.logger.debug("hallucination_filtered %s", json.dumps({"loop": self.name, "text": text}))
            return None

        self.logger.info("transcription %s", json.dumps({
            "loop": self.name, "text": text, "duration_s": round(utterance.duration_s, 2)
        }))
        return text

    def speak(self, text: str) -> None:
        prev = self._state
        self._set_state(ConversationState.SPEAKING)
        try:
            wav = self.tts.synthesize(text)
            if wav:
                self.player.play(wav, self._halt)
            self._emit(EventType.RESPONSE, text=text)
        finally:
            if self._running:
                self._set_state(ConversationState.LISTENING if prev is ConversationState.SPEAKING else prev)

    def is_hallucination(self, text: Optional[str]) -> bool:
        """Known recognizer artefacts, too-short text and one word repeated."""
        if not text:
            return True

        lower = text.strip().lower()
        if len(lower) < max(self.min_chars, 1):
            return True

        if any(pattern in lower for pattern in self.hallucinations):
            return True

        # "Yeah. Yeah. Yeah."
        words = lower.split()
        if len(words) >= 3 and len(set(words)) == 1:
            return True

        return False

    # --- events

    def _set_state(self, state: ConversationState) -> None:
        prev = self._state
        self._state = state
        if prev is not state:
            self.logger.debug("loop_state %s", json.dumps({"loop": self.name, "from": prev.value, "to": state.value}))
            self._emit(EventType.STATE_CHANGE, state=state.value)

    def _emit(self, event_type: EventType, **kwargs) -> None:
        self.events.emit(VoiceEvent(event_type, self.name, **kwargs))


# =========================
# Call lifecycle
# =========================

class CallSession:
    """One-to-one call: idle -> calling/ringing -> connected -> hanging-up -> idle."""

    def __init__(
        self,
        config: EngineConfig,
        logger: logging.Logger,
        signaling: CallSignaling,
        loop: ConversationLoop,
        events: Optional[EventHub] = None,
    ):
        self.config = config
        self.logger = logger
        self.signaling = signaling
        self.loop = loop
        self.events = events or loop.events
        self.connect_timeout_s = config.call.connect_timeout_s
        self._state = CallState.IDLE
        self._lock = threading.RLock()

    @property
    def state(self) -> CallState:
        return self._state

    def start_call(self, user_id: Optional[str] = None) -> CallOutcome:
        target = user_id or self.config.call.target_user_id
        with self._lock:
            if self._state is not CallState.IDLE:
                self.logger.warning("call_invalid_state %s", json.dumps({"op": "start", "state": self._state.value}))
                return CallOutcome.INVALID_STATE
            if not target:
                self.logger.error("call_failed %s", json.dumps({"reason": "no target user"}))
                return CallOutcome.FAILED
            self._set_state(CallState.CALLING)

        log_event(self.logger, "call_dialing", {"user": target})
        try:
            if not self.signaling.dial(target):
                self._set_state(CallState.IDLE)
                return CallOutcome.FAILED
        except Exception as e:
            return self._fail("start", e)
        return self._await_connection()

    def answer_call(self) -> CallOutcome:
        with self._lock:
            if self._state not in (CallState.IDLE, CallState.RINGING):
                self.logger.warning("call_invalid_state %s", json.dumps({"op": "answer", "state": self._state.value}))
                return CallOutcome.INVALID_STATE
            self._set_state(CallState.RINGING)

        try:
            if not self.signaling.answer():
                self._set_state(CallState.IDLE)
                return CallOutcome.FAILED
        except Exception as e:
            return self._fail("answer", e)
        return self._await_connection()

    def _await_connection(self) -> CallOutcome:
        try:
            connected = self.signaling.wait_for_connection(self.connect_timeout_s)
        except Exception as e:
            return self._fail("connect", e)

        with self._lock:
            if self._state not in (CallState.CALLING, CallState.RINGING):
                # hung up while waiting
                return CallOutcome.FAILED
            if not connected:
                self.logger.warning("call_no_answer %s", json.dumps({"timeout_s": self.connect_timeout_s}))
                self._end_external_call()
                self._set_state(CallState.IDLE)
                return CallOutcome.NO_ANSWER
            self._set_state(CallState.CONNECTED)

        self.loop.start()
        log_event(self.logger, "call_connected", {"loop": self.loop.name})
        return CallOutcome.CONNECTED

    def hang_up(self) -> None:
        with self._lock:
            if self._state in (CallState.IDLE, CallState.HANGING_UP):
                return
            self._set_state(CallState.HANGING_UP)

        self.loop.stop()
        self.loop.player.stop()
        self._end_external_call()
        self._set_state(CallState.IDLE)
        log_event(self.logger, "call_ended", {})

    def speak(self, text: str) -> bool:
        if self._state is not CallState.CONNECTED:
            self.logger.warning("call_not_connected %s", json.dumps({"op": "speak"}))
            return False
        self.loop.speak(text)
        return True

    def _end_external_call(self) -> None:
        try:
            self.signaling.hang_up()
        except Exception as e:
            self.logger.error("call_hangup_failed %s", json.dumps({"error": str(e)}))

    def _fail(self, op: str, error: Exception) -> CallOutcome:
        self.logger.error("call_failed %s", json.dumps({"op": op, "error": str(error), "type": type(error).__name__}))
        self._end_external_call()
        self._set_state(CallState.IDLE)
        self.events.emit(VoiceEvent(EventType.ERROR, "call", error=error))
        return CallOutcome.FAILED

    def _set_state(self, state: CallState) -> None:
        prev = self._state
        self._state = state
        if prev is not state:
            self.logger.info("call_state %s", json.dumps({"from": prev.value, "to": state.value}))
            self.events.emit(VoiceEvent(EventType.STATE_CHANGE, "call", state=state.value))
