"""
Multi-speaker dispatch for shared voice channels.

Each member of a channel gets a capture worker that segments their audio into
utterances and starts a turn thread for each one, numbered in the order the
speech ended. A turn that is overtaken by a later one from the same speaker
is dropped. An utterance passes the gate (wake word cascade, transcript
trigger phrase, or nothing in free mode), the transcript filters, and the
interrupt policy before the backend is asked for a reply. Replies go through
the channel's ResponseQueue, whose playback worker is the only thing that
writes to the channel's output.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Pattern

from palaver.audio import AudioChunker, Utterance, make_earcon
from palaver.config import EngineConfig, VoiceMode, log_event
from palaver.errors import ConfigError, PalaverError
from palaver.events import EventHub, EventType, VoiceEvent
from palaver.interfaces import ChannelTransport, ChatBackend, SpeechToText, TextToSpeech
from palaver.response_queue import QueuedResponse, ResponseQueue
from palaver.segmenter import UtteranceSegmenter
from palaver.wakeword import WakeWordCascade, WakeWordModels

# Outcomes reported by handle_utterance
QUEUED = "queued"
NO_RESPONSE = "no_response"
CANCELLED = "cancelled"
STOPPED = "stop"
IGNORED = "ignored"
TOO_SHORT = "too_short"
NO_WAKE_WORD = "no_wake_word"
NO_TRIGGER = "no_trigger"
NOT_ALLOWED = "not_allowed"
UNKNOWN = "unknown"
FAILED = "error"


# =========================
# Transcript helpers
# =========================

def compile_phrases(phrases: Iterable[str]) -> Optional[Pattern]:
    """Word-bounded, case-insensitive alternation of ``phrases``."""
    parts = [re.escape(p.strip()) for p in phrases if p.strip()]
    if not parts:
        return None
    # Longest first so "hey bot please" wins over "hey bot"
    parts.sort(key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(parts) + r")\b", re.IGNORECASE)


def strip_phrases(text: str, pattern: Optional[Pattern]) -> str:
    if pattern is None:
        return text.strip()
    cleaned = pattern.sub(" ", text)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned.lstrip(",.!?;:- ").strip()


def should_ignore(text: str, ignore_phrases: Iterable[str]) -> bool:
    """Known recognizer false positives, matched case-insensitively."""
    normalized = text.strip().lower()
    return any(phrase.lower() in normalized for phrase in ignore_phrases)


def is_stop_command(text: str, pattern: Optional[Pattern]) -> bool:
    return pattern is not None and pattern.search(text) is not None


# =========================
# State
# =========================

@dataclass
class PendingRequest:
    user_id: str
    seq: int = 0
    started_at: float = field(default_factory=time.time)
    cancelled: threading.Event = field(default_factory=threading.Event)


@dataclass
class UserSession:
    user_id: str
    username: str
    last_activity: float = field(default_factory=time.time)
    request: Optional[PendingRequest] = None
    # utterance order: stamped when speech ends, raised when a transcript is accepted
    last_seq: int = 0
    accepted_seq: int = 0
    capture_stop: threading.Event = field(default_factory=threading.Event)
    capture_thread: Optional[threading.Thread] = None

    @property
    def is_processing(self) -> bool:
        return self.request is not None


@dataclass
class ChannelState:
    channel_id: str
    transport: ChannelTransport
    mode: VoiceMode
    queue: ResponseQueue
    owner_id: Optional[str] = None
    cascade: Optional[WakeWordCascade] = None
    cascade_lock: threading.Lock = field(default_factory=threading.Lock)
    sessions: Dict[str, UserSession] = field(default_factory=dict)
    ready: threading.Event = field(default_factory=threading.Event)
    playback_stop: threading.Event = field(default_factory=threading.Event)
    playback_thread: Optional[threading.Thread] = None
    running: bool = True
    lock: threading.RLock = field(default_factory=threading.RLock)


# =========================
# Orchestrator
# =========================

class SessionOrchestrator:
    """Runs every active channel. One instance serves any number of channels."""

    def __init__(
        self,
        config: EngineConfig,
        logger: logging.Logger,
        stt: SpeechToText,
        tts: TextToSpeech,
        backend: ChatBackend,
        wake_models: Optional[WakeWordModels] = None,
        events: Optional[EventHub] = None,
    ):
        self.config = config
        self.logger = logger
        self.stt = stt
        self.tts = tts
        self.backend = backend
        self.events = events or EventHub(logger)
        self.wake_models = wake_models

        self._triggers = compile_phrases(config.triggers.phrases)
        self._stops = compile_phrases(config.triggers.stop_phrases)
        self._channels: Dict[str, ChannelState] = {}
        self._lock = threading.Lock()
        self._earcon = make_earcon()

    @property
    def uses_wake_word(self) -> bool:
        return self.config.wake.provider != "none"

    # --- lifecycle

    def start(self, transport: ChannelTransport, mode: Optional[VoiceMode] = None, capture: bool = True) -> ChannelState:
        """Start serving ``transport``'s channel. Restarts it when already running."""
        mode = VoiceMode.parse(mode) if mode is not None else self.config.mode
        if not self.config.has_gate(mode):
            raise ConfigError(f"{mode.value} mode without a wake word provider needs at least one trigger phrase")
        channel_id = transport.channel_id
        if channel_id in self._channels:
            self.stop(channel_id)

        cascade = None
        if self.uses_wake_word and mode is not VoiceMode.FREE:
            if self.wake_models is None:
                # ModelLoadError propagates: the channel cannot run without its gate
                self.wake_models = WakeWordModels.load(self.config.wake, self.logger)
            cascade = WakeWordCascade(self.config.wake, self.logger, models=self.wake_models)
            cascade.initialize()

        channel = ChannelState(
            channel_id=channel_id,
            transport=transport,
            mode=mode,
            queue=ResponseQueue(self.logger),
            owner_id=transport.owner_id,
            cascade=cascade,
        )
        channel.queue.on_ready(channel.ready.set)
        channel.queue.on_interrupt(lambda: self._stop_playback(channel))

        with self._lock:
            self._channels[channel_id] = channel

        channel.playback_thread = threading.Thread(
            target=self._playback_worker, args=(channel,), name=f"palaver-playback-{channel_id}", daemon=True
        )
        channel.playback_thread.start()

        for user_id, username in transport.members():
            self.handle_user_join(channel_id, user_id, username, capture=capture)

        log_event(self.logger, "channel_started", {
            "channel": channel_id,
            "mode": mode.value,
            "gate": "wakeword" if cascade else ("none" if mode is VoiceMode.FREE else "trigger"),
            "members": len(channel.sessions),
        })
        self._emit_state(channel_id, "started")
        return channel

    def stop(self, channel_id: str) -> None:
        with self._lock:
            channel = self._channels.pop(channel_id, None)
        if channel is None:
            return

        channel.running = False
        self.interrupt_channel(channel)
        for user_id in list(channel.sessions):
            self._remove_session(channel, user_id)
        channel.ready.set()
        if channel.playback_thread is not None and channel.playback_thread is not threading.current_thread():
            channel.playback_thread.join(timeout=2.0)
        if channel.cascade is not None:
            channel.cascade.dispose()

        log_event(self.logger, "channel_stopped", {"channel": channel_id})
        self._emit_state(channel_id, "stopped")

    def shutdown(self) -> None:
        for channel_id in list(self._channels):
            self.stop(channel_id)

    # --- membership

    def handle_user_join(self, channel_id: str, user_id: str, username: Optional[str] = None, capture: bool = True) -> bool:
        channel = self._channels.get(channel_id)
        if channel is None:
            return False
        if not self.config.access.is_allowed(user_id, channel.owner_id):
            self.logger.debug("user_not_allowed %s", json.dumps({"channel": channel_id, "user": user_id}))
            return False

        with channel.lock:
            if user_id in channel.sessions:
                return True
            session = UserSession(user_id, username or user_id)
            channel.sessions[user_id] = session

        self.backend.set_username(user_id, session.username)
        if capture:
            chunker = channel.transport.open_user_stream(user_id)
            session.capture_thread = threading.Thread(
                target=self._capture_worker,
                args=(channel, session, chunker),
                name=f"palaver-capture-{user_id}",
                daemon=True,
            )
            session.capture_thread.start()

        log_event(self.logger, "user_joined", {"channel": channel_id, "user": user_id, "capture": capture})
        return True

    def handle_user_leave(self, channel_id: str, user_id: str) -> None:
        channel = self._channels.get(channel_id)
        if channel is None:
            return
        if self._remove_session(channel, user_id):
            log_event(self.logger, "user_left", {"channel": channel_id, "user": user_id})

    def _remove_session(self, channel: ChannelState, user_id: str) -> bool:
        with channel.lock:
            session = channel.sessions.pop(user_id, None)
        if session is None:
            return False
        session.capture_stop.set()
        self._cancel_request(session)
        channel.queue.cancel_user(user_id)
        channel.transport.close_user_stream(user_id)
        return True

    # --- interrupts

    def interrupt(self, channel_id: str, user_id: Optional[str] = None) -> None:
        """Stop one user's pending and playing work, or everything in the channel."""
        channel = self._channels.get(channel_id)
        if channel is None:
            return

        if user_id is not None:
            channel.queue.cancel_user(user_id)
            session = channel.sessions.get(user_id)
            if session is None or not self._cancel_request(session):
                self.backend.cancel(user_id)
            log_event(self.logger, "interrupted", {"channel": channel_id, "user": user_id})
        else:
            self.interrupt_channel(channel)
            log_event(self.logger, "interrupted", {"channel": channel_id, "user": None})

    def interrupt_channel(self, channel: ChannelState) -> None:
        self._stop_playback(channel)
        channel.queue.cancel_all()
        for session in list(channel.sessions.values()):
            self._cancel_request(session)

    def _cancel_request(self, session: UserSession) -> bool:
        request = session.request
        if request is None:
            return False
        session.request = None
        request.cancelled.set()
        self.backend.cancel(session.user_id)
        return True

    def _stop_playback(self, channel: ChannelState) -> None:
        channel.playback_stop.set()
        try:
            channel.transport.stop()
        except Exception as e:
            self.logger.warning("playback_stop_failed %s", json.dumps({"channel": channel.channel_id, "error": str(e)}))

    # --- queries

    def is_user_processing(self, channel_id: str, user_id: str) -> bool:
        channel = self._channels.get(channel_id)
        if channel is None:
            return False
        session = channel.sessions.get(user_id)
        return session is not None and session.is_processing

    def get_mode(self, channel_id: str) -> Optional[VoiceMode]:
        channel = self._channels.get(channel_id)
        return channel.mode if channel else None

    def get_channel(self, channel_id: str) -> Optional[ChannelState]:
        return self._channels.get(channel_id)

    # --- capture

    def _capture_worker(self, channel: ChannelState, session: UserSession, chunker: AudioChunker) -> None:
        min_speech = 0 if channel.mode is VoiceMode.FREE else None
        segmenter = UtteranceSegmenter(self.config.vad, self.logger, min_speech_ms=min_speech)

        def running() -> bool:
            return channel.running and not session.capture_stop.is_set()

        while running():
            try:
                utterance = segmenter.collect(chunker, session.user_id, running)
            except Exception as e:
                self.logger.error("capture_failed %s", json.dumps({
                    "channel": channel.channel_id, "user": session.user_id, "error": str(e)
                }))
                time.sleep(self.config.vad.device_retry_s)
                continue

            if utterance is None:
                if chunker.closed:
                    break
                continue

            seq = self._next_seq(channel, session)
            threading.Thread(
                target=self._dispatch_utterance,
                args=(channel.channel_id, utterance, seq),
                name=f"palaver-turn-{session.user_id}-{seq}",
                daemon=True,
            ).start()

        self.logger.debug("capture_stopped %s", json.dumps({"channel": channel.channel_id, "user": session.user_id}))

    def _next_seq(self, channel: ChannelState, session: UserSession) -> int:
        with channel.lock:
            session.last_seq += 1
            return session.last_seq

    def _dispatch_utterance(self, channel_id: str, utterance: Utterance, seq: int) -> None:
        try:
            self.handle_utterance(channel_id, utterance, seq)
        except Exception as e:
            self.logger.error("dispatch_failed %s", json.dumps({
                "channel": channel_id, "user": utterance.user_id, "error": str(e), "type": type(e).__name__
            }))

    # --- per-utterance pipeline

    def handle_utterance(self, channel_id: str, utterance: Utterance, seq: Optional[int] = None) -> str:
        """Run one finalized utterance through gate, filters and backend. Returns the outcome.

        ``seq`` orders a user's utterances by when their speech ended; callers that
        omit it get the next number on entry.
        """
        channel = self._channels.get(channel_id)
        user_id = utterance.user_id
        if channel is None or not channel.running:
            return UNKNOWN
        session = channel.sessions.get(user_id)
        if session is None:
            self.logger.warning("no_session %s", json.dumps({"channel": channel_id, "user": user_id}))
            return UNKNOWN
        if not self.config.access.is_allowed(user_id, channel.owner_id):
            return NOT_ALLOWED

        if seq is None:
            seq = self._next_seq(channel, session)
        session.last_activity = time.time()
        try:
            return self._process(channel, session, utterance, seq)
        except PalaverError as e:
            self.logger.error("turn_failed %s", json.dumps({
                "channel": channel_id, "user": user_id, "error": str(e), "type": type(e).__name__
            }))
            self._emit(channel_id, EventType.ERROR, user_id=user_id, error=e)
            return FAILED

    def _process(self, channel: ChannelState, session: UserSession, utterance: Utterance, seq: int) -> str:
        channel_id = channel.channel_id
        user_id = session.user_id
        free = channel.mode is VoiceMode.FREE

        if channel.cascade is not None and not free:
            if not self._check_wake_word(channel, utterance):
                self.logger.debug("wakeword_not_detected %s", json.dumps({"channel": channel_id, "user": user_id}))
                return NO_WAKE_WORD

        transcript = self.stt.transcribe(utterance.audio, utterance.sample_rate).strip()
        self.logger.info("transcription %s", json.dumps({
            "channel": channel_id,
            "user": user_id,
            "text": transcript,
            "duration_s": round(utterance.duration_s, 2),
        }))

        if len(transcript) < self.config.triggers.min_transcript_chars:
            return TOO_SHORT
        if should_ignore(transcript, self.config.triggers.ignore_phrases):
            self.logger.debug("transcription_ignored %s", json.dumps({"user": user_id, "text": transcript}))
            return IGNORED
        if is_stop_command(transcript, self._stops):
            self.interrupt(channel_id, user_id)
            return STOPPED

        if free:
            text = transcript
        elif channel.cascade is not None:
            text = strip_phrases(transcript, self._triggers) or transcript
        else:
            if self._triggers is None or not self._triggers.search(transcript):
                self.logger.debug("no_trigger %s", json.dumps({"user": user_id}))
                return NO_TRIGGER
            text = strip_phrases(transcript, self._triggers)
            if not text:
                return TOO_SHORT

        request = self._apply_interrupt_policy(channel, session, seq)
        if request is None:
            return CANCELLED
        self._emit(channel_id, EventType.TRANSCRIPTION, user_id=user_id, text=text)

        try:
            reply = self._request_reply(session, request, text, utterance.duration_s)
        finally:
            if session.request is request:
                session.request = None

        if reply is None:
            return CANCELLED
        if not reply:
            return NO_RESPONSE

        with channel.lock:
            # a newer turn may have won while the reply was in flight
            if request.cancelled.is_set():
                return CANCELLED
            channel.queue.enqueue(QueuedResponse(
                user_id=user_id,
                username=session.username,
                text=reply,
                priority=self.config.response.priority,
            ))
        self._emit(channel_id, EventType.RESPONSE, user_id=user_id, text=reply)
        return QUEUED

    def _check_wake_word(self, channel: ChannelState, utterance: Utterance) -> bool:
        try:
            with channel.cascade_lock:
                # One detection session per utterance
                channel.cascade.reset()
                result = channel.cascade.detect(utterance.audio, utterance.sample_rate)
        except Exception as e:
            # Fall through to STT rather than dropping the audio
            self.logger.error("wakeword_failed %s", json.dumps({"user": utterance.user_id, "error": str(e)}))
            return True
        if result.detected:
            log_event(self.logger, "wakeword_detected", {
                "channel": channel.channel_id,
                "user": utterance.user_id,
                "keyword": result.keyword,
                "confidence": round(result.confidence, 3),
            })
        return result.detected

    def _apply_interrupt_policy(self, channel: ChannelState, session: UserSession, seq: int) -> Optional[PendingRequest]:
        """Register the accepted turn. None when a later utterance of this user already won."""
        policy = self.config.interrupt
        with channel.lock:
            if policy.cancel_own_request:
                if seq < session.accepted_seq:
                    log_event(self.logger, "utterance_superseded", {
                        "channel": channel.channel_id, "user": session.user_id, "seq": seq, "by": session.accepted_seq
                    })
                    return None
                previous = session.request
                if previous is not None and previous.seq < seq:
                    log_event(self.logger, "request_superseded", {"channel": channel.channel_id, "user": session.user_id})
                    self._cancel_request(session)
                    channel.queue.cancel_user(session.user_id)
            session.accepted_seq = max(session.accepted_seq, seq)
            request = PendingRequest(session.user_id, seq)
            session.request = request

        current = channel.queue.current
        if policy.displace_other_speaker and channel.queue.playing and current is not None \
                and current.user_id != session.user_id:
            log_event(self.logger, "response_displaced", {
                "channel": channel.channel_id, "by": session.user_id, "playing": current.user_id
            })
            channel.queue.cancel_all()
        return request

    def _request_reply(self, session: UserSession, request: PendingRequest, text: str, duration_s: float) -> Optional[str]:
        """Backend reply, "" on timeout, None when the request was cancelled.

        Every request runs on its own thread so a slow backend never holds up
        other users or channels.
        """
        result: Dict[str, object] = {}
        done = threading.Event()

        def call():
            try:
                result["reply"] = self.backend.chat(session.user_id, text, duration_s)
            except Exception as e:
                result["error"] = e
            finally:
                done.set()

        threading.Thread(target=call, name=f"palaver-backend-{session.user_id}-{request.seq}", daemon=True).start()
        deadline = time.monotonic() + self.config.response.timeout_s

        while not done.is_set():
            if request.cancelled.is_set():
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.backend.cancel(session.user_id)
                self.logger.warning("response_timeout %s", json.dumps({
                    "user": session.user_id, "timeout_s": self.config.response.timeout_s
                }))
                return ""
            done.wait(min(0.05, remaining))

        if "error" in result:
            raise result["error"]
        if request.cancelled.is_set():
            self.logger.debug("stale_reply_dropped %s", json.dumps({"user": session.user_id}))
            return None
        return (str(result.get("reply") or "")).strip()

    # --- playback

    def _playback_worker(self, channel: ChannelState) -> None:
        while channel.running:
            if not channel.ready.wait(0.1):
                continue
            channel.ready.clear()
            while channel.running:
                stop_event = threading.Event()
                channel.playback_stop = stop_event
                response = channel.queue.start_next()
                if response is None:
                    break
                self._play_response(channel, response, stop_event)

    def _play_response(self, channel: ChannelState, response: QueuedResponse, stop_event: threading.Event) -> None:
        t0 = time.time()
        interrupted = False
        self._emit_state(channel.channel_id, "speaking", user_id=response.user_id)
        try:
            log_event(self.logger, "response_playing", {
                "channel": channel.channel_id, "user": response.user_id, "chars": len(response.text)
            })
            if channel.mode is not VoiceMode.SILENT and self.config.response.earcon:
                channel.transport.play(self._earcon, stop_event)
            if not stop_event.is_set():
                wav = self.tts.synthesize(response.text)
                if wav and not stop_event.is_set():
                    channel.transport.play(wav, stop_event)
            interrupted = stop_event.is_set()
        except PalaverError as e:
            self.logger.error("playback_failed %s", json.dumps({
                "channel": channel.channel_id, "user": response.user_id, "error": str(e)
            }))
            self._emit(channel.channel_id, EventType.ERROR, user_id=response.user_id, error=e)
        except Exception as e:
            self.logger.error("playback_failed %s", json.dumps({
                "channel": channel.channel_id, "user": response.user_id, "error": str(e), "type": type(e).__name__
            }))
        finally:
            channel.queue.mark_complete()
            self.logger.info("response_done %s", json.dumps({
                "channel": channel.channel_id,
                "user": response.user_id,
                "interrupted": interrupted,
                "ms": int((time.time() - t0) * 1000),
            }))
            self._emit_state(channel.channel_id, "listening", user_id=response.user_id)

    # --- events

    def _emit(self, channel_id: str, event_type: EventType, **kwargs) -> None:
        self.events.emit(VoiceEvent(event_type, channel_id, **kwargs))

    def _emit_state(self, channel_id: str, state: str, user_id: Optional[str] = None) -> None:
        self.events.emit(VoiceEvent(EventType.STATE_CHANGE, channel_id, user_id=user_id, state=state))

    def channels(self) -> List[str]:
        return list(self._channels)
