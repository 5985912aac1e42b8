"""Tests for ConversationLoop and CallSession."""

from __future__ import annotations

import threading
import time

import pytest

from conftest import FakePlayer, FakeSTT, FakeTTS, ListChunker, silent_chunk, tone_chunk, wait_until
from palaver.conversation import CallOutcome, CallSession, CallState, ConversationLoop, ConversationState
from palaver.errors import ProviderError
from palaver.events import EventHub, EventType
from palaver.interfaces import CallSignaling


def speech(chunks=6, silence=15):
    return [tone_chunk() for _ in range(chunks)] + [silent_chunk() for _ in range(silence)]


class FakeSignaling(CallSignaling):
    def __init__(self, dial_ok=True, answer_ok=True, connects=True, error=None):
        self.dial_ok = dial_ok
        self.answer_ok = answer_ok
        self.connects = connects
        self.error = error
        self.dialed = []
        self.hangups = 0

    def dial(self, user_id):
        if self.error is not None:
            raise self.error
        self.dialed.append(user_id)
        return self.dial_ok

    def answer(self):
        return self.answer_ok

    def wait_for_connection(self, timeout_s):
        return self.connects

    def hang_up(self):
        self.hangups += 1


class IdleChunker(ListChunker):
    """Endless quiet input."""

    def __init__(self):
        super().__init__([])

    def record_chunk(self):
        time.sleep(0.005)
        return silent_chunk()


@pytest.fixture()
def events(logger):
    return EventHub(logger)


def make_loop(engine_config, logger, events, chunks, text="hello there", callback=None, chunker=None):
    stt = FakeSTT(text)
    tts = FakeTTS()
    player = FakePlayer()
    loop = ConversationLoop(
        engine_config, logger, chunker or ListChunker(chunks), stt, tts, player,
        events=events, response_callback=callback, name="remote",
    )
    return loop, stt, tts, player


class TestHallucinationFilter:
    @pytest.fixture()
    def loop(self, engine_config, logger, events):
        return make_loop(engine_config, logger, events, [])[0]

    def test_empty_and_short(self, loop):
        assert loop.is_hallucination("")
        assert loop.is_hallucination(None)
        assert loop.is_hallucination(" a ")

    def test_known_patterns(self, loop):
        assert loop.is_hallucination("Untertitel der Amara.org-Community")
        assert loop.is_hallucination("Thank you for watching!")
        assert loop.is_hallucination("visit www.example.com")
        assert loop.is_hallucination("♪ la la ♪")

    def test_repeated_word(self, loop):
        assert loop.is_hallucination("Yeah. Yeah. Yeah.")
        assert loop.is_hallucination("you you you you")
        assert not loop.is_hallucination("yeah yeah")
        assert not loop.is_hallucination("yeah yeah okay")

    def test_normal_text(self, loop):
        assert not loop.is_hallucination("What is on my calendar today?")


class TestConversationLoop:
    def test_run_once_answers(self, engine_config, logger, events):
        seen = []
        events.on(EventType.TRANSCRIPTION, seen.append)
        events.on(EventType.RESPONSE, seen.append)
        loop, stt, tts, player = make_loop(engine_config, logger, events, speech(), callback=lambda t: f"re: {t}")

        assert loop.run_once() == "hello there"
        assert stt.calls[0][1:] == (16000, "en")
        assert tts.texts == ["re: hello there"]
        assert player.played == [b"RIFFre: hello there"]
        assert [(e.type, e.text) for e in seen] == [
            (EventType.TRANSCRIPTION, "hello there"),
            (EventType.RESPONSE, "re: hello there"),
        ]

    def test_language_hint_from_call_config(self, logger, events):
        from palaver.config import EngineConfig

        cfg = EngineConfig.from_dict({"audio": {"sample_rate": 16000}, "call": {"language": "de"}})
        loop, stt, _, _ = make_loop(cfg, logger, events, speech())
        loop.listen_once()
        assert stt.calls[0][2] == "de"

    def test_hallucination_not_answered(self, engine_config, logger, events):
        calls = []
        loop, _, tts, _ = make_loop(engine_config, logger, events, speech(), text="Thanks for watching",
                                    callback=lambda t: calls.append(t) or "x")
        assert loop.run_once() is None
        assert calls == []
        assert tts.texts == []

    def test_short_speech_never_transcribed(self, engine_config, logger, events):
        loop, stt, _, _ = make_loop(engine_config, logger, events, speech(chunks=4, silence=20))
        assert loop.listen_once() is None
        assert stt.calls == []

    def test_empty_response_not_spoken(self, engine_config, logger, events):
        loop, _, tts, _ = make_loop(engine_config, logger, events, speech(), callback=lambda t: "")
        loop.run_once()
        assert tts.texts == []

    def test_callback_error_reported(self, engine_config, logger, events):
        errors = []
        events.on(EventType.ERROR, errors.append)

        def broken(text):
            raise RuntimeError("backend unreachable")

        loop, _, tts, _ = make_loop(engine_config, logger, events, speech(), callback=broken)
        assert loop.run_once() == "hello there"
        assert len(errors) == 1
        assert tts.texts == []

    def test_speak_restores_state(self, engine_config, logger, events):
        states = []
        events.on(EventType.STATE_CHANGE, lambda e: states.append(e.state))
        loop, _, _, player = make_loop(engine_config, logger, events, [])
        loop._running = True
        loop._state = ConversationState.LISTENING
        loop.speak("hi")
        assert player.played == [b"RIFFhi"]
        assert states == ["speaking", "listening"]
        assert loop.state is ConversationState.LISTENING

    def test_loop_survives_iteration_errors(self, engine_config, logger, events):
        errors = []
        events.on(EventType.ERROR, errors.append)
        chunks = speech() + speech()
        loop, stt, _, _ = make_loop(engine_config, logger, events, chunks)
        stt.error = ProviderError("stt", "timeout")
        transcripts = []
        events.on(EventType.TRANSCRIPTION, lambda e: transcripts.append(e.text))

        def recover(event):
            stt.error = None

        events.on(EventType.ERROR, recover)
        loop.start()
        try:
            assert wait_until(lambda: transcripts == ["hello there"])
        finally:
            loop.stop()
        assert len(errors) == 1
        assert loop.state is ConversationState.IDLE
        assert not loop.running

    def test_start_twice_is_harmless(self, engine_config, logger, events):
        loop, _, _, _ = make_loop(engine_config, logger, events, [], chunker=IdleChunker())
        loop.start()
        loop.start()
        assert loop.running
        loop.stop()
        loop.stop()
        assert loop.state is ConversationState.IDLE


class TestCallSession:
    def _session(self, engine_config, logger, events, signaling):
        loop, _, _, player = make_loop(engine_config, logger, events, [], chunker=IdleChunker())
        return CallSession(engine_config, logger, signaling, loop, events=events), loop, player

    def test_no_answer_returns_to_idle_and_hangs_up(self, engine_config, logger, events):
        signaling = FakeSignaling(connects=False)
        session, loop, _ = self._session(engine_config, logger, events, signaling)
        assert session.start_call("friend") == CallOutcome.NO_ANSWER
        assert session.state is CallState.IDLE
        assert signaling.hangups == 1
        assert not loop.running

    def test_connects_and_runs_loop(self, engine_config, logger, events):
        states = []
        events.on(EventType.STATE_CHANGE, lambda e: e.source == "call" and states.append(e.state))
        signaling = FakeSignaling()
        session, loop, _ = self._session(engine_config, logger, events, signaling)
        assert session.start_call("friend") == CallOutcome.CONNECTED
        assert signaling.dialed == ["friend"]
        assert session.state is CallState.CONNECTED
        assert loop.running
        session.hang_up()
        assert states == ["calling", "connected", "hanging-up", "idle"]
        assert not loop.running

    def test_start_only_from_idle(self, engine_config, logger, events):
        session, _, _ = self._session(engine_config, logger, events, FakeSignaling())
        session.start_call("friend")
        assert session.start_call("other") == CallOutcome.INVALID_STATE
        assert session.answer_call() == CallOutcome.INVALID_STATE
        session.hang_up()

    def test_target_from_config(self, logger, events):
        from palaver.config import EngineConfig

        cfg = EngineConfig.from_dict({"call": {"target_user_id": "owner", "connect_timeout_s": 0.1}})
        signaling = FakeSignaling(connects=False)
        session, _, _ = self._session(cfg, logger, events, signaling)
        session.start_call()
        assert signaling.dialed == ["owner"]

    def test_missing_target_fails(self, engine_config, logger, events):
        session, _, _ = self._session(engine_config, logger, events, FakeSignaling())
        assert session.start_call() == CallOutcome.FAILED
        assert session.state is CallState.IDLE

    def test_dial_refused(self, engine_config, logger, events):
        signaling = FakeSignaling(dial_ok=False)
        session, _, _ = self._session(engine_config, logger, events, signaling)
        assert session.start_call("friend") == CallOutcome.FAILED
        assert session.state is CallState.IDLE

    def test_signaling_error(self, engine_config, logger, events):
        errors = []
        events.on(EventType.ERROR, errors.append)
        signaling = FakeSignaling(error=RuntimeError("browser crashed"))
        session, _, _ = self._session(engine_config, logger, events, signaling)
        assert session.start_call("friend") == CallOutcome.FAILED
        assert session.state is CallState.IDLE
        assert len(errors) == 1

    def test_answer_from_ringing(self, engine_config, logger, events):
        session, loop, _ = self._session(engine_config, logger, events, FakeSignaling())
        assert session.answer_call() == CallOutcome.CONNECTED
        assert loop.running
        session.hang_up()

    def test_answer_not_picked_up(self, engine_config, logger, events):
        signaling = FakeSignaling(answer_ok=False)
        session, _, _ = self._session(engine_config, logger, events, signaling)
        assert session.answer_call() == CallOutcome.FAILED
        assert session.state is CallState.IDLE

    def test_hang_up_idempotent(self, engine_config, logger, events):
        signaling = FakeSignaling()
        session, _, player = self._session(engine_config, logger, events, signaling)
        session.hang_up()
        assert signaling.hangups == 0
        session.start_call("friend")
        session.hang_up()
        session.hang_up()
        assert signaling.hangups == 1
        assert player.stops >= 1
        assert session.state is CallState.IDLE

    def test_speak_requires_connection(self, engine_config, logger, events):
        session, _, player = self._session(engine_config, logger, events, FakeSignaling())
        assert session.speak("hello") is False
        assert player.played == []

    def test_concurrent_hang_up(self, engine_config, logger, events):
        signaling = FakeSignaling()
        session, _, _ = self._session(engine_config, logger, events, signaling)
        session.start_call("friend")
        threads = [threading.Thread(target=session.hang_up) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert signaling.hangups == 1
        assert session.state is CallState.IDLE
