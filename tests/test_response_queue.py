"""Tests for ResponseQueue."""

from __future__ import annotations

import threading

import pytest

from palaver.response_queue import QueuedResponse, ResponseQueue


@pytest.fixture()
def queue(logger):
    return ResponseQueue(logger)


def _resp(user, text="hi", ts=0.0, priority=0):
    return QueuedResponse(user_id=user, username=user.upper(), text=text, timestamp=ts, priority=priority)


class TestEnqueue:
    def test_same_user_replaces(self, queue):
        queue.enqueue(_resp("a", "first", ts=1))
        queue.enqueue(_resp("a", "second", ts=2))
        assert len(queue) == 1
        assert queue.snapshot()[0].text == "second"

    def test_priority_then_timestamp(self, queue):
        queue.enqueue(_resp("late", ts=3))
        queue.enqueue(_resp("early", ts=1))
        queue.enqueue(_resp("urgent", ts=5, priority=-1))
        assert [r.user_id for r in queue.snapshot()] == ["urgent", "early", "late"]

    def test_equal_keys_keep_insertion_order(self, queue):
        queue.enqueue(_resp("x", ts=1))
        queue.enqueue(_resp("y", ts=1))
        assert [r.user_id for r in queue.snapshot()] == ["x", "y"]

    def test_ready_signalled_when_idle(self, queue):
        ready = []
        queue.on_ready(lambda: ready.append(1))
        queue.enqueue(_resp("a"))
        assert ready == [1]

    def test_no_ready_while_playing(self, queue):
        queue.enqueue(_resp("a"))
        assert queue.start_next() is not None
        ready = []
        queue.on_ready(lambda: ready.append(1))
        queue.enqueue(_resp("b"))
        assert ready == []

    def test_failing_listener_is_isolated(self, queue):
        seen = []

        def boom():
            raise RuntimeError("listener broke")

        queue.on_ready(boom)
        queue.on_ready(lambda: seen.append(1))
        queue.enqueue(_resp("a"))
        assert seen == [1]
        assert len(queue) == 1


class TestPlayback:
    def test_dequeue_empty(self, queue):
        assert queue.dequeue() is None

    def test_start_next_is_exclusive(self, queue):
        queue.enqueue(_resp("a", ts=1))
        queue.enqueue(_resp("b", ts=2))
        first = queue.start_next()
        assert first.user_id == "a"
        assert queue.playing
        assert queue.current is first
        assert queue.start_next() is None
        queue.mark_complete()
        assert not queue.playing
        assert queue.start_next().user_id == "b"

    def test_mark_complete_resignals(self, queue):
        ready = []
        queue.enqueue(_resp("a", ts=1))
        queue.enqueue(_resp("b", ts=2))
        queue.on_ready(lambda: ready.append(1))
        queue.start_next()
        queue.mark_complete()
        assert ready == [1]
        queue.start_next()
        queue.mark_complete()
        assert ready == [1]

    def test_concurrent_start_next_plays_one(self, queue):
        for i in range(20):
            queue.enqueue(_resp(f"u{i}", ts=i))
        started = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            r = queue.start_next()
            if r is not None:
                started.append(r)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(started) == 1


class TestCancel:
    def test_cancel_user_no_op(self, queue):
        assert queue.cancel_user("nobody") is False

    def test_cancel_queued(self, queue):
        queue.enqueue(_resp("a"))
        assert queue.cancel_user("a") is True
        assert queue.is_empty()

    def test_cancel_playing_triggers_interrupt(self, queue):
        interrupts = []
        queue.on_interrupt(lambda: interrupts.append(1))
        queue.enqueue(_resp("a"))
        queue.start_next()
        assert queue.cancel_user("a") is True
        assert interrupts == [1]

    def test_cancel_other_user_while_playing(self, queue):
        interrupts = []
        queue.on_interrupt(lambda: interrupts.append(1))
        queue.enqueue(_resp("a"))
        queue.start_next()
        assert queue.cancel_user("b") is False
        assert interrupts == []

    def test_cancel_all(self, queue):
        interrupts = []
        queue.on_interrupt(lambda: interrupts.append(1))
        queue.enqueue(_resp("a", ts=1))
        queue.enqueue(_resp("b", ts=2))
        queue.start_next()
        queue.cancel_all()
        assert queue.is_empty()
        assert interrupts == [1]

    def test_cancel_all_is_idempotent(self, queue):
        interrupts = []
        queue.on_interrupt(lambda: interrupts.append(1))
        queue.cancel_all()
        queue.cancel_all()
        assert interrupts == []

    def test_off_interrupt(self, queue):
        interrupts = []
        handler = lambda: interrupts.append(1)  # noqa: E731
        queue.on_interrupt(handler)
        queue.on_interrupt(handler)
        queue.off_interrupt(handler)
        queue.enqueue(_resp("a"))
        queue.start_next()
        queue.cancel_all()
        assert interrupts == []
