"""
Unit tests for the timer queue and backoff policy.

Run: pytest tests/ -v
"""

import pytest

from spectrum_coordinator.scheduling.timer_queue import TimerQueue, exponential_backoff

from conftest import FakeClock


class TestBackoff:
    def test_exponential_and_capped(self):
        delay = exponential_backoff(1.0, 30.0)
        assert [delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


class TestScheduling:
    def test_runs_only_when_due(self):
        clock = FakeClock()
        timers = TimerQueue(clock=clock)
        calls = []
        timers.schedule("once", lambda: calls.append(clock()), delay=10.0)
        assert timers.run_due() == 0
        clock.advance(10.0)
        assert timers.run_due() == 1
        assert calls == [clock()]
        assert len(timers) == 0

    def test_due_order(self):
        clock = FakeClock()
        timers = TimerQueue(clock=clock)
        order = []
        timers.schedule("late", lambda: order.append("late"), delay=2.0)
        timers.schedule("early", lambda: order.append("early"), delay=1.0)
        assert timers.next_due() == clock() + 1.0
        clock.advance(5.0)
        timers.run_due()
        assert order == ["early", "late"]

    def test_periodic_reschedules(self):
        clock = FakeClock()
        timers = TimerQueue(clock=clock)
        ticks = []
        timers.schedule_periodic("tick", lambda: ticks.append(clock()), interval=5.0)
        for _ in range(3):
            clock.advance(5.0)
            timers.run_due()
        assert len(ticks) == 3
        assert timers.pending("tick")


class TestRetry:
    def test_retries_with_backoff_until_success(self):
        clock = FakeClock()
        timers = TimerQueue(clock=clock)
        attempts = []

        def attempt(n):
            attempts.append((n, clock()))
            return n == 3

        timers.schedule_retry("job", attempt, max_attempts=5, backoff=exponential_backoff(1.0, 30.0))
        timers.run_due()
        clock.advance(1.0)
        timers.run_due()
        clock.advance(2.0)
        timers.run_due()
        start = attempts[0][1]
        assert [(n, t - start) for n, t in attempts] == [(1, 0.0), (2, 1.0), (3, 3.0)]
        assert not timers.pending("job")

    def test_exhaustion_calls_handler_once(self):
        clock = FakeClock()
        timers = TimerQueue(clock=clock)
        exhausted = []
        attempts = []

        def attempt(n):
            attempts.append(n)
            return False

        timers.schedule_retry("job", attempt, max_attempts=3, backoff=lambda n: 0.0,
                              on_exhausted=lambda: exhausted.append(True))
        timers.run_due()
        assert attempts == [1, 2, 3]
        assert exhausted == [True]
        assert len(timers) == 0

    def test_exception_counts_as_failed_attempt(self):
        clock = FakeClock()
        timers = TimerQueue(clock=clock)
        attempts = []

        def attempt(n):
            attempts.append(n)
            if n == 1:
                raise RuntimeError("transient")
            return True

        timers.schedule_retry("job", attempt, max_attempts=3, backoff=lambda n: 0.0)
        timers.run_due()
        assert attempts == [1, 2]


class TestCancel:
    def test_cancel_removes_queued_tasks(self):
        clock = FakeClock()
        timers = TimerQueue(clock=clock)
        calls = []
        timers.schedule_retry("job", lambda n: calls.append(n) or False, max_attempts=3,
                              backoff=lambda n: 5.0, on_exhausted=lambda: calls.append("exhausted"))
        timers.schedule("other", lambda: calls.append("other"))
        timers.run_due()
        assert timers.pending("job")

        assert timers.cancel("job") == 1
        clock.advance(60.0)
        timers.run_due()
        assert calls == [1, "other"]
        assert timers.cancel("job") == 0

    def test_cancel_during_run_stops_requeue(self):
        clock = FakeClock()
        timers = TimerQueue(clock=clock)
        attempts = []

        def attempt(n):
            attempts.append(n)
            assert timers.pending("job")
            timers.cancel("job")
            return False

        timers.schedule_retry("job", attempt, max_attempts=5, backoff=lambda n: 0.0)
        timers.run_due()
        assert attempts == [1]
        assert not timers.pending("job")

    @pytest.mark.parametrize("key", ["tick", "missing"])
    def test_cancel_unknown_or_periodic(self, key):
        clock = FakeClock()
        timers = TimerQueue(clock=clock)
        timers.schedule_periodic("tick", lambda: None, interval=1.0)
        timers.cancel(key)
        assert timers.pending("tick") == (key != "tick")
