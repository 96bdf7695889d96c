"""Tests for bounded polling."""

import pytest
from hypothesis import given, settings, strategies as st

from gpu_provisioner.core.polling import PollOutcome, poll_until


class FakeClock:
    """Monotonic clock that only moves when the poller sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestPollUntil:
    """Terminal outcomes of poll_until."""

    def test_succeeds_on_first_probe(self):
        """A condition that already holds needs one probe and no sleep."""
        clock = FakeClock()

        result = poll_until(lambda: "available", lambda v: v == "available", interval=5,
                            max_attempts=3, sleep=clock.sleep, clock=clock)

        assert result.succeeded
        assert result.attempts == 1
        assert result.last_value == "available"
        assert clock.sleeps == []

    def test_succeeds_after_state_changes(self):
        """Polling stops as soon as the awaited state appears."""
        clock = FakeClock()
        states = iter(["in-use", "in-use", "available"])

        result = poll_until(lambda: next(states), lambda v: v == "available", interval=2,
                            timeout=60, sleep=clock.sleep, clock=clock)

        assert result.outcome is PollOutcome.SUCCEEDED
        assert result.attempts == 3
        assert clock.sleeps == [2, 2]

    def test_max_attempts_bound(self):
        """A condition that never holds stops after max_attempts probes."""
        clock = FakeClock()

        result = poll_until(lambda: "deleting", lambda v: v is None, interval=1,
                            max_attempts=4, sleep=clock.sleep, clock=clock)

        assert result.outcome is PollOutcome.TIMED_OUT
        assert result.attempts == 4
        assert result.last_value == "deleting"
        assert len(clock.sleeps) == 3

    def test_timeout_bound_never_oversleeps(self):
        """The poller does not sleep past the timeout."""
        clock = FakeClock()

        result = poll_until(lambda: "pending", lambda v: False, interval=5, timeout=12,
                            sleep=clock.sleep, clock=clock)

        assert not result.succeeded
        assert result.attempts == 3
        assert clock.now <= 12

    def test_requires_a_bound(self):
        """Unbounded polling is refused."""
        with pytest.raises(ValueError):
            poll_until(lambda: None, lambda v: True, interval=1)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            poll_until(lambda: None, lambda v: True, interval=1, max_attempts=0)

    @settings(max_examples=50, deadline=None)
    @given(
        max_attempts=st.integers(min_value=1, max_value=20),
        succeed_at=st.integers(min_value=1, max_value=30),
    )
    def test_probe_count_is_bounded(self, max_attempts, succeed_at):
        """The probe runs at most max_attempts times and reports success only if it saw it."""
        clock = FakeClock()
        calls = []

        def probe():
            calls.append(1)
            return len(calls)

        result = poll_until(probe, lambda v: v >= succeed_at, interval=1,
                            max_attempts=max_attempts, sleep=clock.sleep, clock=clock)

        assert len(calls) <= max_attempts
        assert result.attempts == len(calls)
        assert result.succeeded == (succeed_at <= max_attempts)
