"""Tests for the delivery circuit breaker."""

import pytest

from hookshot.webhooks import CircuitBreaker


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(threshold=3, cooldown_seconds=10, reset_successes=2, clock=clock)


class TestCircuitBreaker:
    """Opening, cooldown probes and reset."""

    def test_starts_closed(self, breaker: CircuitBreaker):
        assert not breaker.is_open()
        assert breaker.retry_after() == 0.0

    def test_opens_at_threshold(self, breaker: CircuitBreaker):
        breaker.record_failure()
        breaker.record_failure()
        assert not breaker.is_open()
        breaker.record_failure()
        assert breaker.is_open()
        assert breaker.stats().is_open

    def test_retry_after_counts_down(self, breaker: CircuitBreaker, clock: FakeClock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(4)
        assert breaker.retry_after() == pytest.approx(6)

    def test_cooldown_forgives_one_failure(self, breaker: CircuitBreaker, clock: FakeClock):
        """After the cooldown a probe goes through instead of a full reset."""
        for _ in range(3):
            breaker.record_failure()
        clock.advance(10)
        assert not breaker.is_open()
        assert breaker.consecutive_failures == 2

    def test_failed_probe_reopens(self, breaker: CircuitBreaker, clock: FakeClock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(10)
        assert not breaker.is_open()
        breaker.record_failure()
        assert breaker.is_open()

    def test_cooldown_runs_from_last_failure(self, breaker: CircuitBreaker, clock: FakeClock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(8)
        breaker.record_failure()
        clock.advance(8)
        assert breaker.is_open()

    def test_consecutive_successes_reset(self, breaker: CircuitBreaker):
        for _ in range(2):
            breaker.record_failure()
        breaker.record_success()
        assert breaker.consecutive_failures == 2
        breaker.record_success()
        assert breaker.consecutive_failures == 0

    def test_failure_resets_success_streak(self, breaker: CircuitBreaker):
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        breaker.record_success()
        assert breaker.consecutive_failures == 2
        assert breaker.consecutive_successes == 1

    def test_reset(self, breaker: CircuitBreaker):
        for _ in range(3):
            breaker.record_failure()
        breaker.reset()
        assert not breaker.is_open()
        assert breaker.stats().last_failure_at is None
