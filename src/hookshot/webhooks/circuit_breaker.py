"""Process-wide circuit breaker for destination deliveries.

The breaker opens after ``threshold`` consecutive failed deliveries and stays
open until ``cooldown`` has elapsed since the last failure. Once the cooldown
has passed, one failure credit is forgiven per check so that a probe delivery
goes through instead of resetting the breaker outright. The failure count only
returns to zero after ``reset_successes`` consecutive successes.

One breaker is shared by every destination served by the process.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel

from hookshot.logging import get_logger

logger = get_logger(__name__)


class CircuitBreakerStats(BaseModel):
    """Snapshot of the breaker for health and stats reporting."""

    consecutive_failures: int
    consecutive_successes: int
    last_failure_at: datetime | None
    is_open: bool
    threshold: int
    cooldown_seconds: float


class CircuitBreaker:
    """Consecutive-failure gate in front of the delivery executor.

    Example:
        ```python
        breaker = CircuitBreaker(threshold=5, cooldown_seconds=60)
        if breaker.is_open():
            raise CircuitOpenError(...)
        ...
        breaker.record_failure()
        ```
    """

    def __init__(
        self,
        threshold: int = 5,
        cooldown_seconds: float = 60.0,
        reset_successes: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self.reset_successes = reset_successes
        self._clock = clock
        self._failures = 0
        self._successes = 0
        self._last_failure: float | None = None
        self._last_failure_wall: datetime | None = None

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def consecutive_successes(self) -> int:
        return self._successes

    def _cooldown_elapsed(self) -> bool:
        return (
            self._last_failure is None
            or self._clock() - self._last_failure >= self.cooldown_seconds
        )

    def is_open(self) -> bool:
        """Whether deliveries should fail fast.

        Calling this after the cooldown forgives one failure credit, so a
        breaker sitting exactly at the threshold lets the next probe through.
        """
        if self._failures < self.threshold:
            return False
        if not self._cooldown_elapsed():
            return True
        self._failures -= 1
        logger.info(
            "Circuit breaker cooldown elapsed, allowing probe",
            consecutive_failures=self._failures,
        )
        return self._failures >= self.threshold

    def retry_after(self) -> float:
        """Seconds until the cooldown elapses (0 when closed)."""
        if self._last_failure is None or self._failures < self.threshold:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._last_failure))

    def record_success(self) -> None:
        self._successes += 1
        if self._successes >= self.reset_successes and self._failures:
            logger.info("Circuit breaker reset", previous_failures=self._failures)
            self._failures = 0

    def record_failure(self) -> None:
        self._failures += 1
        self._successes = 0
        self._last_failure = self._clock()
        self._last_failure_wall = datetime.now(UTC)
        if self._failures == self.threshold:
            logger.warning(
                "Circuit breaker opened",
                consecutive_failures=self._failures,
                cooldown_seconds=self.cooldown_seconds,
            )

    def reset(self) -> None:
        self._failures = 0
        self._successes = 0
        self._last_failure = None
        self._last_failure_wall = None

    def stats(self) -> CircuitBreakerStats:
        open_now = self._failures >= self.threshold and not self._cooldown_elapsed()
        return CircuitBreakerStats(
            consecutive_failures=self._failures,
            consecutive_successes=self._successes,
            last_failure_at=self._last_failure_wall,
            is_open=open_now,
            threshold=self.threshold,
            cooldown_seconds=self.cooldown_seconds,
        )
