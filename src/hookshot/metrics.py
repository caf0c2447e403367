"""In-process job metrics.

``MetricsCollector`` is a pure observer: it receives success and failure
events from the worker pool and never feeds anything back into it.
"""

from __future__ import annotations

import time
from collections import deque
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel

from hookshot.models.base import utc_now

if TYPE_CHECKING:
    from hookshot.queue.processor import JobTransition

# Durations kept for the latency summary
DURATION_WINDOW = 1_000


class MetricsSnapshot(BaseModel):
    """Job counters since the process started."""

    started_at: datetime
    uptime_seconds: int
    succeeded: int
    failed: int
    retried: int
    dead: int
    avg_duration_ms: float | None
    p95_duration_ms: float | None
    last_error: str | None
    last_error_at: datetime | None

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed


class MetricsCollector:
    """Counts job outcomes and keeps a rolling window of durations."""

    def __init__(self) -> None:
        self.started_at = utc_now()
        self._started = time.monotonic()
        self.succeeded = 0
        self.failed = 0
        self.retried = 0
        self.dead = 0
        self._durations: deque[int] = deque(maxlen=DURATION_WINDOW)
        self.last_error: str | None = None
        self.last_error_at: datetime | None = None

    def on_job_success(self, duration_ms: int) -> None:
        self.succeeded += 1
        self._durations.append(duration_ms)

    def on_job_failure(self, error_message: str) -> None:
        """Record a failed attempt, whether or not it will be retried."""
        self.failed += 1
        self.last_error = error_message
        self.last_error_at = utc_now()

    def __call__(self, transition: JobTransition) -> None:
        if transition.state == "completed":
            self.on_job_success(transition.duration_ms)
            return
        if transition.state == "retrying":
            self.retried += 1
        else:
            self.dead += 1
        self.on_job_failure(transition.error_message or "unknown error")

    def snapshot(self) -> MetricsSnapshot:
        durations = sorted(self._durations)
        avg = sum(durations) / len(durations) if durations else None
        p95 = durations[min(len(durations) - 1, int(len(durations) * 0.95))] if durations else None
        return MetricsSnapshot(
            started_at=self.started_at,
            uptime_seconds=int(time.monotonic() - self._started),
            succeeded=self.succeeded,
            failed=self.failed,
            retried=self.retried,
            dead=self.dead,
            avg_duration_ms=round(avg, 1) if avg is not None else None,
            p95_duration_ms=p95,
            last_error=self.last_error,
            last_error_at=self.last_error_at,
        )
