"""Pydantic schemas for API responses."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from hookshot.metrics import MetricsSnapshot
from hookshot.queue import JobSummary, QueueStats
from hookshot.webhooks import CircuitBreakerStats

HealthStatus = Literal["healthy", "degraded", "unhealthy"]


class WorkerStatus(BaseModel):
    active: bool
    paused: bool
    in_flight: int = 0


class HealthResponse(BaseModel):
    """Response for the health endpoint.

    Attributes:
        status: ``healthy``, ``degraded`` (worker or Redis down) or
            ``unhealthy`` (shutting down).
        uptime: Seconds since the process started.
        workers: Worker pool state keyed by queue.
        redis: State of the shared Redis handle.
        circuit_breaker_open: Whether deliveries currently fail fast.
        timestamp: When the report was produced.
    """

    status: HealthStatus
    uptime: int
    workers: dict[str, WorkerStatus] = Field(default_factory=dict)
    redis: str
    circuit_breaker_open: bool
    timestamp: datetime


class ReadyResponse(BaseModel):
    ready: bool


class LiveResponse(BaseModel):
    alive: bool = True


class StatsResponse(BaseModel):
    """Queue counts plus the most recent finished jobs."""

    counts: QueueStats
    recent_completed: list[JobSummary] = Field(default_factory=list)
    recent_failed: list[JobSummary] = Field(default_factory=list)


class NotifierStats(BaseModel):
    pending: int
    sent: int
    failed: int


class MetricsResponse(BaseModel):
    """Process-level metrics."""

    jobs: MetricsSnapshot
    circuit_breaker: CircuitBreakerStats
    callbacks: NotifierStats
    redis_rtt_ms: float | None = None


class EnqueueResponse(BaseModel):
    """Response for an accepted job."""

    job_id: str = Field(serialization_alias="jobId")
    status: Literal["queued"] = "queued"
