"""FastAPI router for the Hookshot HTTP surface."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Annotated, Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Response, status
from fastapi.security import HTTPAuthorizationCredentials

from hookshot.logging import get_logger
from hookshot.models.base import utc_now
from hookshot.queue import ConnectionState

from .auth import ApiSecretDependency, security
from .schemas import (
    EnqueueResponse,
    HealthResponse,
    HealthStatus,
    LiveResponse,
    MetricsResponse,
    NotifierStats,
    ReadyResponse,
    StatsResponse,
    WorkerStatus,
)

if TYPE_CHECKING:
    from hookshot.context import AppContext
    from hookshot.shutdown import ShutdownCoordinator

logger = get_logger(__name__)

router = APIRouter()


@dataclass
class ApiState:
    """What the endpoints report on."""

    context: AppContext
    coordinator: ShutdownCoordinator | None = None
    worker_enabled: bool = True
    started: float = field(default_factory=time.monotonic)

    @property
    def draining(self) -> bool:
        return self.coordinator is not None and self.coordinator.is_draining


# State instance (set by create_app or the app lifespan)
_state: ApiState | None = None


def set_state(state: ApiState | None) -> None:
    """Set the global API state."""
    global _state
    _state = state


async def get_state() -> ApiState:
    """Dependency to get the API state."""
    if _state is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _state


StateDep = Annotated[ApiState, Depends(get_state)]


async def require_api_secret(
    state: StateDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> None:
    await ApiSecretDependency(state.context.settings)(credentials)


def _health(state: ApiState) -> HealthResponse:
    ctx = state.context
    redis_state = ctx.connections.shared_state
    redis_ready = redis_state is ConnectionState.READY

    workers: dict[str, WorkerStatus] = {}
    worker_ok = True
    if state.worker_enabled:
        active = ctx.processor.is_active()
        workers[ctx.queue.name] = WorkerStatus(
            active=active,
            paused=ctx.processor.is_paused(),
            in_flight=len(ctx.processor.in_flight),
        )
        worker_ok = active

    result: HealthStatus
    if state.draining:
        result = "unhealthy"
    elif worker_ok and redis_ready:
        result = "healthy"
    else:
        result = "degraded"

    return HealthResponse(
        status=result,
        uptime=int(time.monotonic() - state.started),
        workers=workers,
        redis=redis_state.value if redis_state else "not_connected",
        circuit_breaker_open=ctx.breaker.stats().is_open,
        timestamp=utc_now(),
    )


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check(state: StateDep, response: Response) -> HealthResponse:
    """Report process health.

    Returns 200 when healthy and 503 when degraded or shutting down.
    """
    health = _health(state)
    if health.status != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return health


@router.get("/ready", response_model=ReadyResponse, tags=["system"])
async def readiness(state: StateDep, response: Response) -> ReadyResponse:
    """Readiness probe: false while degraded or draining."""
    ready = _health(state).status == "healthy" and not state.draining
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadyResponse(ready=ready)


@router.get("/live", response_model=LiveResponse, tags=["system"])
async def liveness() -> LiveResponse:
    return LiveResponse(alive=True)


@router.get("/stats", response_model=StatsResponse, tags=["queue"])
async def queue_stats(state: StateDep) -> StatsResponse:
    """Queue counts and the latest finished jobs."""
    queue = state.context.queue
    return StatsResponse(
        counts=await queue.get_stats(),
        recent_completed=await queue.get_finished("completed", 5),
        recent_failed=await queue.get_finished("failed", 3),
    )


@router.get("/metrics", response_model=MetricsResponse, tags=["system"])
async def metrics(state: StateDep) -> MetricsResponse:
    ctx = state.context
    return MetricsResponse(
        jobs=ctx.metrics.snapshot(),
        circuit_breaker=ctx.breaker.stats(),
        callbacks=NotifierStats(
            pending=ctx.notifier.pending,
            sent=ctx.notifier.sent,
            failed=ctx.notifier.failed,
        ),
        redis_rtt_ms=ctx.connections.last_rtt_ms,
    )


@router.post(
    "/jobs",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["queue"],
    dependencies=[Depends(require_api_secret)],
)
async def enqueue_job(
    state: StateDep,
    payload: Annotated[dict[str, Any], Body()],
    idempotency_key: Annotated[str | None, Header()] = None,
) -> EnqueueResponse:
    """Validate a webhook payload and enqueue it.

    Accepts both the legacy flat shape and the canonical shape. An
    ``Idempotency-Key`` header becomes the job ID, so retried enqueue
    requests do not create duplicate jobs.

    Raises:
        ValidationError: If the payload is invalid (400).
        StoreConnectionError: If Redis is unavailable (503).
    """
    if state.draining:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Shutting down",
        )
    job = await state.context.queue.enqueue_payload(payload, job_id=idempotency_key)
    return EnqueueResponse(job_id=job.id)
