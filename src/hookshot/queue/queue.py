"""Durable job queue on Redis.

``JobQueue`` is the only component that knows the key layout. Producers use
``enqueue``; the processor uses the claim/lease/transition methods; the
maintenance tooling uses stats, pause/resume, drain and clean.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel
from pydantic_core import to_json
from redis.commands.core import AsyncScript

from hookshot.exceptions import LeaseLostError
from hookshot.logging import get_logger
from hookshot.models import Job, Lease, normalize_payload
from hookshot.models.base import from_ms, now_ms

from . import scripts
from .limiter import RateLimiter

if TYPE_CHECKING:
    from hookshot.config import Settings

    from .connection import ConnectionManager, RedisHandle

logger = get_logger(__name__)

JobState = Literal["waiting", "active", "delayed", "completed", "failed", "paused"]
CleanableState = Literal["completed", "failed", "active", "waiting", "delayed", "paused"]

# Delayed jobs promoted per maintenance tick
PROMOTE_BATCH = 1_000
# A worker counts as alive while its heartbeat is younger than this many stall intervals
WORKER_TTL_INTERVALS = 3


class QueueStats(BaseModel):
    """Point-in-time job counts of one queue."""

    queue: str
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0
    is_paused: bool = False
    workers: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.delayed + self.paused


class JobSummary(BaseModel):
    """Short view of a finished job for listings."""

    id: str
    tenant_id: int | str | None = None
    attempts_made: int = 0
    duration_ms: int | None = None
    failed_reason: str | None = None
    finished_at: datetime | None = None


@dataclass
class StallReport:
    """Jobs the last stall check moved."""

    recovered: list[str] = field(default_factory=list)
    dead: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.recovered or self.dead)


class QueueKeys:
    """Redis keys of one queue."""

    def __init__(self, key_prefix: str, queue_name: str) -> None:
        self.prefix = f"{key_prefix}:{queue_name}:"
        self.wait = self.prefix + "wait"
        self.active = self.prefix + "active"
        self.paused = self.prefix + "paused"
        self.delayed = self.prefix + "delayed"
        self.completed = self.prefix + "completed"
        self.failed = self.prefix + "failed"
        self.stalled = self.prefix + "stalled"
        self.stalled_check = self.prefix + "stalled-check"
        self.meta = self.prefix + "meta"
        self.limiter = self.prefix + "limiter"
        self.workers = self.prefix + "workers"

    def job(self, job_id: str) -> str:
        return f"{self.prefix}job:{job_id}"

    def lock(self, job_id: str) -> str:
        return f"{self.prefix}lock:{job_id}"


class JobQueue:
    """Durable, shared job queue.

    Example:
        ```python
        queue = JobQueue(connections, settings)
        job = await queue.enqueue_payload({"tenantId": 7, "integrationId": 1, "url": url})
        stats = await queue.get_stats()
        ```
    """

    def __init__(self, connections: ConnectionManager, settings: Settings) -> None:
        self._connections = connections
        self._settings = settings
        self.name = settings.queue_name
        self.keys = QueueKeys(settings.key_prefix, settings.queue_name)
        self.limiter = RateLimiter(
            self.keys.limiter,
            max_claims=settings.rate_limit_max,
            duration_ms=settings.rate_limit_duration_ms,
        )
        self._scripts: dict[tuple[int, str], AsyncScript] = {}

    async def shared(self) -> RedisHandle:
        return await self._connections.get_shared_handle()

    def _script(self, handle: RedisHandle, source: str) -> AsyncScript:
        key = (id(handle.client), source)
        script = self._scripts.get(key)
        if script is None:
            script = handle.client.register_script(source)
            self._scripts[key] = script
        return script

    async def _run(self, source: str, keys: list[str], args: list[Any]) -> Any:
        handle = await self.shared()
        script = self._script(handle, source)
        return await handle.execute(lambda _: script(keys=keys, args=args))

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job: Job,
        *,
        delay_ms: int = 0,
        priority: str | None = None,
    ) -> bool:
        """Persist ``job`` and make it available to workers.

        Enqueue is idempotent on the job ID: adding an ID that already exists
        leaves the stored job untouched.

        Returns:
            True if the job was added, False if the ID already existed.
        """
        added = await self._run(
            scripts.ADD_JOB,
            [self.keys.wait, self.keys.paused, self.keys.delayed, self.keys.meta, self.keys.job(job.id)],
            [
                job.id,
                job.to_record(),
                job.max_attempts,
                job.backoff_ms,
                now_ms(),
                max(0, delay_ms),
                priority or "normal",
            ],
        )
        if int(added):
            logger.info(
                "Job enqueued",
                job_id=job.id,
                tenant_id=job.tenant_id,
                url=job.destination.url,
                delay_ms=delay_ms,
            )
            return True
        logger.info("Duplicate job ID ignored", job_id=job.id)
        return False

    async def enqueue_payload(
        self,
        payload: Mapping[str, Any],
        *,
        job_id: str | None = None,
        delay_ms: int = 0,
    ) -> Job:
        """Validate and normalize a raw payload, then enqueue it.

        Raises:
            ValidationError: If the payload is invalid.
        """
        job = normalize_payload(
            payload,
            job_id=job_id,
            default_max_attempts=self._settings.default_max_attempts,
            default_backoff_ms=self._settings.default_backoff_ms,
            default_timeout_ms=self._settings.delivery_timeout_ms,
        )
        options = payload.get("options") if isinstance(payload, Mapping) else None
        priority = options.get("priority") if isinstance(options, Mapping) else None
        await self.enqueue(job, delay_ms=delay_ms, priority=priority)
        return job

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        """Load a job with its current counters, or None if it does not exist."""
        handle = await self.shared()
        record = await handle.execute(lambda r: r.hgetall(self.keys.job(job_id)))
        if not record or "data" not in record:
            return None
        return Job.from_record(
            record["data"],
            attempts_made=int(record.get("attemptsMade", 0)),
            stalled_count=int(record.get("stalledCounter", 0)),
        )

    async def get_job_state(self, job_id: str) -> JobState | None:
        handle = await self.shared()

        async def lookup(r: Any) -> JobState | None:
            async with r.pipeline(transaction=False) as pipe:
                pipe.zscore(self.keys.completed, job_id)
                pipe.zscore(self.keys.failed, job_id)
                pipe.zscore(self.keys.delayed, job_id)
                pipe.lpos(self.keys.active, job_id)
                pipe.lpos(self.keys.wait, job_id)
                pipe.lpos(self.keys.paused, job_id)
                completed, failed, delayed, active, waiting, paused = await pipe.execute()
            if completed is not None:
                return "completed"
            if failed is not None:
                return "failed"
            if delayed is not None:
                return "delayed"
            if active is not None:
                return "active"
            if waiting is not None:
                return "waiting"
            if paused is not None:
                return "paused"
            return None

        return await handle.execute(lookup)

    async def get_stats(self) -> QueueStats:
        """Count jobs in every state."""
        handle = await self.shared()
        worker_cutoff = now_ms() - WORKER_TTL_INTERVALS * self._settings.stalled_interval_ms

        async def counts(r: Any) -> list[Any]:
            async with r.pipeline(transaction=False) as pipe:
                pipe.llen(self.keys.wait)
                pipe.llen(self.keys.active)
                pipe.zcard(self.keys.delayed)
                pipe.zcard(self.keys.completed)
                pipe.zcard(self.keys.failed)
                pipe.llen(self.keys.paused)
                pipe.hget(self.keys.meta, "paused")
                pipe.zcount(self.keys.workers, worker_cutoff, "+inf")
                return await pipe.execute()

        waiting, active, delayed, completed, failed, paused, paused_flag, workers = await handle.execute(
            counts
        )
        return QueueStats(
            queue=self.name,
            waiting=waiting,
            active=active,
            delayed=delayed,
            completed=completed,
            failed=failed,
            paused=paused,
            is_paused=paused_flag == "1",
            workers=workers,
        )

    async def get_finished(self, state: Literal["completed", "failed"], count: int = 5) -> list[JobSummary]:
        """Most recently finished jobs in ``state``, newest first."""
        handle = await self.shared()
        key = self.keys.completed if state == "completed" else self.keys.failed
        ids = await handle.execute(lambda r: r.zrevrange(key, 0, max(0, count - 1)))
        if not ids:
            return []

        async def records(r: Any) -> list[dict[str, str]]:
            async with r.pipeline(transaction=False) as pipe:
                for job_id in ids:
                    pipe.hgetall(self.keys.job(job_id))
                return await pipe.execute()

        summaries = []
        for job_id, record in zip(ids, await handle.execute(records), strict=True):
            if not record:
                continue
            tenant_id = None
            if "data" in record:
                tenant_id = Job.from_record(record["data"]).tenant_id
            processed, finished = record.get("processedOn"), record.get("finishedOn")
            summaries.append(
                JobSummary(
                    id=job_id,
                    tenant_id=tenant_id,
                    attempts_made=int(record.get("attemptsMade", 0)),
                    duration_ms=int(finished) - int(processed) if processed and finished else None,
                    failed_reason=record.get("failedReason"),
                    finished_at=from_ms(int(finished)) if finished else None,
                )
            )
        return summaries

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def claim(self, handle: RedisHandle, timeout_seconds: float) -> str | None:
        """Block on ``handle`` until a job moves from waiting to active.

        Returns:
            The claimed job ID, or None if the wait timed out.
        """
        return await handle.execute(
            lambda r: r.blmove(self.keys.wait, self.keys.active, timeout_seconds, "RIGHT", "LEFT")
        )

    async def acquire_lease(self, job_id: str, token: str) -> Lease | None:
        """Take the exclusive lease on a claimed job.

        Returns:
            The lease, or None if the job vanished or is held by someone else.
        """
        result = int(
            await self._run(
                scripts.ACQUIRE_LEASE,
                [self.keys.job(job_id), self.keys.lock(job_id), self.keys.stalled, self.keys.active],
                [token, self._settings.lock_duration_ms, now_ms(), job_id],
            )
        )
        if result == 1:
            return Lease(
                job_id=job_id,
                holder=token,
                expires_at=from_ms(now_ms() + self._settings.lock_duration_ms),
            )
        if result == -1:
            logger.warning("Claimed job has no record, discarded", job_id=job_id)
        else:
            logger.warning("Claimed job is leased by another worker", job_id=job_id)
        return None

    async def extend_lease(self, lease: Lease) -> Lease | None:
        """Renew ``lease``. Returns None if it was lost."""
        renewed = int(
            await self._run(
                scripts.EXTEND_LOCK,
                [self.keys.lock(lease.job_id), self.keys.stalled],
                [lease.holder, self._settings.lock_duration_ms, lease.job_id],
            )
        )
        if not renewed:
            return None
        return lease.renewed(self._settings.lock_duration_ms)

    async def complete(self, lease: Lease, result: Any = None) -> int:
        """Move a leased job to completed.

        Returns:
            Attempts made, including this one.

        Raises:
            LeaseLostError: If the lease expired or was taken over.
        """
        return await self._finish(
            lease,
            self.keys.completed,
            "returnvalue",
            _encode(result),
            self._settings.keep_completed_seconds,
            self._settings.keep_completed_count,
        )

    async def fail(self, lease: Lease, reason: str) -> int:
        """Move a leased job to failed (dead).

        Raises:
            LeaseLostError: If the lease expired or was taken over.
        """
        return await self._finish(
            lease,
            self.keys.failed,
            "failedReason",
            reason,
            self._settings.keep_failed_seconds,
            self._settings.keep_failed_count,
        )

    async def _finish(
        self,
        lease: Lease,
        target: str,
        field_name: str,
        value: str,
        keep_seconds: int,
        keep_count: int,
    ) -> int:
        attempts = int(
            await self._run(
                scripts.MOVE_TO_FINISHED,
                [self.keys.active, target, self.keys.job(lease.job_id), self.keys.lock(lease.job_id)],
                [
                    lease.job_id,
                    lease.holder,
                    now_ms(),
                    field_name,
                    value,
                    keep_seconds * 1000,
                    keep_count,
                    self.keys.prefix,
                ],
            )
        )
        if attempts < 0:
            raise LeaseLostError(lease.job_id)
        return attempts

    async def retry(self, lease: Lease, delay_ms: int, reason: str) -> int:
        """Release a leased job back to the delayed set for another attempt.

        Raises:
            LeaseLostError: If the lease expired or was taken over.
        """
        attempts = int(
            await self._run(
                scripts.RETRY_JOB,
                [
                    self.keys.active,
                    self.keys.delayed,
                    self.keys.job(lease.job_id),
                    self.keys.lock(lease.job_id),
                ],
                [lease.job_id, lease.holder, now_ms(), max(0, delay_ms), reason],
            )
        )
        if attempts < 0:
            raise LeaseLostError(lease.job_id)
        return attempts

    async def promote_delayed(self, limit: int = PROMOTE_BATCH) -> int:
        """Move delayed jobs whose time has come to waiting."""
        promoted = int(
            await self._run(
                scripts.PROMOTE_DELAYED,
                [self.keys.delayed, self.keys.wait, self.keys.paused, self.keys.meta],
                [now_ms(), limit],
            )
        )
        if promoted:
            logger.debug("Promoted delayed jobs", count=promoted)
        return promoted

    async def check_stalled(self) -> StallReport:
        """Recover active jobs whose lease lapsed since the previous check.

        Jobs stalled more than ``max_stalled_count`` times are moved to
        failed. The check runs at most once per stall interval per queue,
        whichever worker gets there first.
        """
        recovered, dead = await self._run(
            scripts.MOVE_STALLED,
            [
                self.keys.stalled,
                self.keys.wait,
                self.keys.active,
                self.keys.failed,
                self.keys.stalled_check,
                self.keys.paused,
                self.keys.meta,
            ],
            [
                self.keys.prefix,
                now_ms(),
                self._settings.max_stalled_count,
                self._settings.stalled_interval_ms,
                self._settings.keep_failed_seconds * 1000,
                self._settings.keep_failed_count,
            ],
        )
        report = StallReport(recovered=list(recovered), dead=list(dead))
        for job_id in report.recovered:
            logger.warning("Stalled job moved back to waiting", job_id=job_id)
        for job_id in report.dead:
            logger.error("Job stalled too many times, moved to failed", job_id=job_id)
        return report

    async def heartbeat(self, worker_id: str) -> None:
        """Record that ``worker_id`` is alive, for the worker count in stats."""
        handle = await self.shared()
        cutoff = now_ms() - WORKER_TTL_INTERVALS * self._settings.stalled_interval_ms

        async def beat(r: Any) -> None:
            async with r.pipeline(transaction=True) as pipe:
                pipe.zadd(self.keys.workers, {worker_id: now_ms()})
                pipe.zremrangebyscore(self.keys.workers, "-inf", cutoff)
                await pipe.execute()

        await handle.execute(beat)

    async def unregister_worker(self, worker_id: str) -> None:
        handle = await self.shared()
        await handle.execute(lambda r: r.zrem(self.keys.workers, worker_id))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def pause(self) -> None:
        """Stop workers from claiming new jobs. In-flight jobs finish normally."""
        await self._run(scripts.SET_PAUSED, [self.keys.wait, self.keys.paused, self.keys.meta], ["1"])
        logger.info("Queue paused", queue=self.name)

    async def resume(self) -> None:
        await self._run(scripts.SET_PAUSED, [self.keys.paused, self.keys.wait, self.keys.meta], ["0"])
        logger.info("Queue resumed", queue=self.name)

    async def is_paused(self) -> bool:
        handle = await self.shared()
        return await handle.execute(lambda r: r.hget(self.keys.meta, "paused")) == "1"

    async def clean(
        self,
        state: CleanableState,
        grace_ms: int = 0,
        limit: int = 10_000,
    ) -> int:
        """Delete jobs in ``state``.

        For completed, failed and delayed jobs only entries older than
        ``grace_ms`` are removed. Cleaning active jobs deletes them under
        their workers, whose next transition then fails with a lost lease.

        Returns:
            Number of jobs removed.
        """
        key = {
            "completed": self.keys.completed,
            "failed": self.keys.failed,
            "delayed": self.keys.delayed,
            "active": self.keys.active,
            "waiting": self.keys.wait,
            "paused": self.keys.paused,
        }[state]
        kind = "zset" if state in ("completed", "failed", "delayed") else "list"
        max_score = "+inf" if state == "delayed" and grace_ms == 0 else now_ms() - grace_ms
        removed = int(
            await self._run(scripts.CLEAN, [key], [self.keys.prefix, kind, limit, max_score])
        )
        logger.info("Queue cleaned", queue=self.name, state=state, removed=removed)
        return removed

    async def drain(self, include_delayed: bool = True) -> int:
        """Remove every job not yet started."""
        removed = await self.clean("waiting") + await self.clean("paused")
        if include_delayed:
            removed += await self.clean("delayed")
        return removed


def _encode(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return to_json(value).decode()


__all__ = [
    "CleanableState",
    "JobQueue",
    "JobState",
    "JobSummary",
    "QueueKeys",
    "QueueStats",
    "StallReport",
]
