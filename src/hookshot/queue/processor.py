"""Worker pool consuming a ``JobQueue``.

The processor is generic: it is given a ``JobHandler`` (an async callable
that processes one job) and any number of transition listeners. Each worker
slot owns a dedicated blocking Redis handle and loops:

1. Block until a job moves from waiting to active.
2. Take the job's lease and start renewing it.
3. Wait for room in the queue-wide claim rate window.
4. Run the handler.
5. Record the transition (completed, delayed for retry, or failed) and
   notify listeners.

A maintenance task promotes due delayed jobs and recovers stalled ones.
Jobs that stalled too often are emitted to listeners as ``dead``.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

from redis.exceptions import RedisError

from hookshot.exceptions import (
    DeliveryError,
    HookshotError,
    JobStalledError,
    LeaseLostError,
    StoreConnectionError,
    ValidationError,
)
from hookshot.logging import get_logger, log_context
from hookshot.models import Job, Lease
from hookshot.models.base import generate_id, utc_now

if TYPE_CHECKING:
    from hookshot.config import Settings

    from .connection import ConnectionManager, RedisHandle
    from .queue import JobQueue

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]
TransitionState = Literal["completed", "retrying", "dead"]

# Pause after a store error in a worker loop before trying again
ERROR_BACKOFF_SECONDS = 1.0

# Errors a worker loop logs and survives. Besides transport failures this
# covers commands Redis rejects, such as writes refused under maxmemory.
STORE_ERRORS = (StoreConnectionError, RedisError)


@dataclass
class JobTransition:
    """A job attempt's recorded outcome.

    Attributes:
        job: The job, with ``attempts_made`` as stored after the transition.
        state: ``completed``, ``retrying`` (delayed for another attempt) or
            ``dead`` (moved to failed).
        attempt: 1-indexed attempt that produced this transition.
        duration_ms: Wall time spent in the handler.
        result: Handler return value (completed only).
        error: Handler error (retrying and dead only), or ``JobStalledError``
            for a job the stall check moved to failed.
        next_retry_at: When the job becomes claimable again (retrying only).
    """

    job: Job
    state: TransitionState
    attempt: int
    duration_ms: int
    result: Any = None
    error: BaseException | None = None
    next_retry_at: datetime | None = None

    @property
    def error_message(self) -> str | None:
        if self.error is None:
            return None
        return _describe(self.error)


TransitionListener = Callable[[JobTransition], Awaitable[None] | None]


def is_retryable(error: BaseException) -> bool:
    """Whether a handler error leaves the job eligible for another attempt.

    Validation failures are fatal. Delivery failures carry their own flag.
    Everything else, including an open circuit breaker, is retryable.
    """
    if isinstance(error, ValidationError):
        return False
    if isinstance(error, DeliveryError):
        return error.retryable
    return True


class JobProcessor:
    """Bounded-concurrency consumer of one queue.

    Example:
        ```python
        processor = JobProcessor(queue, connections, handler, settings)
        processor.add_listener(metrics)
        await processor.start()
        ...
        await processor.stop(timeout=30)
        ```
    """

    def __init__(
        self,
        queue: JobQueue,
        connections: ConnectionManager,
        handler: JobHandler,
        settings: Settings,
        *,
        listeners: Iterable[TransitionListener] = (),
        worker_id: str | None = None,
    ) -> None:
        self._queue = queue
        self._connections = connections
        self._handler = handler
        self._settings = settings
        self._listeners: list[TransitionListener] = list(listeners)
        self.worker_id = worker_id or generate_id("worker")
        self.concurrency = settings.worker_concurrency

        self._slots: list[asyncio.Task[None]] = []
        self._busy: set[int] = set()
        self._handles: dict[int, RedisHandle] = {}
        self._maintenance: asyncio.Task[None] | None = None
        self._in_flight: dict[str, Lease] = {}
        self._stopping = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._started = False

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    @property
    def in_flight(self) -> list[str]:
        """IDs of jobs currently being processed by this process."""
        return list(self._in_flight)

    def is_active(self) -> bool:
        """True between ``start()`` and ``stop()``."""
        return self._started and not self._stopping.is_set()

    def is_paused(self) -> bool:
        """True while this processor is locally paused."""
        return not self._resumed.is_set()

    def pause(self) -> None:
        """Stop claiming new jobs in this process. In-flight jobs continue."""
        self._resumed.clear()
        logger.info("Processor paused", worker_id=self.worker_id)

    def resume(self) -> None:
        self._resumed.set()
        logger.info("Processor resumed", worker_id=self.worker_id)

    async def start(self) -> None:
        """Start the worker slots and the maintenance task."""
        if self._started:
            return
        self._started = True
        self._stopping.clear()
        loop = asyncio.get_running_loop()
        for index in range(self.concurrency):
            handle = await self._connections.create_blocking_handle(f"{self.worker_id}-{index}")
            self._handles[index] = handle
            self._slots.append(loop.create_task(self._run_slot(index, handle), name=f"slot-{index}"))
        self._maintenance = loop.create_task(self._maintain(), name="queue-maintenance")
        logger.info(
            "Processor started",
            worker_id=self.worker_id,
            queue=self._queue.name,
            concurrency=self.concurrency,
            rate_limit=f"{self._settings.rate_limit_max}/{self._settings.rate_limit_duration_ms}ms",
        )

    async def wait_until_ready(self, timeout_ms: int | None = None) -> None:
        """Wait for every slot's blocking handle to connect.

        Raises:
            ConnectionTimeoutError: If a handle is not ready in time.
        """
        for handle in self._handles.values():
            await self._connections.wait_until_ready(handle, timeout_ms)

    async def stop(self, timeout: float | None = None) -> bool:
        """Stop claiming jobs and wait for in-flight jobs to finish.

        Idle slots are cancelled immediately. Busy slots finish their current
        job; any still running after ``timeout`` seconds are cancelled, and
        their jobs are recovered later by the stall check.

        Returns:
            True if every in-flight job finished in time.
        """
        if not self._started:
            return True
        self._stopping.set()
        self._resumed.set()
        logger.info(
            "Processor stopping",
            worker_id=self.worker_id,
            in_flight=len(self._in_flight),
        )

        for index, task in enumerate(self._slots):
            if index not in self._busy:
                task.cancel()

        clean = True
        if self._slots:
            _, pending = await asyncio.wait(self._slots, timeout=timeout)
            if pending:
                clean = False
                logger.error(
                    "In-flight jobs did not finish before the stop timeout",
                    jobs=self.in_flight,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if self._maintenance is not None:
            self._maintenance.cancel()
            await asyncio.gather(self._maintenance, return_exceptions=True)

        with contextlib.suppress(*STORE_ERRORS):
            await self._queue.unregister_worker(self.worker_id)

        self._slots.clear()
        self._handles.clear()
        self._started = False
        logger.info("Processor stopped", worker_id=self.worker_id, clean=clean)
        return clean

    # ------------------------------------------------------------------
    # Worker slots
    # ------------------------------------------------------------------

    async def _run_slot(self, index: int, handle: RedisHandle) -> None:
        try:
            while not self._stopping.is_set():
                if not self._resumed.is_set():
                    await self._resumed.wait()
                    continue
                try:
                    await self._connections.wait_until_ready(handle)
                    job_id = await self._queue.claim(handle, self._settings.block_timeout_seconds)
                except STORE_ERRORS as e:
                    if self._stopping.is_set():
                        break
                    logger.warning("Claim failed", slot=index, error=_describe(e))
                    await self._idle(ERROR_BACKOFF_SECONDS)
                    continue
                if job_id is None:
                    continue

                self._busy.add(index)
                try:
                    await self._process(job_id)
                finally:
                    self._busy.discard(index)
        finally:
            await self._connections.close_blocking_handle(handle)

    async def _idle(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)

    async def _process(self, job_id: str) -> None:
        try:
            lease = await self._queue.acquire_lease(job_id, generate_id(self.worker_id))
        except STORE_ERRORS as e:
            logger.warning("Could not lease claimed job", job_id=job_id, error=_describe(e))
            return
        if lease is None:
            return

        self._in_flight[job_id] = lease
        renewal = asyncio.get_running_loop().create_task(
            self._renew_lease(lease), name=f"lease-{job_id}"
        )
        try:
            await self._run_job(lease)
        except Exception:
            logger.exception("Unexpected error processing job", job_id=job_id)
        finally:
            renewal.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await renewal
            self._in_flight.pop(job_id, None)

    async def _run_job(self, lease: Lease) -> None:
        try:
            job = await self._queue.get_job(lease.job_id)
        except ValidationError as e:
            logger.error("Stored job is invalid, failing it", job_id=lease.job_id, error=e.message)
            await self._record(self._queue.fail(lease, e.message), lease)
            return
        if job is None:
            logger.warning("Leased job disappeared", job_id=lease.job_id)
            return

        await self._queue.limiter.acquire(await self._queue.shared())

        with log_context(job_id=job.id, tenant_id=job.tenant_id, attempt=job.attempt):
            logger.info("Processing job", url=job.destination.url, max_attempts=job.max_attempts)
            started = time.perf_counter()
            error: Exception | None = None
            result: Any = None
            try:
                result = await self._handler(job)
            except Exception as e:
                error = e
            duration_ms = int((time.perf_counter() - started) * 1000)

            if error is None:
                attempts = await self._record(self._queue.complete(lease, result), lease)
                if attempts is None:
                    return
                logger.info("Job completed", duration_ms=duration_ms)
                transition = JobTransition(
                    job=job.model_copy(update={"attempts_made": attempts}),
                    state="completed",
                    attempt=job.attempt,
                    duration_ms=duration_ms,
                    result=result,
                )
            else:
                transition = await self._record_failure(job, lease, error, duration_ms)
                if transition is None:
                    return

        await self._emit(transition)

    async def _record_failure(
        self,
        job: Job,
        lease: Lease,
        error: Exception,
        duration_ms: int,
    ) -> JobTransition | None:
        reason = _describe(error)
        attempt = job.attempt

        if is_retryable(error) and attempt < job.max_attempts:
            delay_ms = job.retry_delay_ms(attempt)
            attempts = await self._record(self._queue.retry(lease, delay_ms, reason), lease)
            if attempts is None:
                return None
            logger.warning(
                "Job attempt failed, retry scheduled",
                error=reason,
                delay_ms=delay_ms,
                attempts_made=attempts,
            )
            return JobTransition(
                job=job.model_copy(update={"attempts_made": attempts}),
                state="retrying",
                attempt=attempt,
                duration_ms=duration_ms,
                error=error,
                next_retry_at=utc_now() + timedelta(milliseconds=delay_ms),
            )

        attempts = await self._record(self._queue.fail(lease, reason), lease)
        if attempts is None:
            return None
        logger.error(
            "Job failed permanently",
            error=reason,
            attempts_made=attempts,
            retryable=is_retryable(error),
        )
        return JobTransition(
            job=job.model_copy(update={"attempts_made": attempts}),
            state="dead",
            attempt=attempt,
            duration_ms=duration_ms,
            error=error,
        )

    async def _record(self, transition: Awaitable[int], lease: Lease) -> int | None:
        """Apply a queue transition, tolerating a lost lease or a store outage.

        Either way the job stays recoverable: another worker owns it, or the
        stall check will pick it up once the lease expires.
        """
        try:
            return await transition
        except LeaseLostError:
            logger.warning("Lease lost before the outcome was recorded", job_id=lease.job_id)
        except STORE_ERRORS as e:
            logger.error("Could not record job outcome", job_id=lease.job_id, error=_describe(e))
        return None

    async def _renew_lease(self, lease: Lease) -> None:
        interval = self._settings.lock_renew_time_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self._queue.extend_lease(lease)
            except STORE_ERRORS as e:
                logger.warning("Lease renewal failed", job_id=lease.job_id, error=_describe(e))
                continue
            if renewed is None:
                logger.warning("Lease expired while the job was running", job_id=lease.job_id)
                return
            lease = renewed
            self._in_flight[lease.job_id] = lease

    async def _emit(self, transition: JobTransition) -> None:
        for listener in self._listeners:
            try:
                outcome = listener(transition)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    "Transition listener failed",
                    job_id=transition.job.id,
                    state=transition.state,
                )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def _maintain(self) -> None:
        interval = self._settings.delayed_poll_interval_ms / 1000
        while not self._stopping.is_set():
            try:
                await self._queue.promote_delayed()
                await self._queue.heartbeat(self.worker_id)
                report = await self._queue.check_stalled()
            except STORE_ERRORS as e:
                logger.warning("Queue maintenance failed", error=_describe(e))
                await self._idle(max(interval, ERROR_BACKOFF_SECONDS))
                continue
            for job_id in report.dead:
                await self._report_stalled(job_id)
            await self._idle(interval)

    async def _report_stalled(self, job_id: str) -> None:
        """Emit the dead transition of a job the stall check moved to failed."""
        try:
            job = await self._queue.get_job(job_id)
        except (ValidationError, *STORE_ERRORS) as e:
            logger.error("Could not load stalled job", job_id=job_id, error=_describe(e))
            return
        if job is None:
            return
        await self._emit(
            JobTransition(
                job=job,
                state="dead",
                attempt=job.attempt,
                duration_ms=0,
                error=JobStalledError(job_id),
            )
        )


def _describe(error: BaseException) -> str:
    if isinstance(error, HookshotError):
        return error.message
    return str(error) or type(error).__name__
