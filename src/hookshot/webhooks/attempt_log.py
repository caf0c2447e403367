"""Per-attempt delivery audit log.

Every destination attempt, successful or not, is posted as an
``AttemptLogRecord`` to ``<base url>/api/internal/webhook-logs`` on the
application that owns the integrations. The request is authenticated with
the ``x-internal-secret`` header.

The audit log is best-effort: records are sent in the background, a record
that cannot be stored is logged and dropped, and nothing here changes a
job's state.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import httpx

from hookshot.exceptions import JobStalledError
from hookshot.logging import get_logger
from hookshot.models import AttemptLogRecord

from .handler import delivery_result

if TYPE_CHECKING:
    from hookshot.queue.processor import JobTransition

logger = get_logger(__name__)

ATTEMPT_LOG_PATH = "/api/internal/webhook-logs"
INTERNAL_SECRET_HEADER = "x-internal-secret"


def _as_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def build_attempt_record(transition: JobTransition) -> AttemptLogRecord | None:
    """Build the audit record of the attempt behind ``transition``.

    Returns None for a job the stall check failed, since no attempt
    finished.
    """
    if isinstance(transition.error, JobStalledError):
        return None
    job = transition.job
    result = delivery_result(transition)
    success = bool(result and result.success)
    return AttemptLogRecord(
        integration_id=job.integration_id,
        negocio_id=job.metadata.get("negocioId"),
        tenant_id=job.tenant_id,
        url=job.destination.url,
        method=job.destination.method,
        status_code=(result.status_code or 0) if result else 0,
        success=success,
        error_message=None if success else transition.error_message,
        request_body=_as_json(job.destination.body),
        response_body=_as_json(result.response_body) if result else None,
        duration=result.duration_ms if result else transition.duration_ms,
        attempt_number=transition.attempt,
    )


class AttemptLogger:
    """Transition listener that stores an audit record for every attempt.

    Example:
        ```python
        attempt_log = AttemptLogger("https://app.example.com", secret="internal")
        processor.add_listener(attempt_log)
        ...
        await attempt_log.close(timeout=5)
        ```
    """

    def __init__(
        self,
        base_url: str,
        secret: str,
        *,
        timeout_ms: int = 5_000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = base_url.rstrip("/") + ATTEMPT_LOG_PATH
        self.timeout_ms = timeout_ms
        self._secret = secret
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_ms / 1000)
        self._tasks: set[asyncio.Task[bool]] = set()
        self._closed = False
        self.sent = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        """Records still being sent."""
        return len(self._tasks)

    def __call__(self, transition: JobTransition) -> None:
        record = build_attempt_record(transition)
        if record is None:
            return
        if self._closed:
            logger.warning("Attempt log closed, record dropped", job_id=transition.job.id)
            return
        task = asyncio.get_running_loop().create_task(self.send(record, job_id=transition.job.id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def send(self, record: AttemptLogRecord, *, job_id: str | None = None) -> bool:
        """Post one record. Never raises for transport or HTTP failures.

        Returns:
            True if the audit endpoint accepted the record.
        """
        try:
            response = await self._client.post(
                self.endpoint,
                content=record.to_json(),
                headers={
                    "Content-Type": "application/json",
                    INTERNAL_SECRET_HEADER: self._secret,
                },
                timeout=self.timeout_ms / 1000,
            )
        except httpx.HTTPError as e:
            logger.error(
                "Attempt log request failed",
                job_id=job_id,
                attempt=record.attempt_number,
                error=str(e) or type(e).__name__,
            )
            self.failed += 1
            return False

        if not response.is_success:
            logger.error(
                "Attempt log rejected",
                job_id=job_id,
                attempt=record.attempt_number,
                status_code=response.status_code,
                body=response.text[:500],
            )
            self.failed += 1
            return False

        logger.debug("Attempt log saved", job_id=job_id, attempt=record.attempt_number)
        self.sent += 1
        return True

    async def close(self, timeout: float | None = None) -> bool:
        """Stop accepting records and wait for those in flight.

        Records still unsent after ``timeout`` seconds are dropped.

        Returns:
            True if every record finished before ``timeout``.
        """
        self._closed = True
        drained = True
        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                drained = False
                logger.warning("Attempt log records dropped at close", pending=len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()
        return drained
