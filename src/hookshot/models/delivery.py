"""Delivery results, outcome notification and attempt audit payloads.

``DeliveryResult`` is produced once per destination attempt. ``CallbackOutcome``
is the camelCase document posted to a job's callback URL. ``AttemptLogRecord``
is the audit record stored for every attempt.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .base import WireModel, utc_now

if TYPE_CHECKING:
    from .job import Job

OutcomeStatus = Literal["success", "failed", "timeout", "retrying"]


class ErrorCategory(str, Enum):
    """Classification of a failed destination call."""

    TIMEOUT = "timeout"
    DNS_ERROR = "dns_error"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_FAILED = "connection_failed"
    HTTP_ERROR = "http_error"
    CIRCUIT_OPEN = "circuit_open"
    VALIDATION = "validation"
    STALLED = "stalled"
    UNKNOWN = "unknown"
    NONE = "none"


class DeliveryRequest(BaseModel):
    """Canonical HTTP request derived from a job's destination."""

    model_config = ConfigDict(extra="forbid")

    url: str
    method: str
    headers: dict[str, str]
    content: bytes | None = None
    timeout_ms: int


class DeliveryResult(BaseModel):
    """Outcome of one destination attempt.

    Attributes:
        url: Destination URL.
        method: HTTP method used.
        status_code: HTTP status, None when no response was received.
        success: True for 2xx/3xx responses.
        duration_ms: Wall time of the attempt.
        error_category: Failure class (``none`` on success).
        error_message: Human-readable failure description.
        response_body: Response parsed as JSON, else ``{"raw": text}``.
        started_at: When the request was issued.
        completed_at: When the outcome was known.
    """

    model_config = ConfigDict(extra="forbid")

    url: str
    method: str
    status_code: int | None = None
    success: bool = False
    duration_ms: int = Field(default=0, ge=0)
    error_category: ErrorCategory = ErrorCategory.NONE
    error_message: str | None = None
    response_body: Any = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime = Field(default_factory=utc_now)


class OutcomeDestination(WireModel):
    url: str
    method: str
    status_code: int = 0
    body: Any = None
    duration: int = 0


class OutcomeError(WireModel):
    message: str
    code: str | None = None
    is_retryable: bool = False


class OutcomeExecution(WireModel):
    attempt: int
    max_attempts: int
    started_at: datetime
    completed_at: datetime
    duration: int
    next_retry_at: datetime | None = None


class CallbackOutcome(WireModel):
    """Result document posted to a job's callback URL."""

    job_id: str
    job_type: str
    tenant_id: int | str
    integration_id: int | str | None = None
    status: OutcomeStatus
    success: bool
    destination: OutcomeDestination
    error: OutcomeError | None = None
    execution: OutcomeExecution
    metadata: dict[str, Any] | None = None

    @classmethod
    def build(
        cls,
        job: Job,
        *,
        attempt: int,
        result: DeliveryResult | None,
        error_message: str | None = None,
        error_category: ErrorCategory | None = None,
        will_retry: bool = False,
        next_retry_at: datetime | None = None,
    ) -> CallbackOutcome:
        """Build the outcome of ``attempt`` for ``job``.

        Status is ``success`` when the delivery succeeded, ``retrying`` when
        another attempt is scheduled, ``timeout`` when the final attempt timed
        out, and ``failed`` otherwise.
        """
        now = utc_now()
        success = bool(result and result.success)
        category = error_category or (result.error_category if result else ErrorCategory.UNKNOWN)

        status: OutcomeStatus
        if success:
            status = "success"
        elif will_retry:
            status = "retrying"
        elif category is ErrorCategory.TIMEOUT:
            status = "timeout"
        else:
            status = "failed"

        started_at = result.started_at if result else now
        completed_at = result.completed_at if result else now
        duration = result.duration_ms if result else 0

        error = None
        if not success:
            error = OutcomeError(
                message=error_message
                or (result.error_message if result else None)
                or "Delivery failed",
                code=category.value,
                is_retryable=will_retry,
            )

        return cls(
            job_id=job.id,
            job_type=job.job_type,
            tenant_id=job.tenant_id,
            integration_id=job.integration_id,
            status=status,
            success=success,
            destination=OutcomeDestination(
                url=job.destination.url,
                method=job.destination.method,
                status_code=(result.status_code or 0) if result else 0,
                body=result.response_body if result else None,
                duration=duration,
            ),
            error=error,
            execution=OutcomeExecution(
                attempt=attempt,
                max_attempts=job.max_attempts,
                started_at=started_at,
                completed_at=completed_at,
                duration=duration,
                next_retry_at=next_retry_at if will_retry else None,
            ),
            metadata=job.metadata or None,
        )

    def to_json(self) -> str:
        """Serialize with camelCase keys, omitting unset optional sections."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class AttemptLogRecord(WireModel):
    """Audit record of one destination attempt.

    Bodies are carried as JSON text. ``negocioId`` is omitted when the job
    has none.
    """

    integration_id: int | str | None = None
    negocio_id: int | str | None = None
    tenant_id: int | str
    url: str
    method: str
    status_code: int = 0
    success: bool
    error_message: str | None = None
    request_body: str | None = None
    response_body: str | None = None
    duration: int = 0
    attempt_number: int

    def to_json(self) -> str:
        exclude = {"negocio_id"} if self.negocio_id is None else None
        return self.model_dump_json(by_alias=True, exclude=exclude)
