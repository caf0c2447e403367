"""Job models and payload normalization.

Two wire shapes are accepted by the enqueue surface:

* the legacy flat shape ``{tenantId, integrationId, url, method, headers, body}``
* the canonical shape ``{jobType, tenantId, destination: {...}, callback: {...},
  options: {...}, metadata}``

Both are parsed at the ingress edge and normalized into one internal ``Job``.
Nothing past ``normalize_payload`` sees the wire shapes.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Annotated, Any, Literal

import httpx
from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from hookshot.exceptions import ValidationError

from .base import WireModel, generate_job_id, utc_now

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
JobType = Literal["webhook", "email", "sms", "notification"]

DEFAULT_METHOD: HttpMethod = "POST"
DEFAULT_TIMEOUT_MS = 12_000
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_MS = 2_000


def _check_url(value: str) -> str:
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError) as e:
        raise ValueError(f"invalid URL: {e}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError("must be an absolute http(s) URL")
    return value


def _upper_method(value: Any) -> Any:
    return value.upper() if isinstance(value, str) else value


def _check_tenant(value: Any) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("tenantId is required for every job")
    return value


TenantId = Annotated[int | str, BeforeValidator(_check_tenant)]
Method = Annotated[HttpMethod, BeforeValidator(_upper_method)]
HttpUrlStr = Annotated[str, AfterValidator(_check_url)]


# ---------------------------------------------------------------------------
# Ingress shapes
# ---------------------------------------------------------------------------


class LegacyJobPayload(WireModel):
    """Flat payload accepted from older enqueue callers."""

    tenant_id: TenantId
    integration_id: int | str
    integration_name: str | None = None
    url: HttpUrlStr
    method: Method = DEFAULT_METHOD
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout: int | None = Field(default=None, ge=100)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DestinationPayload(WireModel):
    """Where a canonical job is delivered."""

    url: HttpUrlStr
    method: Method = DEFAULT_METHOD
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout: int | None = Field(default=None, ge=100)


class CallbackPayload(WireModel):
    """Where the outcome of a canonical job is reported."""

    url: HttpUrlStr
    secret: str | None = None


class JobOptionsPayload(WireModel):
    """Per-job retry overrides."""

    retries: int | None = Field(default=None, ge=1, le=100)
    backoff: int | None = Field(default=None, ge=0)
    priority: Literal["low", "normal", "high"] | None = None


class CanonicalJobPayload(WireModel):
    """Structured payload with explicit destination and callback objects."""

    job_type: JobType = "webhook"
    tenant_id: TenantId
    integration_id: int | str | None = None
    integration_name: str | None = None
    destination: DestinationPayload
    callback: CallbackPayload | None = None
    options: JobOptionsPayload | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


JobPayload = LegacyJobPayload | CanonicalJobPayload


def parse_job_payload(raw: Mapping[str, Any]) -> JobPayload:
    """Parse a raw enqueue payload into one of the two accepted shapes.

    The shape is chosen by the presence of ``destination`` (canonical) or a
    top-level ``url`` (legacy).

    Raises:
        ValidationError: If the payload matches neither shape or misses a
            required field.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("payload", "must be a JSON object")

    model: type[LegacyJobPayload] | type[CanonicalJobPayload]
    if "destination" in raw:
        model = CanonicalJobPayload
    elif "url" in raw:
        model = LegacyJobPayload
    else:
        raise ValidationError("destination", "either destination or url is required")

    try:
        return model.model_validate(dict(raw))
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        raise ValidationError(field, first.get("msg", "invalid value")) from e


# ---------------------------------------------------------------------------
# Internal job representation
# ---------------------------------------------------------------------------


class Destination(BaseModel):
    """Canonical HTTP request a job delivers."""

    model_config = ConfigDict(extra="forbid")

    url: str
    method: HttpMethod = DEFAULT_METHOD
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, ge=100)


class CallbackTarget(BaseModel):
    """Caller endpoint receiving the job outcome."""

    model_config = ConfigDict(extra="forbid")

    url: str
    secret: str | None = None


class Job(BaseModel):
    """A unit of enqueued delivery work.

    ``attempts_made`` and ``stalled_count`` are owned by the queue engine;
    the stored record keeps them as separate counters next to the job data.

    Attributes:
        id: Unique job ID within the queue.
        job_type: Kind of job (webhook by default).
        tenant_id: Tenant that enqueued the job.
        integration_id: Integration the delivery belongs to (optional).
        integration_name: Human-readable integration name (optional).
        destination: Canonical request to deliver.
        callback: Outcome notification target (optional).
        attempts_made: Finished delivery attempts.
        max_attempts: Attempts allowed before the job is dead.
        backoff_ms: Base of the exponential retry backoff.
        stalled_count: Times the job was recovered from a dead worker.
        created_at: Enqueue time.
        metadata: Opaque caller data echoed back in outcomes.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    job_type: JobType = "webhook"
    tenant_id: int | str
    integration_id: int | str | None = None
    integration_name: str | None = None
    destination: Destination
    callback: CallbackTarget | None = None
    attempts_made: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_ms: int = Field(default=DEFAULT_BACKOFF_MS, ge=0)
    stalled_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def attempt(self) -> int:
        """1-indexed number of the attempt currently being made."""
        return self.attempts_made + 1

    @property
    def is_last_attempt(self) -> bool:
        """Whether a failure of the current attempt makes the job dead."""
        return self.attempt >= self.max_attempts

    def retry_delay_ms(self, attempts_made: int | None = None) -> int:
        """Backoff before the next attempt, once ``attempts_made`` attempts failed.

        Delays double per attempt: with a 2000ms base, attempts 1..4 wait
        2000, 4000, 8000 and 16000ms.
        """
        made = self.attempts_made if attempts_made is None else attempts_made
        return compute_backoff(self.backoff_ms, made)

    def to_record(self) -> str:
        """Serialize the immutable part of the job for the store."""
        return self.model_dump_json(exclude={"attempts_made", "stalled_count"})

    @classmethod
    def from_record(
        cls,
        data: str,
        attempts_made: int = 0,
        stalled_count: int = 0,
    ) -> Job:
        """Rebuild a job from its stored record and counters.

        Raises:
            ValidationError: If the stored record is not a valid job.
        """
        try:
            job = cls.model_validate_json(data)
        except PydanticValidationError as e:
            raise ValidationError("job", f"stored record is invalid: {e.error_count()} errors") from e
        return job.model_copy(update={"attempts_made": attempts_made, "stalled_count": stalled_count})


class Lease(BaseModel):
    """Exclusive, time-bounded claim a worker holds on an active job."""

    model_config = ConfigDict(extra="forbid")

    job_id: str
    holder: str
    expires_at: datetime

    def renewed(self, duration_ms: int) -> Lease:
        """Return this lease extended by ``duration_ms`` from now."""
        return self.model_copy(update={"expires_at": utc_now() + timedelta(milliseconds=duration_ms)})

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at


def compute_backoff(base_ms: int, attempts_made: int) -> int:
    """Exponential backoff: ``base * 2^(attempts_made - 1)`` for attempts_made >= 1."""
    if attempts_made < 1:
        return 0
    return int(base_ms * 2 ** (attempts_made - 1))


def normalize_payload(
    payload: Mapping[str, Any] | JobPayload,
    *,
    job_id: str | None = None,
    default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    default_backoff_ms: int = DEFAULT_BACKOFF_MS,
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> Job:
    """Normalize either wire shape into the canonical ``Job``.

    Args:
        payload: Raw mapping or an already parsed payload model.
        job_id: Explicit job ID. Generated from tenant and job type if None.
        default_max_attempts: Attempts used when the payload sets none.
        default_backoff_ms: Backoff base used when the payload sets none.
        default_timeout_ms: Destination timeout used when the payload sets none.

    Returns:
        The canonical job, with zero attempts made.

    Raises:
        ValidationError: If the payload is invalid.
    """
    parsed = payload if isinstance(payload, BaseModel) else parse_job_payload(payload)

    if isinstance(parsed, LegacyJobPayload):
        job_type: JobType = "webhook"
        destination = Destination(
            url=parsed.url,
            method=parsed.method,
            headers=dict(parsed.headers),
            body=parsed.body,
            timeout_ms=parsed.timeout or default_timeout_ms,
        )
        callback = None
        max_attempts = default_max_attempts
        backoff_ms = default_backoff_ms
    else:
        job_type = parsed.job_type
        destination = Destination(
            url=parsed.destination.url,
            method=parsed.destination.method,
            headers=dict(parsed.destination.headers),
            body=parsed.destination.body,
            timeout_ms=parsed.destination.timeout or default_timeout_ms,
        )
        callback = (
            CallbackTarget(url=parsed.callback.url, secret=parsed.callback.secret)
            if parsed.callback
            else None
        )
        options = parsed.options or JobOptionsPayload()
        max_attempts = options.retries or default_max_attempts
        backoff_ms = options.backoff if options.backoff is not None else default_backoff_ms

    return Job(
        id=job_id or generate_job_id(parsed.tenant_id, job_type),
        job_type=job_type,
        tenant_id=parsed.tenant_id,
        integration_id=parsed.integration_id,
        integration_name=parsed.integration_name,
        destination=destination,
        callback=callback,
        max_attempts=max_attempts,
        backoff_ms=backoff_ms,
        metadata=dict(parsed.metadata),
    )
