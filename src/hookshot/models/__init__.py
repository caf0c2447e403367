"""Data models for Hookshot jobs and delivery outcomes."""

from .base import generate_id, generate_job_id
from .delivery import (
    AttemptLogRecord,
    CallbackOutcome,
    DeliveryRequest,
    DeliveryResult,
    ErrorCategory,
    OutcomeStatus,
)
from .job import (
    CallbackTarget,
    CanonicalJobPayload,
    Destination,
    Job,
    JobPayload,
    Lease,
    LegacyJobPayload,
    compute_backoff,
    normalize_payload,
    parse_job_payload,
)

__all__ = [
    "AttemptLogRecord",
    "CallbackOutcome",
    "CallbackTarget",
    "CanonicalJobPayload",
    "DeliveryRequest",
    "DeliveryResult",
    "Destination",
    "ErrorCategory",
    "Job",
    "JobPayload",
    "Lease",
    "LegacyJobPayload",
    "OutcomeStatus",
    "compute_backoff",
    "generate_id",
    "generate_job_id",
    "normalize_payload",
    "parse_job_payload",
]
