"""Hookshot exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from HookshotError for easy catching.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hookshot.models import DeliveryResult


class HookshotError(Exception):
    """Base exception for all Hookshot errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "hookshot_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(HookshotError):
    """Invalid job payload.

    Raised on the enqueue path when a payload matches neither accepted
    shape or misses a required field, and by workers when a stored job
    cannot be processed. Never retried.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class StoreConnectionError(HookshotError):
    """A Redis handle is unusable or a command failed at the transport level."""

    code: str = "connection_error"


class ConnectionTimeoutError(StoreConnectionError):
    """A handle did not become ready within the allowed time.

    Attributes:
        handle: Name of the handle that timed out.
        timeout_ms: How long the caller waited.
    """

    code: str = "connection_timeout"

    def __init__(self, handle: str, timeout_ms: int) -> None:
        self.handle = handle
        self.timeout_ms = timeout_ms
        super().__init__(f"Connection '{handle}' not ready after {timeout_ms}ms")


class CircuitOpenError(HookshotError):
    """Delivery refused because the circuit breaker is open.

    Attributes:
        failures: Consecutive failures recorded by the breaker.
        retry_after: Seconds until the breaker allows a probe.
    """

    code: str = "circuit_open"

    def __init__(self, failures: int, retry_after: float) -> None:
        self.failures = failures
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker open after {failures} consecutive failures, "
            f"retry in {retry_after:.1f}s"
        )


class DeliveryError(HookshotError):
    """A destination call did not succeed.

    Attributes:
        result: The classified DeliveryResult of the attempt.
        retryable: Whether the job may be retried.
    """

    code: str = "delivery_failed"

    def __init__(self, result: DeliveryResult, retryable: bool = True) -> None:
        self.result = result
        self.retryable = retryable
        super().__init__(result.error_message or f"HTTP {result.status_code}")


class CallbackDeliveryError(HookshotError):
    """An outcome notification could not be delivered after all retries."""

    code: str = "callback_failed"

    def __init__(self, callback_url: str, attempts: int, reason: str) -> None:
        self.callback_url = callback_url
        self.attempts = attempts
        super().__init__(f"Callback to {callback_url} failed after {attempts} attempts: {reason}")


class LeaseLostError(HookshotError):
    """The worker no longer holds the lease on a job it tried to finish."""

    code: str = "lease_lost"

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Lease lost for job {job_id}")


class JobStalledError(HookshotError):
    """A job lost its lease too many times and was moved to failed."""

    code: str = "job_stalled"

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__("job stalled more than allowable limit")


class ShutdownTimeoutError(HookshotError):
    """Graceful shutdown did not finish before the global deadline."""

    code: str = "shutdown_timeout"

    def __init__(self, deadline_seconds: float) -> None:
        self.deadline_seconds = deadline_seconds
        super().__init__(f"Shutdown did not complete within {deadline_seconds:.0f}s")


class ConfigurationError(HookshotError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"


class AuthenticationError(HookshotError):
    """Authentication failed.

    Raised when the enqueue surface receives missing or invalid credentials.
    """

    code: str = "authentication_error"
