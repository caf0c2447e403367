"""Webhook delivery, circuit breaking, outcome notification and attempt audit."""

from .attempt_log import AttemptLogger, build_attempt_record
from .callbacks import OutcomeNotifier, compute_signature, verify_signature
from .circuit_breaker import CircuitBreaker, CircuitBreakerStats
from .delivery import DeliveryExecutor, build_request, classify_error
from .handler import OutcomeReporter, WebhookJobHandler, build_outcome, delivery_result

__all__ = [
    "AttemptLogger",
    "CircuitBreaker",
    "CircuitBreakerStats",
    "DeliveryExecutor",
    "OutcomeNotifier",
    "OutcomeReporter",
    "WebhookJobHandler",
    "build_attempt_record",
    "build_outcome",
    "build_request",
    "classify_error",
    "compute_signature",
    "delivery_result",
    "verify_signature",
]
