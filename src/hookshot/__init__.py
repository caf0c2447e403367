"""Hookshot: reliable outbound webhook delivery.

Producers enqueue delivery jobs into a shared Redis queue. Worker processes
claim them under renewable leases, deliver the HTTP request behind a circuit
breaker, retry failures with exponential backoff, and report each outcome to
an optional callback URL.

Quick Start:
    from hookshot.context import app_context

    async with app_context() as ctx:
        job = await ctx.queue.enqueue_payload(
            {
                "tenantId": 7,
                "destination": {"url": "https://partner.example.com/hooks"},
                "callback": {"url": "https://app.example.com/hooks/result"},
            }
        )

Run a worker with ``hookshot worker``; inspect the queue with
``hookshot stats``.
"""

__version__ = "0.1.0"

# Configuration
from .config import CircuitBreakerSettings, Settings

# Exceptions
from .exceptions import (
    AuthenticationError,
    CallbackDeliveryError,
    CircuitOpenError,
    ConfigurationError,
    ConnectionTimeoutError,
    DeliveryError,
    HookshotError,
    JobStalledError,
    LeaseLostError,
    ShutdownTimeoutError,
    StoreConnectionError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    log_context,
)

# Models
from .models import (
    CallbackOutcome,
    DeliveryResult,
    Job,
    normalize_payload,
)

__all__ = [
    "AuthenticationError",
    "CallbackDeliveryError",
    "CallbackOutcome",
    "CircuitBreakerSettings",
    "CircuitOpenError",
    "ConfigurationError",
    "ConnectionTimeoutError",
    "DeliveryError",
    "DeliveryResult",
    "HookshotError",
    "Job",
    "JobStalledError",
    "LeaseLostError",
    "Settings",
    "ShutdownTimeoutError",
    "StoreConnectionError",
    "ValidationError",
    "__version__",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "log_context",
    "normalize_payload",
]
