"""Configuration management for Hookshot."""

import logging
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class CircuitBreakerSettings(BaseModel):
    """Thresholds for the process-wide delivery circuit breaker.

    The breaker opens after ``threshold`` consecutive failed deliveries and
    stays open until ``cooldown_seconds`` have passed since the last failure.
    It fully closes after ``reset_successes`` consecutive successes.

    Attributes:
        threshold: Consecutive failures that open the breaker (5 default).
        cooldown_seconds: Seconds the breaker stays open after the last failure (60 default).
        reset_successes: Consecutive successes that clear the failure count (3 default).
    """

    threshold: int = Field(default=5, ge=1, le=1000, description="Failures before opening")
    cooldown_seconds: float = Field(
        default=60.0,
        gt=0.0,
        le=3600.0,
        description="Seconds to stay open after the last failure",
    )
    reset_successes: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Consecutive successes required to reset the failure count",
    )


class Settings(BaseSettings):
    """Hookshot configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the HOOKSHOT_ prefix. For example:
        HOOKSHOT_REDIS_URL=redis://localhost:6379/0
        HOOKSHOT_WORKER_CONCURRENCY=10
        HOOKSHOT_CIRCUIT_BREAKER__THRESHOLD=8

    Durations ending in ``_ms`` are milliseconds, ``_seconds`` are seconds.
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Redis
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (use rediss:// for TLS)",
    )
    key_prefix: str = Field(default="hookshot", description="Prefix for all Redis keys")
    queue_name: str = Field(default="webhooks", description="Queue consumed by the worker")
    redis_connect_timeout_ms: int = Field(
        default=10_000, ge=100, description="Socket connect timeout for Redis handles"
    )
    redis_command_timeout_ms: int = Field(
        default=5_000,
        ge=100,
        description="Socket read timeout for the shared (non-blocking) handle",
    )
    redis_ready_timeout_ms: int = Field(
        default=15_000,
        ge=100,
        description="How long callers wait for a handle to become ready",
    )
    redis_reconnect_step_ms: int = Field(
        default=500, ge=1, description="Linear reconnect backoff step per attempt"
    )
    redis_reconnect_cap_ms: int = Field(
        default=8_000, ge=1, description="Upper bound of the linear reconnect backoff"
    )
    redis_reconnect_jitter_ms: int = Field(
        default=250, ge=0, description="Random jitter added to each reconnect delay"
    )
    redis_reconnect_max_attempts: int = Field(
        default=20,
        ge=1,
        description="Reconnect attempts before a handle is left in the ERROR state",
    )
    redis_latency_probe_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Interval of the shared-handle RTT probe (0 disables it)",
    )

    # Worker pool
    worker_concurrency: int = Field(
        default=5, ge=1, le=500, description="Simultaneous in-flight jobs per process"
    )
    rate_limit_max: int = Field(
        default=50, ge=1, description="Claims honored per rate-limit window"
    )
    rate_limit_duration_ms: int = Field(
        default=1_000, ge=1, description="Length of the claim rate-limit window"
    )
    lock_duration_ms: int = Field(
        default=60_000, ge=1_000, description="Lease duration for an active job"
    )
    lock_renew_time_ms: int = Field(
        default=15_000, ge=100, description="Interval between lease renewals"
    )
    stalled_interval_ms: int = Field(
        default=30_000, ge=1_000, description="Interval between stalled-job checks"
    )
    max_stalled_count: int = Field(
        default=1,
        ge=0,
        description="Stall recoveries allowed before a job is moved to failed",
    )
    block_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=300.0,
        description="Upper bound of one blocking dequeue wait before the slot re-checks state",
    )
    delayed_poll_interval_ms: int = Field(
        default=1_000, ge=50, description="How often due delayed jobs are promoted"
    )

    # Job defaults
    default_max_attempts: int = Field(
        default=3, ge=1, le=100, description="Delivery attempts when a payload sets none"
    )
    default_backoff_ms: int = Field(
        default=2_000, ge=0, description="Base of the exponential job retry backoff"
    )
    delivery_timeout_ms: int = Field(
        default=12_000, ge=100, description="Default destination HTTP timeout"
    )

    # Retention
    keep_completed_seconds: int = Field(default=3_600, ge=0, description="Completed job max age")
    keep_completed_count: int = Field(default=1_000, ge=0, description="Completed jobs kept")
    keep_failed_seconds: int = Field(default=86_400, ge=0, description="Failed job max age")
    keep_failed_count: int = Field(default=5_000, ge=0, description="Failed jobs kept")

    # Circuit breaker
    circuit_breaker: CircuitBreakerSettings = Field(
        default_factory=CircuitBreakerSettings,
        description="Delivery circuit breaker thresholds",
    )

    # Outcome callbacks
    callback_timeout_ms: int = Field(
        default=10_000, ge=100, description="Per-attempt timeout of an outcome callback"
    )
    callback_max_retries: int = Field(
        default=3, ge=0, le=10, description="Retries after the first callback attempt"
    )
    callback_backoff_base_ms: int = Field(
        default=1_000,
        ge=0,
        description="Callback retry n waits 2^n times this value (2s, 4s, 8s by default)",
    )
    callback_secret: str | None = Field(
        default=None,
        description="Bearer secret used when a job's callback carries none",
    )
    callback_concurrency: int = Field(
        default=10, ge=1, le=200, description="Concurrent outcome callbacks"
    )
    callback_queue_size: int = Field(
        default=10_000, ge=1, description="Pending outcome callbacks held in memory"
    )
    callback_notify_retries: bool = Field(
        default=False,
        description="Also report interim 'retrying' outcomes, not only final ones",
    )

    # Attempt audit log
    attempt_log_url: str | None = Field(
        default=None,
        description="Base URL of the app storing one audit record per delivery attempt",
    )
    attempt_log_secret: str | None = Field(
        default=None,
        description="Value of the x-internal-secret header sent to the attempt log",
    )
    attempt_log_timeout_ms: int = Field(
        default=5_000, ge=100, description="Timeout of one attempt log request"
    )

    # Shutdown
    shutdown_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Global deadline for graceful shutdown"
    )
    shutdown_hard_exit_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Safety-net exit armed by a second termination signal",
    )

    # HTTP surface
    http_host: str = Field(default="0.0.0.0", description="Bind address of the HTTP surface")
    http_port: int = Field(default=3001, ge=0, le=65535, description="Port of the HTTP surface")
    http_enabled: bool = Field(default=True, description="Serve health/stats/enqueue endpoints")
    api_secret: str | None = Field(
        default=None,
        description="Bearer secret required by POST /jobs. REQUIRED in production.",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    model_config = {
        "env_prefix": "HOOKSHOT_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @model_validator(mode="after")
    def validate_lease_timing(self) -> "Settings":
        """Validate that leases are renewed before they expire.

        A renewal interval at or above the lease duration lets every lease
        lapse between renewals, which would make every long job look stalled.
        """
        if self.lock_renew_time_ms >= self.lock_duration_ms:
            raise ValueError(
                f"lock_renew_time_ms ({self.lock_renew_time_ms}) must be less than "
                f"lock_duration_ms ({self.lock_duration_ms})."
            )
        return self

    @model_validator(mode="after")
    def validate_attempt_log(self) -> "Settings":
        """Require the internal secret whenever the attempt log is enabled."""
        if self.attempt_log_url and not self.attempt_log_secret:
            raise ValueError("attempt_log_secret is required when attempt_log_url is set.")
        return self

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Require an enqueue secret in production.

        In development and test the enqueue endpoint accepts unauthenticated
        requests when no secret is configured.
        """
        if self.env == "production" and self.http_enabled and not self.api_secret:
            raise ValueError(
                "HOOKSHOT_API_SECRET must be set in production. "
                'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
            )
        if self.env != "production" and not self.api_secret:
            logger.debug("No API secret configured; POST /jobs accepts unauthenticated requests")
        return self

