"""Redis-backed job queue and worker pool."""

from .connection import ConnectionManager, ConnectionState, RedisHandle, is_transient_error
from .limiter import RateLimitDecision, RateLimiter
from .processor import JobHandler, JobProcessor, JobTransition, TransitionListener, is_retryable
from .queue import JobQueue, JobSummary, QueueKeys, QueueStats, StallReport

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "JobHandler",
    "JobProcessor",
    "JobQueue",
    "JobSummary",
    "JobTransition",
    "QueueKeys",
    "QueueStats",
    "RateLimitDecision",
    "RateLimiter",
    "RedisHandle",
    "StallReport",
    "TransitionListener",
    "is_retryable",
    "is_transient_error",
]
