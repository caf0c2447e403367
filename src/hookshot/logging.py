"""Structured logging configuration for Hookshot.

Every process emits JSON lines in production and colored console output
in development. Worker slots bind job context (job id, tenant, attempt) so
that every line written while a job is in flight carries it.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.typing import EventDict, Processor, WrappedLogger

_configured = False
_service_name = "hookshot"

NOISY_LOGGERS = ("httpx", "httpcore")


def _add_service(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", _service_name)
    return event_dict


def configure_logging(
    level: str = "INFO",
    format: str = "json",
    service: str = "hookshot",
) -> None:
    """Configure structured logging for Hookshot.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: Output format - "json" for production, "text" for development.
        service: Value of the ``service`` field added to every line.
    """
    global _configured, _service_name

    _service_name = service
    log_level = getattr(logging, level.upper(), logging.INFO)

    # Library loggers (httpx, uvicorn) go through the same stream
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    # httpx logs every request at INFO; deliveries already log their outcome
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_service,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if format.lower() == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name. Uses calling module name if None.

    Returns:
        A bound structlog logger.
    """
    if not _configured:
        configure_logging()

    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: object) -> None:
    """Bind context variables to all subsequent log messages in this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


def unbind_context(*keys: str) -> None:
    """Remove specific keys from the logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Bind context for the duration of a block.

    Each asyncio task has its own copy of the context, so worker slots
    can bind job fields without leaking them into each other.

    Example:
        ```python
        with log_context(job_id=job.id, tenant_id=job.tenant_id):
            logger.info("Delivering")  # Includes job_id and tenant_id
        ```
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
