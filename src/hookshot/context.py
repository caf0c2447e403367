"""Application context for Hookshot.

Everything that is process-wide (settings, Redis handles, the circuit
breaker, the HTTP clients) lives on one ``AppContext`` built at startup and
passed to whatever needs it. Nothing in the package reaches for a global.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx

from hookshot.config import Settings
from hookshot.logging import get_logger
from hookshot.metrics import MetricsCollector
from hookshot.queue import ConnectionManager, JobProcessor, JobQueue
from hookshot.queue.connection import ClientFactory
from hookshot.queue.processor import TransitionListener
from hookshot.webhooks import (
    AttemptLogger,
    CircuitBreaker,
    DeliveryExecutor,
    OutcomeNotifier,
    OutcomeReporter,
    WebhookJobHandler,
)

logger = get_logger(__name__)


@dataclass
class AppContext:
    """Wired-up components of one Hookshot process."""

    settings: Settings
    connections: ConnectionManager
    queue: JobQueue
    breaker: CircuitBreaker
    executor: DeliveryExecutor
    notifier: OutcomeNotifier
    metrics: MetricsCollector
    processor: JobProcessor
    attempt_log: AttemptLogger | None = None

    @classmethod
    def create(
        cls,
        settings: Settings,
        *,
        client_factory: ClientFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
        callback_client: httpx.AsyncClient | None = None,
        callback_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        attempt_log_client: httpx.AsyncClient | None = None,
    ) -> AppContext:
        """Build every component from ``settings``.

        Args:
            settings: Process configuration.
            client_factory: Redis client factory (tests pass a fake).
            http_client: Client for destination deliveries.
            callback_client: Client for outcome callbacks.
            callback_sleep: Sleep used between callback retries.
            attempt_log_client: Client for the attempt audit log.
        """
        connections = ConnectionManager(settings, client_factory=client_factory)
        queue = JobQueue(connections, settings)
        cb = settings.circuit_breaker
        breaker = CircuitBreaker(
            threshold=cb.threshold,
            cooldown_seconds=cb.cooldown_seconds,
            reset_successes=cb.reset_successes,
        )
        executor = DeliveryExecutor(
            breaker,
            client=http_client,
            default_timeout_ms=settings.delivery_timeout_ms,
        )
        notifier = OutcomeNotifier(
            timeout_ms=settings.callback_timeout_ms,
            max_retries=settings.callback_max_retries,
            backoff_base_ms=settings.callback_backoff_base_ms,
            default_secret=settings.callback_secret,
            concurrency=settings.callback_concurrency,
            queue_size=settings.callback_queue_size,
            client=callback_client,
            sleep=callback_sleep,
        )
        metrics = MetricsCollector()
        listeners: list[TransitionListener] = [
            metrics,
            OutcomeReporter(notifier, notify_retries=settings.callback_notify_retries),
        ]
        attempt_log = None
        if settings.attempt_log_url and settings.attempt_log_secret:
            attempt_log = AttemptLogger(
                settings.attempt_log_url,
                settings.attempt_log_secret,
                timeout_ms=settings.attempt_log_timeout_ms,
                client=attempt_log_client,
            )
            listeners.append(attempt_log)
        processor = JobProcessor(
            queue,
            connections,
            WebhookJobHandler(executor),
            settings,
            listeners=listeners,
        )
        return cls(
            settings=settings,
            connections=connections,
            queue=queue,
            breaker=breaker,
            executor=executor,
            notifier=notifier,
            metrics=metrics,
            processor=processor,
            attempt_log=attempt_log,
        )

    async def start_worker(self) -> None:
        """Connect to Redis and start consuming jobs.

        Raises:
            ConnectionTimeoutError: If Redis is not reachable in time.
        """
        await self.connections.get_shared_handle()
        self.notifier.start()
        await self.processor.start()
        await self.processor.wait_until_ready()
        self.connections.start_latency_monitor()
        logger.info("Worker ready", queue=self.settings.queue_name)

    async def close(self) -> None:
        """Release everything without the shutdown sequence's deadline."""
        await self.processor.stop()
        await self.notifier.close()
        if self.attempt_log is not None:
            await self.attempt_log.close()
        await self.executor.close()
        await self.connections.close()


@asynccontextmanager
async def app_context(settings: Settings | None = None, **kwargs: object) -> AsyncIterator[AppContext]:
    """Build an ``AppContext`` for a short-lived command and close it on exit.

    Example:
        ```python
        async with app_context() as ctx:
            stats = await ctx.queue.get_stats()
        ```
    """
    context = AppContext.create(settings or Settings(), **kwargs)  # type: ignore[arg-type]
    try:
        yield context
    finally:
        await context.close()
