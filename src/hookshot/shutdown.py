"""Ordered teardown on termination signals.

Phases: ``RUNNING -> DRAINING -> CLOSING -> TERMINATED``.

The first signal marks the process as draining (health and readiness
report unhealthy) and starts the global deadline. Components are then
stopped in order:

1. the worker pool, which stops claiming and waits for in-flight jobs
   (closing each slot's blocking handle),
2. the outcome notifier and the attempt log, which drain what is queued
   until shortly before the deadline and drop the rest,
3. the delivery client and the Redis handles,
4. the HTTP surface.

A second signal only arms a shorter hard-exit timer. If the deadline
elapses first, the process exits with status 1.
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Callable, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from hookshot.exceptions import ShutdownTimeoutError
from hookshot.logging import get_logger

if TYPE_CHECKING:
    from hookshot.context import AppContext

logger = get_logger(__name__)

# Time kept back from the outbound drains for closing clients and handles
DRAIN_MARGIN_SECONDS = 1.0


class ShutdownPhase(str, Enum):
    RUNNING = "running"
    DRAINING = "draining"
    CLOSING = "closing"
    TERMINATED = "terminated"


class HttpSurface(Protocol):
    async def close(self) -> None: ...


class ShutdownCoordinator:
    """Runs the shutdown sequence once, under a global deadline.

    Example:
        ```python
        coordinator = ShutdownCoordinator(context, server=api_server)
        coordinator.install_signal_handlers()
        exit_code = await coordinator.wait()
        ```
    """

    def __init__(
        self,
        context: AppContext,
        *,
        server: HttpSurface | None = None,
        timeout_seconds: float | None = None,
        hard_exit_seconds: float | None = None,
        exit: Callable[[int], object] = os._exit,
    ) -> None:
        self._context = context
        self.server = server
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else context.settings.shutdown_timeout_seconds
        )
        self.hard_exit_seconds = (
            hard_exit_seconds
            if hard_exit_seconds is not None
            else context.settings.shutdown_hard_exit_seconds
        )
        self._exit = exit
        self._phase = ShutdownPhase.RUNNING
        self._done = asyncio.Event()
        self._exit_code = 0
        self._task: asyncio.Task[int] | None = None
        self._hard_exit: asyncio.TimerHandle | None = None
        self._deadline: float | None = None

    @property
    def phase(self) -> ShutdownPhase:
        return self._phase

    @property
    def is_draining(self) -> bool:
        return self._phase is not ShutdownPhase.RUNNING

    @property
    def hard_exit_armed(self) -> bool:
        return self._hard_exit is not None

    def install_signal_handlers(
        self,
        signals: Sequence[signal.Signals] = (signal.SIGTERM, signal.SIGINT),
    ) -> None:
        loop = asyncio.get_running_loop()
        for sig in signals:
            loop.add_signal_handler(sig, self.handle_signal, sig.name)

    def handle_signal(self, signame: str) -> None:
        """Start the shutdown on the first signal; arm the hard exit on the next."""
        if self._task is None:
            logger.info("Shutdown signal received", signal=signame)
            self._task = asyncio.get_running_loop().create_task(self.shutdown(signame))
            return
        logger.warning("Shutdown already in progress", signal=signame)
        self._arm_hard_exit()

    def _arm_hard_exit(self) -> None:
        if self._hard_exit is not None or self._phase is ShutdownPhase.TERMINATED:
            return
        logger.warning("Hard exit armed", seconds=self.hard_exit_seconds)
        self._hard_exit = asyncio.get_running_loop().call_later(
            self.hard_exit_seconds, self._force_exit, "hard exit timer elapsed"
        )

    def _force_exit(self, reason: str) -> None:
        logger.error("Forcing process exit", reason=reason)
        self._exit_code = 1
        self._exit(1)

    async def shutdown(self, reason: str = "requested") -> int:
        """Run the shutdown sequence.

        Returns:
            The process exit code: 0 after a clean shutdown, 1 if the
            deadline elapsed.
        """
        if self._phase is not ShutdownPhase.RUNNING:
            self._arm_hard_exit()
            await self._done.wait()
            return self._exit_code

        self._phase = ShutdownPhase.DRAINING
        self._deadline = asyncio.get_running_loop().time() + self.timeout_seconds
        logger.info("Graceful shutdown started", reason=reason, deadline_seconds=self.timeout_seconds)
        try:
            await asyncio.wait_for(self._teardown(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            error = ShutdownTimeoutError(self.timeout_seconds)
            logger.error("Graceful shutdown timed out", error=error.message)
            self._force_exit(error.message)
        except Exception:
            logger.exception("Error during graceful shutdown")
            self._force_exit("shutdown error")
        else:
            logger.info("Graceful shutdown completed")
        finally:
            self._phase = ShutdownPhase.TERMINATED
            if self._hard_exit is not None:
                self._hard_exit.cancel()
            self._done.set()
        return self._exit_code

    async def _teardown(self) -> None:
        ctx = self._context

        logger.info("Stopping worker pool", in_flight=len(ctx.processor.in_flight))
        await ctx.processor.stop()

        self._phase = ShutdownPhase.CLOSING
        drain_timeout = self._drain_timeout()
        logger.info(
            "Draining outcome notifications",
            pending=ctx.notifier.pending,
            timeout_seconds=round(drain_timeout, 3),
        )
        await ctx.notifier.close(timeout=drain_timeout)
        if ctx.attempt_log is not None:
            await ctx.attempt_log.close(timeout=self._drain_timeout())
        await ctx.executor.close()

        logger.info("Closing Redis connections")
        await ctx.connections.close()

        if self.server is not None:
            logger.info("Closing HTTP server")
            await self.server.close()

    def _drain_timeout(self) -> float:
        """Seconds left for draining before the deadline, less the margin."""
        if self._deadline is None:
            return self.timeout_seconds
        remaining = self._deadline - asyncio.get_running_loop().time()
        return max(0.0, remaining - DRAIN_MARGIN_SECONDS)

    async def wait(self) -> int:
        """Block until a shutdown has finished and return its exit code."""
        await self._done.wait()
        return self._exit_code
