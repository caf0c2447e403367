"""Redis connection management.

Two kinds of handles are handed out:

* one shared, non-blocking handle for short bookkeeping commands (enqueue,
  lease renewal, acknowledgements, stats). While it is not ``READY`` every
  command fails fast with ``StoreConnectionError`` instead of being buffered.
* one blocking handle per worker slot, without a socket read timeout, used
  only for the blocking dequeue.

Keeping the indefinite ``BLMOVE`` off the shared handle stops it from
starving short-timeout commands issued on the same socket.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

import redis.asyncio as aioredis
from redis import exceptions as redis_exceptions
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff

from hookshot.exceptions import ConnectionTimeoutError, StoreConnectionError
from hookshot.logging import get_logger

if TYPE_CHECKING:
    from hookshot.config import Settings

logger = get_logger(__name__)

T = TypeVar("T")

# Error replies that indicate a failover or a dropped socket rather than a bad command
TRANSIENT_MESSAGES = ("READONLY", "CLUSTERDOWN", "ECONNRESET", "ETIMEDOUT")


class ConnectionState(str, Enum):
    """Lifecycle of a Redis handle."""

    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    ERROR = "error"


class ClientFactory(Protocol):
    def __call__(self, url: str, **kwargs: Any) -> aioredis.Redis: ...


def is_transient_error(exc: BaseException) -> bool:
    """Whether an error should trigger an automatic reconnect.

    Transient: read-only replica after failover, cluster down, connection
    reset or closed, and timeouts. Everything else is a real command error.
    """
    if isinstance(
        exc,
        (
            redis_exceptions.ConnectionError,
            redis_exceptions.TimeoutError,
            redis_exceptions.ReadOnlyError,
            redis_exceptions.ClusterDownError,
            ConnectionResetError,
            asyncio.TimeoutError,
        ),
    ):
        return True
    if isinstance(exc, redis_exceptions.ResponseError):
        message = str(exc).upper()
        return any(marker in message for marker in TRANSIENT_MESSAGES)
    return False


def reconnect_delay_ms(
    attempt: int,
    step_ms: int,
    cap_ms: int,
    jitter_ms: int,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """Reconnect backoff: ``min(cap, attempt * step) + uniform(0, jitter)``."""
    return min(cap_ms, attempt * step_ms) + rand(0, jitter_ms)


class RedisHandle:
    """A Redis client plus the connection state the rest of the system relies on.

    Commands go through ``execute()``, which refuses to run unless the handle
    is ``READY`` and starts a background reconnect when a command fails with
    a transient error.
    """

    def __init__(
        self,
        name: str,
        client: aioredis.Redis,
        *,
        blocking: bool,
        reconnect_step_ms: int,
        reconnect_cap_ms: int,
        reconnect_jitter_ms: int,
        reconnect_max_attempts: int,
    ) -> None:
        self.name = name
        self.client = client
        self.blocking = blocking
        self._step_ms = reconnect_step_ms
        self._cap_ms = reconnect_cap_ms
        self._jitter_ms = reconnect_jitter_ms
        self._max_attempts = reconnect_max_attempts
        self._state = ConnectionState.CONNECTING
        self._ready = asyncio.Event()
        self._connect_task: asyncio.Task[None] | None = None
        self._closing = False

    def __repr__(self) -> str:
        return f"RedisHandle(name={self.name!r}, state={self._state.value})"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        if state is ConnectionState.READY:
            self._ready.set()
        else:
            self._ready.clear()
        log = logger.warning if state in (ConnectionState.ERROR, ConnectionState.RECONNECTING) else logger.info
        log(
            "Redis handle state changed",
            handle=self.name,
            previous=previous.value,
            state=state.value,
        )

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def start_connect(self) -> asyncio.Task[None]:
        """Start (or join) the background connect loop."""
        if self._connect_task is None or self._connect_task.done():
            self._closing = False
            if self._state is not ConnectionState.CONNECTING:
                self._set_state(ConnectionState.RECONNECTING)
            self._connect_task = asyncio.get_running_loop().create_task(
                self._connect_loop(), name=f"redis-connect-{self.name}"
            )
        return self._connect_task

    async def _connect_loop(self) -> None:
        attempt = 0
        while not self._closing:
            attempt += 1
            try:
                await self.client.ping()
            except Exception as e:
                if not is_transient_error(e):
                    logger.error(
                        "Redis connect failed with non-transient error",
                        handle=self.name,
                        error=str(e),
                    )
                    self._set_state(ConnectionState.ERROR)
                    return
                if attempt >= self._max_attempts:
                    logger.error(
                        "Redis reconnect attempts exhausted",
                        handle=self.name,
                        attempts=attempt,
                        error=str(e),
                    )
                    self._set_state(ConnectionState.ERROR)
                    return
                delay = reconnect_delay_ms(attempt, self._step_ms, self._cap_ms, self._jitter_ms)
                logger.warning(
                    "Redis connect attempt failed",
                    handle=self.name,
                    attempt=attempt,
                    retry_in_ms=round(delay),
                    error=str(e),
                )
                self._set_state(ConnectionState.RECONNECTING)
                await asyncio.sleep(delay / 1000)
            else:
                self._set_state(ConnectionState.READY)
                return

    async def execute(self, command: Callable[[aioredis.Redis], Awaitable[T]]) -> T:
        """Run ``command`` against the client.

        Raises:
            StoreConnectionError: If the handle is not ready, or the command
                failed with a transient error (a reconnect is started).
        """
        if self._state is not ConnectionState.READY:
            raise StoreConnectionError(
                f"Redis handle '{self.name}' is {self._state.value}; command rejected"
            )
        try:
            return await command(self.client)
        except Exception as e:
            if not is_transient_error(e):
                raise
            if self._closing:
                raise StoreConnectionError(f"Redis handle '{self.name}' was closed") from e
            logger.warning("Transient Redis error, reconnecting", handle=self.name, error=str(e))
            self._set_state(ConnectionState.RECONNECTING)
            self.start_connect()
            raise StoreConnectionError(f"Redis command failed on '{self.name}': {e}") from e

    async def close(self) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        self._closing = True
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except asyncio.CancelledError:
                pass
        try:
            await self.client.aclose()
        finally:
            self._set_state(ConnectionState.CLOSED)


class ConnectionManager:
    """Owns every Redis handle used by the process.

    Example:
        ```python
        connections = ConnectionManager(settings)
        shared = await connections.get_shared_handle()
        await shared.execute(lambda r: r.set("key", "value"))

        blocking = await connections.create_blocking_handle("worker-1")
        await connections.wait_until_ready(blocking, timeout_ms=5000)
        ```
    """

    def __init__(self, settings: Settings, client_factory: ClientFactory | None = None) -> None:
        self._settings = settings
        self._client_factory: ClientFactory = client_factory or aioredis.Redis.from_url
        self._shared: RedisHandle | None = None
        self._shared_lock = asyncio.Lock()
        self._blocking: dict[str, RedisHandle] = {}
        self._latency_task: asyncio.Task[None] | None = None
        self.last_rtt_ms: float | None = None

    def _build_client(self, *, blocking: bool) -> aioredis.Redis:
        s = self._settings
        options: dict[str, Any] = {
            "decode_responses": True,
            "socket_connect_timeout": s.redis_connect_timeout_ms / 1000,
            "socket_keepalive": True,
            "health_check_interval": 30,
        }
        if blocking:
            # Blocking dequeue waits as long as the command asks for
            options["socket_timeout"] = None
        else:
            options["socket_timeout"] = s.redis_command_timeout_ms / 1000
            # One transport retry per command; longer outages go through the handle's reconnect loop
            options["retry"] = Retry(NoBackoff(), 1)
        return self._client_factory(s.redis_url, **options)

    def _new_handle(self, name: str, *, blocking: bool) -> RedisHandle:
        s = self._settings
        return RedisHandle(
            name,
            self._build_client(blocking=blocking),
            blocking=blocking,
            reconnect_step_ms=s.redis_reconnect_step_ms,
            reconnect_cap_ms=s.redis_reconnect_cap_ms,
            reconnect_jitter_ms=s.redis_reconnect_jitter_ms,
            reconnect_max_attempts=s.redis_reconnect_max_attempts,
        )

    async def get_shared_handle(self) -> RedisHandle:
        """Return the process-wide bookkeeping handle, creating it on first use.

        The first call waits for the initial connection; later calls return
        the same handle whatever its state, so commands fail fast while it
        reconnects.

        Raises:
            ConnectionTimeoutError: If the first connection is not ready in time.
        """
        async with self._shared_lock:
            if self._shared is not None:
                return self._shared
            handle = self._new_handle("shared", blocking=False)
            self._shared = handle
            logger.info("Creating shared Redis handle")
            handle.start_connect()
        await self.wait_until_ready(handle)
        return handle

    async def create_blocking_handle(self, name: str) -> RedisHandle:
        """Create a dedicated handle for one worker's blocking dequeue."""
        if name in self._blocking and self._blocking[name].state is not ConnectionState.CLOSED:
            raise StoreConnectionError(f"Blocking handle '{name}' already exists")
        handle = self._new_handle(name, blocking=True)
        self._blocking[name] = handle
        handle.start_connect()
        return handle

    async def wait_until_ready(
        self,
        handle: RedisHandle,
        timeout_ms: int | None = None,
        *,
        _retried: bool = False,
    ) -> None:
        """Block until ``handle`` is ready.

        A closed (or errored) handle is reconnected first, once.

        Raises:
            ConnectionTimeoutError: If the handle is not ready within ``timeout_ms``.
        """
        timeout_ms = timeout_ms if timeout_ms is not None else self._settings.redis_ready_timeout_ms
        if handle.is_ready:
            return
        if handle.state in (ConnectionState.CLOSED, ConnectionState.ERROR):
            if _retried:
                raise ConnectionTimeoutError(handle.name, timeout_ms)
            logger.info("Reconnecting idle Redis handle", handle=handle.name, state=handle.state.value)
            handle.start_connect()
            await self.wait_until_ready(handle, timeout_ms, _retried=True)
            return
        try:
            await asyncio.wait_for(handle.wait_ready(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise ConnectionTimeoutError(handle.name, timeout_ms) from e

    async def ping(self, handle: RedisHandle, timeout_ms: int | None = None) -> float:
        """Round-trip a PING on ``handle``.

        Returns:
            Round-trip time in milliseconds.

        Raises:
            StoreConnectionError: If the handle is unusable or the PING fails.
        """
        timeout_ms = timeout_ms if timeout_ms is not None else self._settings.redis_command_timeout_ms
        await self.wait_until_ready(handle, timeout_ms)
        started = time.perf_counter()
        try:
            await asyncio.wait_for(handle.execute(lambda r: r.ping()), timeout=timeout_ms / 1000)
        except StoreConnectionError:
            raise
        except (asyncio.TimeoutError, redis_exceptions.RedisError) as e:
            raise StoreConnectionError(f"PING failed on '{handle.name}': {e}") from e
        return (time.perf_counter() - started) * 1000

    def start_latency_monitor(self, interval_seconds: float | None = None) -> asyncio.Task[None] | None:
        """Log the shared handle's round-trip time periodically."""
        interval = (
            interval_seconds
            if interval_seconds is not None
            else self._settings.redis_latency_probe_seconds
        )
        if interval <= 0 or (self._latency_task is not None and not self._latency_task.done()):
            return self._latency_task
        self._latency_task = asyncio.get_running_loop().create_task(
            self._latency_loop(interval), name="redis-latency-monitor"
        )
        return self._latency_task

    async def _latency_loop(self, interval: float) -> None:
        while True:
            try:
                handle = await self.get_shared_handle()
                self.last_rtt_ms = await self.ping(handle)
                logger.info("Redis RTT", rtt_ms=round(self.last_rtt_ms, 1))
            except StoreConnectionError as e:
                logger.warning("Redis latency probe failed", error=e.message)
            await asyncio.sleep(interval)

    async def close_blocking_handle(self, handle: RedisHandle) -> None:
        await handle.close()
        self._blocking.pop(handle.name, None)

    async def close(self) -> None:
        """Close every blocking handle still open, then the shared handle."""
        if self._latency_task is not None:
            self._latency_task.cancel()
            try:
                await self._latency_task
            except asyncio.CancelledError:
                pass
            self._latency_task = None

        for handle in list(self._blocking.values()):
            await self.close_blocking_handle(handle)

        if self._shared is not None:
            logger.info("Closing shared Redis handle")
            await self._shared.close()
            self._shared = None

    @property
    def shared_state(self) -> ConnectionState | None:
        return self._shared.state if self._shared else None
