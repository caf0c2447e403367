"""Tests for Redis handle state management."""

from __future__ import annotations

import asyncio

import pytest
from redis import exceptions as redis_exceptions

from hookshot.config import Settings
from hookshot.exceptions import ConnectionTimeoutError, StoreConnectionError
from hookshot.queue import ConnectionManager, ConnectionState, RedisHandle, is_transient_error
from hookshot.queue.connection import reconnect_delay_ms


class StubClient:
    """Minimal async client whose PING fails a set number of times."""

    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or redis_exceptions.ConnectionError("connection refused")
        self.pings = 0
        self.closed = False

    async def ping(self) -> bool:
        self.pings += 1
        if self.pings <= self.failures:
            raise self.error
        return True

    async def aclose(self) -> None:
        self.closed = True


def make_handle(client: StubClient, max_attempts: int = 5) -> RedisHandle:
    return RedisHandle(
        "test",
        client,  # type: ignore[arg-type]
        blocking=False,
        reconnect_step_ms=1,
        reconnect_cap_ms=2,
        reconnect_jitter_ms=0,
        reconnect_max_attempts=max_attempts,
    )


class TestTransientErrors:
    @pytest.mark.parametrize(
        "error",
        [
            redis_exceptions.ConnectionError("reset"),
            redis_exceptions.TimeoutError("slow"),
            redis_exceptions.ReadOnlyError("READONLY You can't write against a read only replica."),
            redis_exceptions.ResponseError("CLUSTERDOWN The cluster is down"),
            ConnectionResetError(),
            asyncio.TimeoutError(),
        ],
    )
    def test_transient(self, error: Exception):
        assert is_transient_error(error)

    def test_command_errors_are_not_transient(self):
        assert not is_transient_error(redis_exceptions.ResponseError("WRONGTYPE Operation"))
        assert not is_transient_error(ValueError("bad"))


class TestReconnectDelay:
    def test_linear_then_capped(self):
        no_jitter = lambda a, b: 0.0  # noqa: E731
        delays = [reconnect_delay_ms(n, 500, 2_000, 250, no_jitter) for n in (1, 2, 4, 10)]
        assert delays == [500, 1_000, 2_000, 2_000]

    def test_jitter_is_added(self):
        assert reconnect_delay_ms(1, 500, 2_000, 250, lambda a, b: b) == 750


class TestRedisHandle:
    """Handle lifecycle and fail-fast commands."""

    @pytest.mark.asyncio
    async def test_connects_after_retries(self):
        client = StubClient(failures=2)
        handle = make_handle(client)
        handle.start_connect()
        await asyncio.wait_for(handle.wait_ready(), timeout=2)
        assert handle.state is ConnectionState.READY
        assert client.pings == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        handle = make_handle(StubClient(failures=100), max_attempts=3)
        await handle.start_connect()
        assert handle.state is ConnectionState.ERROR

    @pytest.mark.asyncio
    async def test_non_transient_error_stops_connecting(self):
        client = StubClient(failures=1, error=redis_exceptions.ResponseError("NOAUTH Authentication required."))
        handle = make_handle(client)
        await handle.start_connect()
        assert handle.state is ConnectionState.ERROR
        assert client.pings == 1

    @pytest.mark.asyncio
    async def test_rejects_commands_until_ready(self):
        handle = make_handle(StubClient())
        with pytest.raises(StoreConnectionError, match="connecting"):
            await handle.execute(lambda r: r.ping())

    @pytest.mark.asyncio
    async def test_transient_failure_triggers_reconnect(self):
        client = StubClient()
        handle = make_handle(client)
        await handle.start_connect()

        async def broken(r):
            raise redis_exceptions.ConnectionError("Connection reset by peer")

        with pytest.raises(StoreConnectionError):
            await handle.execute(broken)
        assert handle.state in (ConnectionState.RECONNECTING, ConnectionState.READY)

        await asyncio.wait_for(handle.wait_ready(), timeout=2)
        assert await handle.execute(lambda r: r.ping())

    @pytest.mark.asyncio
    async def test_command_errors_propagate(self):
        handle = make_handle(StubClient())
        await handle.start_connect()

        async def wrong_type(r):
            raise redis_exceptions.ResponseError("WRONGTYPE Operation against a key")

        with pytest.raises(redis_exceptions.ResponseError):
            await handle.execute(wrong_type)
        assert handle.is_ready

    @pytest.mark.asyncio
    async def test_close(self):
        client = StubClient()
        handle = make_handle(client)
        await handle.start_connect()
        await handle.close()
        assert handle.state is ConnectionState.CLOSED
        assert client.closed


class TestConnectionManager:
    """Shared and blocking handles."""

    @pytest.mark.asyncio
    async def test_shared_handle_is_reused(self, connections: ConnectionManager):
        first = await connections.get_shared_handle()
        second = await connections.get_shared_handle()
        assert first is second
        assert first.is_ready
        assert connections.shared_state is ConnectionState.READY

    @pytest.mark.asyncio
    async def test_blocking_handles_are_separate(self, connections: ConnectionManager):
        shared = await connections.get_shared_handle()
        blocking = await connections.create_blocking_handle("slot-0")
        await connections.wait_until_ready(blocking)
        assert blocking is not shared
        assert blocking.blocking

    @pytest.mark.asyncio
    async def test_duplicate_blocking_name(self, connections: ConnectionManager):
        await connections.create_blocking_handle("slot-0")
        with pytest.raises(StoreConnectionError):
            await connections.create_blocking_handle("slot-0")

    @pytest.mark.asyncio
    async def test_ping_reports_rtt(self, connections: ConnectionManager):
        handle = await connections.get_shared_handle()
        assert await connections.ping(handle) >= 0

    @pytest.mark.asyncio
    async def test_ready_timeout(self, settings: Settings):
        manager = ConnectionManager(
            settings.model_copy(update={"redis_reconnect_step_ms": 1_000}),
            client_factory=lambda url, **kwargs: StubClient(failures=100),  # type: ignore[arg-type,return-value]
        )
        handle = await manager.create_blocking_handle("slot-0")
        with pytest.raises(ConnectionTimeoutError):
            await manager.wait_until_ready(handle, timeout_ms=100)
        await manager.close()

    @pytest.mark.asyncio
    async def test_close_closes_everything(self, connections: ConnectionManager):
        shared = await connections.get_shared_handle()
        blocking = await connections.create_blocking_handle("slot-0")
        await connections.close()
        assert shared.state is ConnectionState.CLOSED
        assert blocking.state is ConnectionState.CLOSED
        assert connections.shared_state is None
