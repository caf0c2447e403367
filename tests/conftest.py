"""Pytest configuration and shared fixtures.

Redis is replaced by fakeredis. Every client built by a test's
``ConnectionManager`` talks to the same in-memory server, so the shared and
blocking handles see the same data, as they would against a real server.
"""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer

from hookshot.config import Settings
from hookshot.context import AppContext
from hookshot.queue import ConnectionManager, JobQueue

# Add tests directory to path so helpers can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from helpers import Recorder, no_sleep  # noqa: E402


@pytest.fixture
def fake_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def client_factory(fake_server: FakeServer) -> Callable[..., FakeAsyncRedis]:
    """Client factory handing out fakeredis clients bound to one server."""

    def factory(url: str, **kwargs: Any) -> FakeAsyncRedis:
        return FakeAsyncRedis(server=fake_server, decode_responses=True)

    return factory


@pytest.fixture
def settings() -> Settings:
    """Settings with short intervals so the worker loop turns quickly."""
    return Settings(
        env="test",
        key_prefix=f"test-{uuid4().hex[:8]}",
        queue_name="webhooks",
        worker_concurrency=2,
        block_timeout_seconds=0.1,
        delayed_poll_interval_ms=50,
        lock_duration_ms=5_000,
        lock_renew_time_ms=1_000,
        stalled_interval_ms=1_000,
        default_backoff_ms=0,
        redis_ready_timeout_ms=2_000,
        redis_latency_probe_seconds=0,
        callback_backoff_base_ms=0,
        http_enabled=False,
        log_format="text",
    )


@pytest_asyncio.fixture
async def connections(
    settings: Settings, client_factory: Callable[..., FakeAsyncRedis]
) -> AsyncIterator[ConnectionManager]:
    manager = ConnectionManager(settings, client_factory=client_factory)
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def queue(connections: ConnectionManager, settings: Settings) -> JobQueue:
    return JobQueue(connections, settings)


@pytest_asyncio.fixture
async def redis(fake_server: FakeServer) -> AsyncIterator[FakeAsyncRedis]:
    """Direct client for asserting on raw keys."""
    client = FakeAsyncRedis(server=fake_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def destination() -> Recorder:
    return Recorder()


@pytest.fixture
def callback_endpoint() -> Recorder:
    return Recorder()


@pytest.fixture
def make_context(
    settings: Settings,
    client_factory: Callable[..., FakeAsyncRedis],
    destination: Recorder,
    callback_endpoint: Recorder,
) -> Callable[..., AppContext]:
    """Build an ``AppContext`` wired to fakeredis and mock HTTP endpoints."""

    def build(**overrides: Any) -> AppContext:
        return AppContext.create(
            settings.model_copy(update=overrides) if overrides else settings,
            client_factory=client_factory,
            http_client=destination.client(),
            callback_client=callback_endpoint.client(),
            callback_sleep=no_sleep,
        )

    return build

