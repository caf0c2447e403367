"""Tests for the Hookshot HTTP surface."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from helpers import legacy_payload, wait_for

from hookshot.api import create_app, router, set_state
from hookshot.context import AppContext


def client_for(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://hookshot")


@pytest_asyncio.fixture
async def context(make_context: Callable[..., AppContext]) -> AsyncIterator[AppContext]:
    ctx = make_context()
    await ctx.start_worker()
    yield ctx
    await ctx.close()
    set_state(None)


@pytest_asyncio.fixture
async def client(context: AppContext) -> AsyncIterator[httpx.AsyncClient]:
    async with client_for(create_app(context)) as http:
        yield http


def draining_coordinator() -> MagicMock:
    coordinator = MagicMock()
    coordinator.is_draining = True
    return coordinator


class TestProbes:
    """Liveness, readiness and health."""

    @pytest.mark.asyncio
    async def test_live(self, client: httpx.AsyncClient):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json() == {"alive": True}

    @pytest.mark.asyncio
    async def test_healthy_when_worker_and_redis_up(
        self, client: httpx.AsyncClient, context: AppContext
    ):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["redis"] == "ready"
        assert data["circuit_breaker_open"] is False
        assert data["workers"][context.queue.name]["active"] is True

    @pytest.mark.asyncio
    async def test_ready(self, client: httpx.AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json() == {"ready": True}

    @pytest.mark.asyncio
    async def test_degraded_when_worker_stopped(
        self, client: httpx.AsyncClient, context: AppContext
    ):
        await context.processor.stop()

        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert (await client.get("/ready")).status_code == 503

    @pytest.mark.asyncio
    async def test_unhealthy_while_draining(self, context: AppContext):
        app = create_app(context, coordinator=draining_coordinator())
        async with client_for(app) as http:
            health = await http.get("/health")
            ready = await http.get("/ready")

        assert health.status_code == 503
        assert health.json()["status"] == "unhealthy"
        assert ready.json() == {"ready": False}

    @pytest.mark.asyncio
    async def test_not_initialized(self):
        set_state(None)
        app = FastAPI()
        app.include_router(router)
        async with client_for(app) as http:
            response = await http.get("/health")
        assert response.status_code == 503


class TestEnqueue:
    """POST /jobs."""

    @pytest.mark.asyncio
    async def test_accepts_job(self, client: httpx.AsyncClient, context: AppContext):
        response = await client.post("/jobs", json=legacy_payload())

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "queued"
        assert data["jobId"].startswith("tenant-7-webhook-")
        assert await context.queue.get_job(data["jobId"]) is not None

    @pytest.mark.asyncio
    async def test_idempotency_key_becomes_job_id(self, client: httpx.AsyncClient):
        headers = {"Idempotency-Key": "order-1001"}
        first = await client.post("/jobs", json=legacy_payload(), headers=headers)
        second = await client.post("/jobs", json=legacy_payload(), headers=headers)

        assert first.json()["jobId"] == "order-1001"
        assert second.status_code == 202
        assert second.json()["jobId"] == "order-1001"

    @pytest.mark.asyncio
    async def test_invalid_payload(self, client: httpx.AsyncClient):
        response = await client.post("/jobs", json=legacy_payload(url="not a url"))

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["field"] == "url"

    @pytest.mark.asyncio
    async def test_rejected_while_draining(self, context: AppContext):
        app = create_app(context, coordinator=draining_coordinator())
        async with client_for(app) as http:
            response = await http.post("/jobs", json=legacy_payload())
        assert response.status_code == 503


class TestAuthentication:
    """Bearer secret on the enqueue endpoint."""

    @pytest_asyncio.fixture
    async def secured(
        self, make_context: Callable[..., AppContext]
    ) -> AsyncIterator[httpx.AsyncClient]:
        ctx = make_context(api_secret="s3cret")
        await ctx.connections.get_shared_handle()
        async with client_for(create_app(ctx, worker_enabled=False)) as http:
            yield http
        await ctx.close()
        set_state(None)

    @pytest.mark.asyncio
    async def test_missing_credentials(self, secured: httpx.AsyncClient):
        response = await secured.post("/jobs", json=legacy_payload())
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_wrong_secret(self, secured: httpx.AsyncClient):
        response = await secured.post(
            "/jobs", json=legacy_payload(), headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_secret(self, secured: httpx.AsyncClient):
        response = await secured.post(
            "/jobs", json=legacy_payload(), headers={"Authorization": "Bearer s3cret"}
        )
        assert response.status_code == 202

    @pytest.mark.asyncio
    async def test_probes_stay_open(self, secured: httpx.AsyncClient):
        response = await secured.get("/health")
        assert response.status_code == 200
        assert response.json()["workers"] == {}


class TestStatsAndMetrics:
    @pytest.mark.asyncio
    async def test_stats_after_delivery(self, client: httpx.AsyncClient, context: AppContext):
        job_id = (await client.post("/jobs", json=legacy_payload())).json()["jobId"]

        async def completed() -> bool:
            return (await context.queue.get_stats()).completed == 1

        await wait_for(completed)

        data = (await client.get("/stats")).json()
        assert data["counts"]["completed"] == 1
        assert data["counts"]["queue"] == context.queue.name
        assert [job["id"] for job in data["recent_completed"]] == [job_id]
        assert data["recent_failed"] == []

    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient, context: AppContext):
        await client.post("/jobs", json=legacy_payload())
        await wait_for(lambda: context.metrics.succeeded == 1)

        data = (await client.get("/metrics")).json()
        assert data["jobs"]["succeeded"] == 1
        assert data["jobs"]["avg_duration_ms"] is not None
        assert data["circuit_breaker"]["is_open"] is False
        assert data["callbacks"] == {"pending": 0, "sent": 0, "failed": 0}
