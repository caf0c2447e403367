"""Tests for the per-attempt delivery audit log."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable

import httpx
import pytest
from helpers import Recorder, canonical_payload, no_sleep, wait_for

from hookshot.config import Settings
from hookshot.context import AppContext
from hookshot.exceptions import CircuitOpenError, DeliveryError, JobStalledError
from hookshot.models import DeliveryResult, ErrorCategory, Job, normalize_payload
from hookshot.queue import JobTransition
from hookshot.webhooks import AttemptLogger, build_attempt_record

APP_URL = "https://app.example.com/"
LOG_ENDPOINT = "https://app.example.com/api/internal/webhook-logs"


@pytest.fixture
def job() -> Job:
    return normalize_payload(canonical_payload(), job_id="job-1")


def delivered(job: Job, status_code: int = 200) -> DeliveryResult:
    return DeliveryResult(
        url=job.destination.url,
        method="POST",
        status_code=status_code,
        success=status_code < 400,
        duration_ms=35,
        error_category=ErrorCategory.NONE if status_code < 400 else ErrorCategory.HTTP_ERROR,
        error_message=None if status_code < 400 else f"HTTP {status_code}",
        response_body={"ok": status_code < 400},
    )


def completed(job: Job) -> JobTransition:
    return JobTransition(job=job, state="completed", attempt=1, duration_ms=40, result=delivered(job))


def attempt_logger(handler: Callable, **kwargs) -> AttemptLogger:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AttemptLogger(APP_URL, "internal-secret", client=client, **kwargs)


class TestBuildAttemptRecord:
    def test_successful_attempt(self, job: Job):
        transition = JobTransition(
            job=job, state="completed", attempt=1, duration_ms=40, result=delivered(job)
        )
        record = build_attempt_record(transition)
        assert record is not None
        body = json.loads(record.to_json())

        assert body["integrationId"] == 42
        assert body["tenantId"] == 7
        assert body["url"] == "https://partner.example.com/hooks"
        assert body["method"] == "POST"
        assert body["statusCode"] == 200
        assert body["success"] is True
        assert body["errorMessage"] is None
        assert json.loads(body["requestBody"]) == {"event": "order.created", "id": 1}
        assert json.loads(body["responseBody"]) == {"ok": True}
        assert body["duration"] == 35
        assert body["attemptNumber"] == 1
        assert "negocioId" not in body

    def test_failed_attempt(self, job: Job):
        transition = JobTransition(
            job=job,
            state="retrying",
            attempt=2,
            duration_ms=40,
            error=DeliveryError(delivered(job, 503)),
        )
        record = build_attempt_record(transition)
        assert record is not None
        assert record.status_code == 503
        assert not record.success
        assert record.error_message == "HTTP 503"
        assert record.attempt_number == 2

    def test_attempt_without_response(self, job: Job):
        transition = JobTransition(
            job=job, state="retrying", attempt=1, duration_ms=3, error=CircuitOpenError(5, 10.0)
        )
        record = build_attempt_record(transition)
        assert record is not None
        assert record.status_code == 0
        assert record.response_body is None
        assert record.duration == 3
        assert "Circuit breaker open" in (record.error_message or "")

    def test_negocio_id_from_metadata(self):
        job = normalize_payload(canonical_payload(metadata={"negocioId": 991}), job_id="job-2")
        transition = JobTransition(
            job=job, state="completed", attempt=1, duration_ms=1, result=delivered(job)
        )
        record = build_attempt_record(transition)
        assert record is not None
        assert json.loads(record.to_json())["negocioId"] == 991

    def test_stalled_job_has_no_attempt(self, job: Job):
        transition = JobTransition(
            job=job, state="dead", attempt=1, duration_ms=0, error=JobStalledError(job.id)
        )
        assert build_attempt_record(transition) is None


class TestAttemptLogger:
    def test_endpoint(self):
        assert AttemptLogger(APP_URL, "s", client=Recorder().client()).endpoint == LOG_ENDPOINT

    @pytest.mark.asyncio
    async def test_send_posts_record_with_internal_secret(self, job: Job):
        recorder = Recorder()
        logger = attempt_logger(recorder)
        record = build_attempt_record(completed(job))
        assert record is not None

        assert await logger.send(record, job_id=job.id)

        [request] = recorder.requests
        assert str(request.url) == LOG_ENDPOINT
        assert request.method == "POST"
        assert request.headers["x-internal-secret"] == "internal-secret"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content)["attemptNumber"] == 1
        assert logger.sent == 1

    @pytest.mark.asyncio
    async def test_rejected_record_is_dropped(self, job: Job):
        logger = attempt_logger(Recorder(status_code=401))
        record = build_attempt_record(completed(job))
        assert record is not None

        assert not await logger.send(record)
        assert logger.failed == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_dropped(self, job: Job):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        logger = attempt_logger(refuse)
        record = build_attempt_record(completed(job))
        assert record is not None

        assert not await logger.send(record)
        assert logger.failed == 1

    @pytest.mark.asyncio
    async def test_listener_sends_in_background(self, job: Job):
        recorder = Recorder()
        logger = attempt_logger(recorder)
        logger(completed(job))
        logger(
            JobTransition(job=job, state="dead", attempt=1, duration_ms=0, error=JobStalledError(job.id))
        )

        assert await logger.close(timeout=5)
        assert len(recorder.requests) == 1
        assert logger.pending == 0

    @pytest.mark.asyncio
    async def test_close_drops_records_past_timeout(self, job: Job):
        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(30)
            return httpx.Response(200)

        logger = attempt_logger(hang)
        logger(completed(job))

        assert not await logger.close(timeout=0.1)
        assert logger.pending == 0
        assert logger.sent == 0

    @pytest.mark.asyncio
    async def test_closed_logger_ignores_transitions(self, job: Job):
        recorder = Recorder()
        logger = attempt_logger(recorder)
        await logger.close()
        logger(completed(job))
        assert logger.pending == 0
        assert recorder.requests == []


class TestWorkerAttemptLog:
    @pytest.mark.asyncio
    async def test_every_attempt_is_logged(
        self, settings: Settings, client_factory: Callable, destination: Recorder
    ):
        destination.responses = [500]
        audit = Recorder()
        ctx = AppContext.create(
            settings.model_copy(
                update={"attempt_log_url": APP_URL, "attempt_log_secret": "internal-secret"}
            ),
            client_factory=client_factory,
            http_client=destination.client(),
            callback_client=Recorder().client(),
            callback_sleep=no_sleep,
            attempt_log_client=audit.client(),
        )
        assert ctx.attempt_log is not None
        await ctx.start_worker()
        try:
            await ctx.queue.enqueue_payload(canonical_payload(options={"retries": 3, "backoff": 0}))
            await wait_for(lambda: ctx.attempt_log.sent == 2)
        finally:
            await ctx.close()

        records = sorted(
            (json.loads(r.content) for r in audit.requests), key=lambda r: r["attemptNumber"]
        )
        assert [r["attemptNumber"] for r in records] == [1, 2]
        assert [r["statusCode"] for r in records] == [500, 200]
        assert [r["success"] for r in records] == [False, True]
        assert records[0]["errorMessage"] == "HTTP 500"

    @pytest.mark.asyncio
    async def test_disabled_without_url(self, make_context: Callable[..., AppContext]):
        ctx = make_context()
        assert ctx.attempt_log is None
        await ctx.close()
