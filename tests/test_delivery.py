"""Tests for destination delivery and error classification."""

from __future__ import annotations

import asyncio
import json
import socket

import httpx
import pytest
from helpers import Recorder, canonical_payload

from hookshot.exceptions import CircuitOpenError, DeliveryError, ValidationError
from hookshot.models import Destination, ErrorCategory, Job, normalize_payload
from hookshot.webhooks import CircuitBreaker, DeliveryExecutor, WebhookJobHandler, build_request, classify_error


def make_job(**destination: object) -> Job:
    fields = {"url": "https://partner.example.com/hooks", "body": {"event": "ping"}}
    fields.update(destination)
    return normalize_payload(canonical_payload(destination=fields), job_id="job-1")


def executor_for(handler, breaker: CircuitBreaker | None = None) -> DeliveryExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DeliveryExecutor(breaker or CircuitBreaker(), client=client)


class TestBuildRequest:
    """Canonical request construction."""

    def test_json_body_and_default_headers(self):
        request = build_request(Destination(url="https://example.com", body={"a": 1}))
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"].startswith("hookshot/")
        assert json.loads(request.content) == {"a": 1}

    def test_content_type_override(self):
        request = build_request(
            Destination(url="https://example.com", headers={"content-type": "text/plain"}, body="hi")
        )
        assert "Content-Type" not in request.headers
        assert request.headers["content-type"] == "text/plain"
        assert request.content == b"hi"

    def test_no_body(self):
        request = build_request(Destination(url="https://example.com", method="GET"))
        assert request.content is None


class TestClassifyError:
    """Transport errors map to categories through their cause chain."""

    def test_timeout(self):
        assert classify_error(httpx.ReadTimeout("read timed out")) is ErrorCategory.TIMEOUT

    def test_dns_from_gaierror_cause(self):
        try:
            try:
                raise socket.gaierror(-2, "Name or service not known")
            except socket.gaierror as inner:
                raise httpx.ConnectError("connect failed") from inner
        except httpx.ConnectError as e:
            assert classify_error(e) is ErrorCategory.DNS_ERROR

    def test_dns_from_message(self):
        error = httpx.ConnectError("[Errno -3] Temporary failure in name resolution")
        assert classify_error(error) is ErrorCategory.DNS_ERROR

    def test_connection_refused(self):
        assert classify_error(ConnectionRefusedError(111, "refused")) is ErrorCategory.CONNECTION_REFUSED
        error = httpx.ConnectError("[Errno 111] Connection refused")
        assert classify_error(error) is ErrorCategory.CONNECTION_REFUSED

    def test_other_transport_error(self):
        error = httpx.RemoteProtocolError("peer closed connection")
        assert classify_error(error) is ErrorCategory.CONNECTION_FAILED

    def test_unknown(self):
        assert classify_error(ValueError("odd")) is ErrorCategory.UNKNOWN


class TestDeliveryExecutor:
    """One attempt per call, classified, feeding the breaker."""

    @pytest.mark.asyncio
    async def test_success(self):
        recorder = Recorder(200, json={"received": True})
        breaker = CircuitBreaker()
        executor = executor_for(recorder, breaker)

        result = await executor.deliver(make_job(headers={"X-Partner": "acme"}))

        assert result.success
        assert result.status_code == 200
        assert result.error_category is ErrorCategory.NONE
        assert result.response_body == {"received": True}
        sent = recorder.requests[0]
        assert sent.headers["X-Partner"] == "acme"
        assert json.loads(sent.content) == {"event": "ping"}
        assert breaker.consecutive_successes == 1

    @pytest.mark.asyncio
    async def test_redirect_counts_as_success(self):
        executor = executor_for(lambda request: httpx.Response(302, headers={"Location": "/x"}))
        result = await executor.deliver(make_job())
        assert result.success
        assert result.response_body is None

    @pytest.mark.asyncio
    async def test_server_error(self):
        breaker = CircuitBreaker()
        executor = executor_for(lambda request: httpx.Response(500, text="oops"), breaker)

        result = await executor.deliver(make_job())

        assert not result.success
        assert result.status_code == 500
        assert result.error_category is ErrorCategory.HTTP_ERROR
        assert result.error_message == "HTTP 500"
        assert result.response_body == {"raw": "oops"}
        assert breaker.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

        result = await executor_for(refuse).deliver(make_job())
        assert result.error_category is ErrorCategory.CONNECTION_REFUSED
        assert result.status_code is None

    @pytest.mark.asyncio
    async def test_hard_deadline(self):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(2)
            return httpx.Response(200)

        result = await executor_for(slow).deliver(make_job(timeout=100))
        assert result.error_category is ErrorCategory.TIMEOUT
        assert result.error_message == "Request timed out after 100ms"

    @pytest.mark.asyncio
    async def test_open_breaker_sends_nothing(self):
        recorder = Recorder()
        breaker = CircuitBreaker(threshold=1)
        breaker.record_failure()
        executor = executor_for(recorder, breaker)

        with pytest.raises(CircuitOpenError):
            await executor.deliver(make_job())
        assert recorder.requests == []


class TestWebhookJobHandler:
    """The per-job function plugged into the worker pool."""

    @pytest.mark.asyncio
    async def test_returns_result_on_success(self):
        handler = WebhookJobHandler(executor_for(Recorder(200)))
        result = await handler(make_job())
        assert result.success

    @pytest.mark.asyncio
    async def test_failure_raises_retryable_delivery_error(self):
        handler = WebhookJobHandler(executor_for(Recorder(503)))
        with pytest.raises(DeliveryError) as exc_info:
            await handler(make_job())
        assert exc_info.value.retryable
        assert exc_info.value.result.status_code == 503

    @pytest.mark.asyncio
    async def test_rejects_other_job_types(self):
        recorder = Recorder()
        handler = WebhookJobHandler(executor_for(recorder))
        job = make_job().model_copy(update={"job_type": "email"})
        with pytest.raises(ValidationError):
            await handler(job)
        assert recorder.requests == []
