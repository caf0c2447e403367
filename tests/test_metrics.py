"""Tests for transition listeners: metrics and outcome reporting."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from helpers import canonical_payload, legacy_payload

from hookshot.exceptions import CircuitOpenError, DeliveryError, ValidationError
from hookshot.metrics import MetricsCollector
from hookshot.models import DeliveryResult, ErrorCategory, Job, normalize_payload
from hookshot.queue import JobTransition
from hookshot.webhooks import OutcomeReporter
from hookshot.webhooks.handler import build_outcome

CALLBACK = {"url": "https://app.example.com/hooks/result", "secret": "cb-secret"}


def failed_result(status_code: int = 500) -> DeliveryResult:
    return DeliveryResult(
        url="https://partner.example.com/hooks",
        method="POST",
        status_code=status_code,
        error_category=ErrorCategory.HTTP_ERROR,
        error_message=f"HTTP {status_code}",
    )


@pytest.fixture
def job() -> Job:
    return normalize_payload(canonical_payload(callback=CALLBACK), job_id="job-1")


class TestMetricsCollector:
    def test_counts_transitions(self, job: Job):
        metrics = MetricsCollector()
        metrics(JobTransition(job=job, state="completed", attempt=1, duration_ms=40))
        metrics(
            JobTransition(
                job=job,
                state="retrying",
                attempt=1,
                duration_ms=10,
                error=DeliveryError(failed_result()),
            )
        )
        metrics(
            JobTransition(
                job=job, state="dead", attempt=3, duration_ms=10, error=RuntimeError("boom")
            )
        )

        snapshot = metrics.snapshot()
        assert snapshot.succeeded == 1
        assert snapshot.failed == 2
        assert snapshot.retried == 1
        assert snapshot.dead == 1
        assert snapshot.processed == 3
        assert snapshot.last_error == "boom"
        assert snapshot.last_error_at is not None

    def test_duration_summary(self):
        metrics = MetricsCollector()
        for duration in range(1, 101):
            metrics.on_job_success(duration)

        snapshot = metrics.snapshot()
        assert snapshot.avg_duration_ms == 50.5
        assert snapshot.p95_duration_ms == 96

    def test_empty(self):
        snapshot = MetricsCollector().snapshot()
        assert snapshot.avg_duration_ms is None
        assert snapshot.p95_duration_ms is None
        assert snapshot.processed == 0


class TestBuildOutcome:
    """Callback documents built from transitions."""

    def test_completed(self, job: Job):
        result = DeliveryResult(
            url="https://partner.example.com/hooks", method="POST", status_code=200, success=True
        )
        outcome = build_outcome(
            JobTransition(job=job, state="completed", attempt=1, duration_ms=5, result=result)
        )
        assert outcome.status == "success"
        assert outcome.destination.status_code == 200

    def test_retrying_carries_next_attempt(self, job: Job):
        next_retry = datetime.now(UTC) + timedelta(seconds=2)
        outcome = build_outcome(
            JobTransition(
                job=job,
                state="retrying",
                attempt=1,
                duration_ms=5,
                error=DeliveryError(failed_result(503)),
                next_retry_at=next_retry,
            )
        )
        assert outcome.status == "retrying"
        assert outcome.destination.status_code == 503
        assert outcome.execution.next_retry_at == next_retry

    def test_open_breaker(self, job: Job):
        outcome = build_outcome(
            JobTransition(
                job=job, state="dead", attempt=3, duration_ms=0, error=CircuitOpenError(5, 10.0)
            )
        )
        assert outcome.status == "failed"
        assert outcome.error is not None
        assert outcome.error.code == ErrorCategory.CIRCUIT_OPEN.value

    def test_validation(self, job: Job):
        outcome = build_outcome(
            JobTransition(
                job=job,
                state="dead",
                attempt=1,
                duration_ms=0,
                error=ValidationError("jobType", "unsupported job type 'email'"),
            )
        )
        assert outcome.error is not None
        assert outcome.error.code == "validation"
        assert outcome.error.message == "jobType: unsupported job type 'email'"


class TestOutcomeReporter:
    def test_final_outcome_submitted(self, job: Job):
        notifier = MagicMock()
        reporter = OutcomeReporter(notifier)

        reporter(
            JobTransition(
                job=job, state="dead", attempt=3, duration_ms=1, error=DeliveryError(failed_result())
            )
        )

        notifier.submit.assert_called_once()
        outcome, url, secret = notifier.submit.call_args.args
        assert outcome.status == "failed"
        assert url == CALLBACK["url"]
        assert secret == "cb-secret"

    def test_retrying_skipped_by_default(self, job: Job):
        notifier = MagicMock()
        OutcomeReporter(notifier)(
            JobTransition(
                job=job, state="retrying", attempt=1, duration_ms=1, error=DeliveryError(failed_result())
            )
        )
        notifier.submit.assert_not_called()

    def test_retrying_reported_when_enabled(self, job: Job):
        notifier = MagicMock()
        OutcomeReporter(notifier, notify_retries=True)(
            JobTransition(
                job=job, state="retrying", attempt=1, duration_ms=1, error=DeliveryError(failed_result())
            )
        )
        notifier.submit.assert_called_once()

    def test_job_without_callback(self):
        notifier = MagicMock()
        job = normalize_payload(legacy_payload())
        OutcomeReporter(notifier)(JobTransition(job=job, state="completed", attempt=1, duration_ms=1))
        notifier.submit.assert_not_called()
