"""Webhook job handling: the per-job function and outcome reporting.

``WebhookJobHandler`` is the ``JobHandler`` plugged into the generic
``JobProcessor``. ``OutcomeReporter`` listens to the processor's transitions
and hands callback outcomes to the ``OutcomeNotifier``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from hookshot.exceptions import CircuitOpenError, DeliveryError, JobStalledError, ValidationError
from hookshot.logging import get_logger
from hookshot.models import CallbackOutcome, DeliveryResult, ErrorCategory

if TYPE_CHECKING:
    from hookshot.models import Job
    from hookshot.queue.processor import JobTransition

    from .callbacks import OutcomeNotifier
    from .delivery import DeliveryExecutor

logger = get_logger(__name__)


class WebhookJobHandler:
    """Delivers one webhook job.

    Returns the ``DeliveryResult`` of a successful delivery. A failed
    delivery raises ``DeliveryError`` (retryable) carrying the result, and an
    open breaker raises ``CircuitOpenError``; both consume an attempt.
    """

    def __init__(self, executor: DeliveryExecutor) -> None:
        self._executor = executor

    async def __call__(self, job: Job) -> DeliveryResult:
        if job.job_type != "webhook":
            raise ValidationError("jobType", f"unsupported job type '{job.job_type}'")
        result = await self._executor.deliver(job)
        if not result.success:
            raise DeliveryError(result, retryable=True)
        return result


def _error_category(error: BaseException | None) -> ErrorCategory | None:
    if error is None:
        return None
    if isinstance(error, DeliveryError):
        return error.result.error_category
    if isinstance(error, CircuitOpenError):
        return ErrorCategory.CIRCUIT_OPEN
    if isinstance(error, ValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(error, JobStalledError):
        return ErrorCategory.STALLED
    return ErrorCategory.UNKNOWN


def delivery_result(transition: JobTransition) -> DeliveryResult | None:
    """The destination attempt behind a transition, if one was made."""
    if isinstance(transition.result, DeliveryResult):
        return transition.result
    if isinstance(transition.error, DeliveryError):
        return transition.error.result
    return None


def build_outcome(transition: JobTransition) -> CallbackOutcome:
    """Build the callback document for a processor transition."""
    result = delivery_result(transition)
    return CallbackOutcome.build(
        transition.job,
        attempt=transition.attempt,
        result=result,
        error_message=transition.error_message,
        error_category=_error_category(transition.error),
        will_retry=transition.state == "retrying",
        next_retry_at=transition.next_retry_at,
    )


class OutcomeReporter:
    """Transition listener that reports job outcomes to their callback URLs.

    Final outcomes (completed or dead) are always reported when the job has
    a callback. Interim ``retrying`` outcomes are reported only when
    ``notify_retries`` is set.
    """

    def __init__(self, notifier: OutcomeNotifier, *, notify_retries: bool = False) -> None:
        self._notifier = notifier
        self.notify_retries = notify_retries

    def __call__(self, transition: JobTransition) -> None:
        callback = transition.job.callback
        if callback is None:
            return
        if transition.state == "retrying" and not self.notify_retries:
            return
        outcome = build_outcome(transition)
        logger.debug(
            "Queueing outcome notification",
            job_id=outcome.job_id,
            status=outcome.status,
        )
        self._notifier.submit(outcome, callback.url, callback.secret)
