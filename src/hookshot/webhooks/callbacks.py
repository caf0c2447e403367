"""Outcome notification to caller-supplied callback URLs.

Outcomes are posted best-effort, with their own short retry policy that is
independent of the job's retries. A callback that cannot be delivered is
logged and dropped; it never changes the job's recorded state.

Each request carries:

* ``Authorization: Bearer <secret>``
* ``X-Hookshot-Signature: sha256=<hmac of the body>`` so receivers can verify it
* ``X-Hookshot-Delivery-Id: <job id>:<attempt>``, stable across notifier
  retries, so receivers can drop duplicate reports of the same attempt
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import hmac
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hookshot.exceptions import CallbackDeliveryError
from hookshot.logging import get_logger
from hookshot.models import CallbackOutcome

logger = get_logger(__name__)

USER_AGENT = "hookshot-callback/0.1"


def compute_signature(payload: str, secret: str) -> str:
    """Compute the HMAC-SHA256 signature of a callback body.

    Args:
        payload: JSON body as sent.
        secret: Shared secret.

    Returns:
        Signature in format "sha256=<hex_digest>".
    """
    signature = hmac.new(
        key=secret.encode("utf-8"),
        msg=payload.encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"sha256={signature}"


def verify_signature(payload: str, secret: str, signature: str) -> bool:
    """Check a received ``X-Hookshot-Signature`` header in constant time."""
    return hmac.compare_digest(compute_signature(payload, secret), signature)


class CallbackStatusError(Exception):
    """The callback endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


@dataclass(frozen=True)
class OutcomeMessage:
    """One outcome waiting on the outbound channel."""

    outcome: CallbackOutcome
    callback_url: str
    secret: str | None = None


class OutcomeNotifier:
    """Posts ``CallbackOutcome`` documents to callback URLs.

    ``notify`` sends right away (with retries). ``submit`` puts the outcome
    on an in-memory channel drained by a fixed number of consumer tasks, so
    job completion never waits on a callback.

    Example:
        ```python
        notifier = OutcomeNotifier(default_secret="s3cret")
        notifier.start()
        notifier.submit(outcome, "https://caller.example.com/hooks/result")
        ...
        await notifier.close(timeout=10)
        ```
    """

    def __init__(
        self,
        *,
        timeout_ms: int = 10_000,
        max_retries: int = 3,
        backoff_base_ms: int = 1_000,
        default_secret: str | None = None,
        concurrency: int = 10,
        queue_size: int = 10_000,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the notifier.

        Args:
            timeout_ms: Per-attempt request timeout.
            max_retries: Retries after the first attempt.
            backoff_base_ms: Retry ``n`` waits ``2^n`` times this value.
            default_secret: Bearer secret used when a callback has none.
            concurrency: Consumer tasks draining the outbound channel.
            queue_size: Outcomes held before ``submit`` starts dropping.
            client: HTTP client to use. One is created if None.
            sleep: Coroutine used between retries.
        """
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self._default_secret = default_secret
        self._concurrency = concurrency
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_ms / 1000)
        self._queue: asyncio.Queue[OutcomeMessage] = asyncio.Queue(maxsize=queue_size)
        self._consumers: list[asyncio.Task[None]] = []
        self._closed = False
        self._pending = 0
        self.sent = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        """Outcomes queued or being sent."""
        return self._pending

    def start(self) -> None:
        """Start the consumer tasks. Safe to call more than once."""
        if self._consumers or self._closed:
            return
        loop = asyncio.get_running_loop()
        self._consumers = [
            loop.create_task(self._consume(), name=f"callback-consumer-{i}")
            for i in range(self._concurrency)
        ]

    def submit(
        self,
        outcome: CallbackOutcome,
        callback_url: str,
        secret: str | None = None,
    ) -> bool:
        """Queue an outcome for delivery without waiting for it.

        Returns:
            False if the notifier is closed or the channel is full.
        """
        if self._closed:
            logger.warning("Notifier closed, outcome dropped", job_id=outcome.job_id)
            return False
        self.start()
        try:
            self._queue.put_nowait(OutcomeMessage(outcome, callback_url, secret))
        except asyncio.QueueFull:
            logger.error(
                "Callback channel full, outcome dropped",
                job_id=outcome.job_id,
                callback_url=callback_url,
            )
            self.failed += 1
            return False
        self._pending += 1
        return True

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.notify(message.outcome, message.callback_url, message.secret)
            except Exception:
                logger.exception("Callback consumer error", job_id=message.outcome.job_id)
            finally:
                self._pending -= 1
                self._queue.task_done()

    def _headers(self, outcome: CallbackOutcome, body: str, secret: str | None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Hookshot-Delivery-Id": f"{outcome.job_id}:{outcome.execution.attempt}",
            "X-Hookshot-Status": outcome.status,
        }
        if secret:
            headers["Authorization"] = f"Bearer {secret}"
            headers["X-Hookshot-Signature"] = compute_signature(body, secret)
        return headers

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Callback attempt failed, retrying",
            attempt=retry_state.attempt_number,
            retry_in_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error) if error else None,
        )

    async def notify(
        self,
        outcome: CallbackOutcome,
        callback_url: str,
        secret: str | None = None,
    ) -> bool:
        """Post ``outcome`` to ``callback_url``, retrying transient failures.

        Never raises for delivery problems: a callback that fails every
        attempt is logged as a ``CallbackDeliveryError``.

        Returns:
            True if the callback endpoint acknowledged the outcome.
        """
        secret = secret or self._default_secret
        body = outcome.to_json()
        headers = self._headers(outcome, body, secret)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=2 * self.backoff_base_ms / 1000, max=3600),
            retry=retry_if_exception_type((httpx.HTTPError, CallbackStatusError)),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.post(
                        callback_url,
                        content=body,
                        headers=headers,
                        timeout=self.timeout_ms / 1000,
                    )
                    if not response.is_success:
                        raise CallbackStatusError(response.status_code)
        except (httpx.HTTPError, CallbackStatusError) as e:
            error = CallbackDeliveryError(callback_url, self.max_retries + 1, str(e) or type(e).__name__)
            logger.error(
                "Callback delivery failed",
                job_id=outcome.job_id,
                callback_url=callback_url,
                status=outcome.status,
                error=error.message,
            )
            self.failed += 1
            return False

        logger.info(
            "Callback delivered",
            job_id=outcome.job_id,
            callback_url=callback_url,
            status=outcome.status,
        )
        self.sent += 1
        return True

    async def close(self, timeout: float | None = None) -> bool:
        """Stop accepting outcomes and drain the channel.

        Returns:
            True if every queued outcome was processed before ``timeout``.
        """
        self._closed = True
        drained = True
        if self._consumers:
            if self._pending:
                try:
                    await asyncio.wait_for(self._queue.join(), timeout=timeout)
                except asyncio.TimeoutError:
                    drained = False
                    logger.warning(
                        "Callback channel not drained before timeout, outcomes dropped",
                        pending=self._pending,
                    )
            for task in self._consumers:
                task.cancel()
            for task in self._consumers:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            self._consumers = []
        if self._owns_client:
            await self._client.aclose()
        return drained
