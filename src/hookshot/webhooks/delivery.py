"""Destination delivery: one HTTP attempt per call, classified.

``DeliveryExecutor.deliver`` never raises for a failed destination call; it
returns a ``DeliveryResult`` describing what happened. The only exception it
raises is ``CircuitOpenError``, before any network call is made.
"""

from __future__ import annotations

import asyncio
import json
import socket
import time
from typing import TYPE_CHECKING, Any

import httpx

from hookshot.exceptions import CircuitOpenError
from hookshot.logging import get_logger
from hookshot.models import DeliveryRequest, DeliveryResult, ErrorCategory
from hookshot.models.base import utc_now

if TYPE_CHECKING:
    from hookshot.models import Destination, Job

    from .circuit_breaker import CircuitBreaker

logger = get_logger(__name__)

USER_AGENT = "hookshot/0.1"
# Response bodies larger than this are truncated before being captured
MAX_CAPTURED_BODY = 64 * 1024

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "getaddrinfo failed",
    "name resolution",
)


def build_request(destination: Destination) -> DeliveryRequest:
    """Turn a job destination into the canonical HTTP request.

    JSON-encodes the body unless it is already a string, and sets
    ``Content-Type: application/json`` unless the job overrides it.
    """
    headers = {"User-Agent": USER_AGENT}
    if not any(name.lower() == "content-type" for name in destination.headers):
        headers["Content-Type"] = "application/json"
    headers.update(destination.headers)

    content: bytes | None
    if destination.body is None:
        content = None
    elif isinstance(destination.body, str):
        content = destination.body.encode("utf-8")
    else:
        content = json.dumps(destination.body, separators=(",", ":")).encode("utf-8")

    return DeliveryRequest(
        url=destination.url,
        method=destination.method,
        headers=headers,
        content=content,
        timeout_ms=destination.timeout_ms,
    )


def _causes(error: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = error
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def classify_error(error: BaseException) -> ErrorCategory:
    """Map a transport exception to an error category.

    The underlying socket error is usually wrapped by httpx and httpcore, so
    the whole cause chain is inspected.
    """
    chain = _causes(error)
    if any(isinstance(e, (asyncio.TimeoutError, httpx.TimeoutException)) for e in chain):
        return ErrorCategory.TIMEOUT
    if any(isinstance(e, socket.gaierror) for e in chain):
        return ErrorCategory.DNS_ERROR
    if any(isinstance(e, ConnectionRefusedError) for e in chain):
        return ErrorCategory.CONNECTION_REFUSED

    text = " ".join(str(e).lower() for e in chain)
    if any(marker in text for marker in _DNS_MARKERS):
        return ErrorCategory.DNS_ERROR
    if "connection refused" in text or "connect call failed" in text:
        return ErrorCategory.CONNECTION_REFUSED
    if any(isinstance(e, (httpx.TransportError, ConnectionError, OSError)) for e in chain):
        return ErrorCategory.CONNECTION_FAILED
    return ErrorCategory.UNKNOWN


def capture_body(response: httpx.Response) -> Any:
    """Response body as JSON, else ``{"raw": text}`` (None when empty)."""
    text = response.text[:MAX_CAPTURED_BODY]
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


class DeliveryExecutor:
    """Sends job destinations through one shared HTTP client.

    Example:
        ```python
        async with DeliveryExecutor(breaker) as executor:
            result = await executor.deliver(job)
            if not result.success:
                ...
        ```
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        client: httpx.AsyncClient | None = None,
        default_timeout_ms: int = 12_000,
    ) -> None:
        """Initialize the executor.

        Args:
            breaker: Circuit breaker consulted before and updated after each call.
            client: HTTP client to use. A pooled client is created if None.
            default_timeout_ms: Client-level timeout for requests without one.
        """
        self._breaker = breaker
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=default_timeout_ms / 1000,
            follow_redirects=False,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def __aenter__(self) -> DeliveryExecutor:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def deliver(self, job: Job) -> DeliveryResult:
        """Deliver ``job``'s destination once.

        Raises:
            CircuitOpenError: If the breaker is open. No request is sent.
        """
        if self._breaker.is_open():
            raise CircuitOpenError(
                failures=self._breaker.consecutive_failures,
                retry_after=self._breaker.retry_after(),
            )
        request = build_request(job.destination)
        result = await self.send(request)

        if result.success:
            self._breaker.record_success()
            logger.info(
                "Webhook delivered",
                url=result.url,
                status_code=result.status_code,
                duration_ms=result.duration_ms,
            )
        else:
            self._breaker.record_failure()
            logger.warning(
                "Webhook delivery failed",
                url=result.url,
                status_code=result.status_code,
                error_category=result.error_category.value,
                error=result.error_message,
                duration_ms=result.duration_ms,
            )
        return result

    async def send(self, request: DeliveryRequest) -> DeliveryResult:
        """Issue ``request`` under a hard deadline and classify the outcome."""
        started_at = utc_now()
        started = time.perf_counter()
        timeout = request.timeout_ms / 1000

        def finish(**fields: Any) -> DeliveryResult:
            return DeliveryResult(
                url=request.url,
                method=request.method,
                duration_ms=int((time.perf_counter() - started) * 1000),
                started_at=started_at,
                completed_at=utc_now(),
                **fields,
            )

        try:
            # The outer deadline also bounds time spent in connection setup
            response = await asyncio.wait_for(
                self._client.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    content=request.content,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return finish(
                error_category=ErrorCategory.TIMEOUT,
                error_message=f"Request timed out after {request.timeout_ms}ms",
            )
        except httpx.HTTPError as e:
            category = classify_error(e)
            return finish(error_category=category, error_message=f"{category.value}: {e}")
        except OSError as e:
            category = classify_error(e)
            return finish(error_category=category, error_message=f"{category.value}: {e}")
        except Exception as e:
            logger.exception("Unexpected error while sending webhook", url=request.url)
            return finish(error_category=ErrorCategory.UNKNOWN, error_message=f"unknown: {e}")

        success = 200 <= response.status_code < 400
        return finish(
            status_code=response.status_code,
            success=success,
            error_category=ErrorCategory.NONE if success else ErrorCategory.HTTP_ERROR,
            error_message=None if success else f"HTTP {response.status_code}",
            response_body=capture_body(response),
        )
