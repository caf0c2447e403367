"""Test helpers shared across test modules."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import pytest


class Recorder:
    """Handler for ``httpx.MockTransport`` that records every request.

    Responds with ``status_code`` and ``json``. Set ``responses`` to a list
    of status codes to answer successive requests differently.
    """

    def __init__(self, status_code: int = 200, json: Any = None) -> None:
        self.status_code = status_code
        self.json = json if json is not None else {"ok": True}
        self.responses: list[int] = []
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.responses.pop(0) if self.responses else self.status_code
        return httpx.Response(status, json=self.json)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


async def wait_for(
    condition: Callable[[], Awaitable[bool] | bool],
    timeout: float = 5.0,
    interval: float = 0.02,
) -> None:
    """Poll ``condition`` until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = condition()
        if not isinstance(result, bool):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            pytest.fail(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


def legacy_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "tenantId": 7,
        "integrationId": 42,
        "url": "https://partner.example.com/hooks",
        "method": "post",
        "headers": {"X-Partner": "acme"},
        "body": {"event": "order.created", "id": 1},
    }
    payload.update(overrides)
    return payload


def canonical_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "jobType": "webhook",
        "tenantId": 7,
        "integrationId": 42,
        "destination": {
            "url": "https://partner.example.com/hooks",
            "method": "POST",
            "headers": {"X-Partner": "acme"},
            "body": {"event": "order.created", "id": 1},
        },
    }
    payload.update(overrides)
    return payload
