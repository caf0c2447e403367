"""Queue-wide claim rate limiting.

Caps how many jobs all workers together may start per window. The window
is kept in Redis so every process consuming the queue shares it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from hookshot.logging import get_logger
from hookshot.models.base import generate_id, now_ms

from .scripts import RATE_LIMIT

if TYPE_CHECKING:
    from .connection import RedisHandle

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one claim attempt against the limiter."""

    allowed: bool
    retry_after_ms: int = 0


class RateLimiter:
    """Sliding-window limiter backed by a sorted set of claim timestamps.

    Uses a Lua script for an atomic check-and-record so that concurrent
    workers cannot both take the last slot of a window.
    """

    def __init__(self, key: str, max_claims: int, duration_ms: int) -> None:
        self.key = key
        self.max_claims = max_claims
        self.duration_ms = duration_ms

    async def try_acquire(self, handle: RedisHandle) -> RateLimitDecision:
        """Record one claim if the window has room."""
        script = handle.client.register_script(RATE_LIMIT)
        member = f"{now_ms()}:{generate_id('claim')}"
        result = await handle.execute(
            lambda _: script(
                keys=[self.key],
                args=[self.max_claims, self.duration_ms, now_ms(), member],
            )
        )
        allowed, retry_after = int(result[0]), int(result[1])
        return RateLimitDecision(allowed=bool(allowed), retry_after_ms=retry_after)

    async def acquire(self, handle: RedisHandle) -> int:
        """Wait until a claim is allowed.

        Returns:
            Total milliseconds spent waiting for room in the window.
        """
        waited = 0
        while True:
            decision = await self.try_acquire(handle)
            if decision.allowed:
                return waited
            logger.debug("Claim rate limit reached", retry_after_ms=decision.retry_after_ms)
            waited += decision.retry_after_ms
            await asyncio.sleep(decision.retry_after_ms / 1000)
