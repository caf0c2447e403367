#!/usr/bin/env python3
"""Quickstart demo - run a worker pool in-process and watch jobs finish.

Demonstrates:
- AppContext: wiring Redis handles, the breaker and the worker pool
- enqueue_payload(): both accepted payload shapes
- Transition listeners: observing completed, retrying and dead jobs

Prerequisites:
    - Redis running: docker run -p 6379:6379 redis:7
"""

import asyncio

from hookshot import Settings, configure_logging
from hookshot.context import AppContext
from hookshot.queue import JobTransition


def print_transition(transition: JobTransition) -> None:
    print(f"  {transition.job.id}: {transition.state} (attempt {transition.attempt})")


async def main() -> None:
    settings = Settings(queue_name="quickstart", http_enabled=False, default_backoff_ms=500)
    configure_logging(level="WARNING", format="text")

    context = AppContext.create(settings)
    context.processor.add_listener(print_transition)
    await context.start_worker()

    try:
        await context.queue.enqueue_payload(
            {"tenantId": 1, "integrationId": 1, "url": "https://httpbin.org/post"}
        )
        await context.queue.enqueue_payload(
            {
                "tenantId": 1,
                "destination": {"url": "https://httpbin.org/status/503"},
                "options": {"retries": 2, "backoff": 500},
            }
        )
        await asyncio.sleep(5)
        print(await context.queue.get_stats())
    finally:
        await context.close()


if __name__ == "__main__":
    asyncio.run(main())
