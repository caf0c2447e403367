#!/usr/bin/env python3
"""REST API client demonstration.

This example enqueues webhooks through the Hookshot HTTP surface.
First, start a worker in another terminal:

    hookshot worker

Then run this script:

    python examples/api_client.py

The API provides:
    POST /jobs     - Enqueue a webhook (legacy or canonical payload)
    GET  /health   - Worker, Redis and breaker state
    GET  /stats    - Queue counts and recent jobs
"""

import asyncio
import os

import httpx

BASE_URL = os.environ.get("HOOKSHOT_URL", "http://localhost:3001")
API_SECRET = os.environ.get("HOOKSHOT_API_SECRET")


async def main() -> None:
    """Run the API client demo."""
    headers = {"Authorization": f"Bearer {API_SECRET}"} if API_SECRET else {}

    async with httpx.AsyncClient(base_url=BASE_URL, headers=headers, timeout=10.0) as client:
        try:
            health = (await client.get("/health")).json()
        except httpx.ConnectError:
            print(f"Could not connect to {BASE_URL}. Start one with: hookshot worker")
            return
        print(f"Status: {health['status']} (redis: {health['redis']})")

        # Legacy flat shape
        legacy = {
            "tenantId": 7,
            "integrationId": 42,
            "url": "https://httpbin.org/post",
            "body": {"event": "order.created", "id": 1},
        }
        resp = await client.post("/jobs", json=legacy)
        resp.raise_for_status()
        print(f"Queued legacy job {resp.json()['jobId']}")

        # Canonical shape with a callback, enqueued idempotently
        canonical = {
            "tenantId": 7,
            "destination": {
                "url": "https://httpbin.org/status/500",
                "method": "POST",
                "body": {"event": "order.cancelled", "id": 2},
            },
            "callback": {"url": "https://httpbin.org/post", "secret": "demo-secret"},
            "options": {"retries": 3, "backoff": 1000},
            "metadata": {"source": "api_client example"},
        }
        for _ in range(2):
            resp = await client.post("/jobs", json=canonical, headers={"Idempotency-Key": "demo-order-2"})
            resp.raise_for_status()
        print("Queued canonical job demo-order-2 (second request was a no-op)")

        await asyncio.sleep(10)
        stats = (await client.get("/stats")).json()
        print(f"Counts: {stats['counts']}")
        for job in stats["recent_failed"]:
            print(f"  failed {job['id']}: {job['failed_reason']}")


if __name__ == "__main__":
    asyncio.run(main())
