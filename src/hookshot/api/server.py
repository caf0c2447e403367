"""Embedded uvicorn server run alongside the worker pool."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterator

import uvicorn
from fastapi import FastAPI

from hookshot.logging import get_logger

logger = get_logger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the shutdown coordinator."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


class ApiServer:
    """Serves the HTTP surface as a task on the running event loop.

    Example:
        ```python
        server = ApiServer(create_app(context), host="0.0.0.0", port=3001)
        await server.start()
        ...
        await server.close()
        ```
    """

    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        self.host = host
        self.port = port
        config = uvicorn.Config(app, host=host, port=port, log_config=None, access_log=False, lifespan="off")
        self._server = _EmbeddedServer(config)
        self._task: asyncio.Task[None] | None = None

    @property
    def started(self) -> bool:
        return self._server.started

    async def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._server.serve(), name="http-server")
        logger.info(
            "HTTP server listening",
            host=self.host,
            port=self.port,
            endpoints=["/health", "/ready", "/live", "/stats", "/metrics", "/jobs"],
        )

    async def close(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._task = None
        logger.info("HTTP server closed")
