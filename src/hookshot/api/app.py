"""FastAPI application for Hookshot."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hookshot import __version__
from hookshot.config import Settings
from hookshot.context import AppContext
from hookshot.exceptions import (
    AuthenticationError,
    HookshotError,
    StoreConnectionError,
    ValidationError,
)
from hookshot.logging import configure_logging, get_logger

from .router import ApiState, router, set_state

if TYPE_CHECKING:
    from hookshot.shutdown import ShutdownCoordinator

logger = get_logger(__name__)


def _standalone_lifespan(
    settings: Settings,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Own an enqueue-only context when no worker process supplies one."""
        configure_logging(level=settings.log_level, format=settings.log_format, service="hookshot-api")
        logger.info("Starting Hookshot API", queue=settings.queue_name)

        context = AppContext.create(settings)
        await context.connections.get_shared_handle()
        set_state(ApiState(context=context, worker_enabled=False))

        yield

        await context.close()
        set_state(None)

    return lifespan


def create_app(
    context: AppContext | None = None,
    *,
    coordinator: ShutdownCoordinator | None = None,
    settings: Settings | None = None,
    worker_enabled: bool = True,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        context: Running application context. When None the app builds an
            enqueue-only context in its lifespan (no worker pool).
        coordinator: Shutdown coordinator whose draining state is reported.
        settings: Settings for the standalone mode. Uses environment if None.
        worker_enabled: Whether health reports include the worker pool.

    Returns:
        Configured FastAPI application.

    Example:
        ```python
        from hookshot.api import create_app

        # Run with: uvicorn hookshot.api:create_app --factory
        app = create_app()
        ```
    """
    lifespan = None
    if context is None:
        lifespan = _standalone_lifespan(settings or Settings())
    else:
        set_state(ApiState(context=context, coordinator=coordinator, worker_enabled=worker_enabled))

    app = FastAPI(
        title="Hookshot",
        description="Reliable outbound webhook delivery.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url=None,
    )

    # Register exception handlers
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors with 400 status."""
        logger.warning(
            "Validation error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(
        request: Request, exc: AuthenticationError
    ) -> JSONResponse:
        """Handle authentication errors with 401 status."""
        logger.warning("Authentication failed", error=exc.message, path=str(request.url))
        return JSONResponse(
            status_code=401,
            content=exc.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(StoreConnectionError)
    async def store_error_handler(request: Request, exc: StoreConnectionError) -> JSONResponse:
        """Handle Redis unavailability with 503 status."""
        logger.error("Store unavailable", error=exc.message, path=str(request.url))
        return JSONResponse(status_code=503, content=exc.to_dict())

    @app.exception_handler(HookshotError)
    async def hookshot_error_handler(request: Request, exc: HookshotError) -> JSONResponse:
        """Handle all other Hookshot errors with 500 status."""
        logger.error("Hookshot error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())

    app.include_router(router)

    return app
