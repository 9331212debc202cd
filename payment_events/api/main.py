"""
FastAPI application factory for the webhook processor.

`create_app` wires settings, the service graph, request tracing and the
routers. uvicorn runs it through `run()` with `factory=True`.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from payment_events import __version__
from payment_events.config import Settings, get_settings
from payment_events.monitoring.logging import setup_logging
from payment_events.services import Services

from .routes import monitoring_router, webhook_router

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _install_request_tracing(app: FastAPI) -> None:
    """Bind a request id to every log line and echo it back to the caller."""

    @app.middleware("http")
    async def trace_request(request: Request, call_next: Any) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(
            request_id=request_id, method=request.method, path=request.url.path
        )
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=round(time.perf_counter() - started, 4),
            )
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=round(time.perf_counter() - started, 4),
            )
            return response
        finally:
            structlog.contextvars.clear_contextvars()


def _install_error_handlers(app: FastAPI) -> None:
    """Anything unhandled becomes an opaque 500 so the provider retries."""

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Build the application.

    Settings are validated here, so a missing secret or database URL fails
    at startup rather than on the first webhook.

    Args:
        settings: Application settings (loaded from the environment if omitted)
        services: Pre-built service graph; the app owns and closes it otherwise

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)

    owns_services = services is None
    services = services or Services.build(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info("processor_starting", environment=settings.app_env, version=__version__)

        # Production schemas are managed by alembic
        if not settings.is_production:
            await services.database.create_all()
            logger.info("database_tables_ensured")

        try:
            yield
        finally:
            logger.info("processor_stopping")
            if owns_services:
                await services.close()

    app = FastAPI(
        title="Payment Event Processor",
        description=(
            "Ingests Stripe webhooks and reconciles orders, subscriptions, affiliate "
            "commissions and loyalty points exactly once per event."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    app.state.settings = settings
    app.state.services = services

    _install_request_tracing(app)
    _install_error_handlers(app)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)
    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "payment_events.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
