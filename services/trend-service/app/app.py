"""
Main FastAPI application.

This file wires together all layers:
- Domain: Business entities and period rules
- Infrastructure: Upstream commerce API
- Repositories: Key-value store and period cache
- Services: Summaries, trends and the shared rebuild
- Routers: HTTP endpoints
"""

from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .core.config import Settings, settings as default_settings
from .core.logging_config import configure_logging, get_logger
from .dependencies import build_container, set_container
from .domain.exceptions import (
    EntityNotFoundException,
    TrendServiceException,
    UpstreamError,
    ValidationException,
)
from .domain.periods import Clock
from .repositories.kv_store import IKeyValueStore
from .routers import health_router, sales_router, trend_router

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[IKeyValueStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """
    Create the application.

    The overrides are passed through to the container and let tests run the
    full stack against an in-process store and a mocked upstream.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
        logger.info("service_starting", service=settings.SERVICE_NAME)

        container = await build_container(settings, store=store, transport=transport, clock=clock)
        await container.startup()
        set_container(container)

        try:
            entities = await container.trend_service.list_entities()
            logger.info("entities_loaded", count=len(entities))
        except UpstreamError as e:
            logger.warning("entities_unavailable", error=e.message)

        if settings.REBUILD_ON_STARTUP and await container.coordinator.get_cached_trend() is None:
            container.coordinator.trigger_background_rebuild()

        logger.info("service_started", service=settings.SERVICE_NAME)

        yield

        logger.info("service_stopping", service=settings.SERVICE_NAME)
        await container.shutdown()
        set_container(None)
        logger.info("service_stopped", service=settings.SERVICE_NAME)

    app = FastAPI(
        title="Sales Trend Service",
        description="Sales summaries and cached weekly trends per store",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )

    @app.exception_handler(EntityNotFoundException)
    async def entity_not_found_handler(request: Request, exc: EntityNotFoundException):
        return JSONResponse(status_code=404, content={"error": exc.message, "details": exc.details})

    @app.exception_handler(ValidationException)
    async def validation_handler(request: Request, exc: ValidationException):
        return JSONResponse(status_code=400, content={"error": exc.message, "details": exc.details})

    @app.exception_handler(UpstreamError)
    async def upstream_handler(request: Request, exc: UpstreamError):
        logger.error("upstream_error", path=request.url.path, error=exc.message)
        return JSONResponse(
            status_code=502,
            content={"error": exc.message, "upstream_status": exc.status_code},
        )

    @app.exception_handler(TrendServiceException)
    async def service_error_handler(request: Request, exc: TrendServiceException):
        logger.error("service_error", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=500, content={"error": exc.message})

    app.include_router(health_router.router)
    app.include_router(trend_router.router)
    app.include_router(sales_router.router)

    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "app.app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )
