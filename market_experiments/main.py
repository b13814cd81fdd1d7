"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from market_experiments.api.v1.router import router as v1_router
from market_experiments.core.config import get_settings
from market_experiments.core.database import close_database, get_db_session, init_database
from market_experiments.core.exceptions import setup_exception_handlers
from market_experiments.core.health import HealthCheckService, HealthStatus
from market_experiments.core.logging import APP_LOGGER, setup_logging, setup_request_logging
from market_experiments.core.request_context import RequestContextMiddleware
from market_experiments.services.batch_ingestor import BatchIngestor
from market_experiments.services.event_store import EventStore
from market_experiments.services.experiment_registry import ActiveExperimentCache

logger = logging.getLogger(APP_LOGGER)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Wire the storage-backed components and run their background loops."""
    settings = get_settings()
    session_factory = init_database(settings)

    event_store = EventStore(
        session_factory,
        settings.event_kinds_set,
        query_timeout=settings.report_query_timeout_seconds,
    )
    ingestor = BatchIngestor(
        event_store,
        batch_size=settings.ingest_batch_size,
        flush_interval=settings.ingest_flush_interval_seconds,
        max_pending=settings.ingest_max_pending,
    )
    cache = ActiveExperimentCache(
        session_factory,
        refresh_interval=settings.experiment_cache_refresh_seconds,
    )
    app.state.event_store = event_store
    app.state.ingestor = ingestor
    app.state.experiment_cache = cache

    try:
        await cache.refresh()
    except Exception:
        # Serve with an empty snapshot; the refresh loop retries
        logger.warning("Initial experiment snapshot refresh failed", exc_info=True)
    cache.start()
    ingestor.start()
    logger.info("Application started", extra={"env": settings.app_env})

    yield

    logger.info("Application shutting down")
    await cache.stop()
    await ingestor.stop()
    if ingestor.pending_count:
        logger.error(
            "Events lost on shutdown", extra={"pending": ingestor.pending_count}
        )
    await close_database()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    # Setup structured logging first
    setup_logging(settings)

    app = FastAPI(
        title="Market Experiments API",
        description="Experiment assignment and conversion measurement for the marketplace",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Request logging wraps everything below it
    setup_request_logging(app)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    setup_exception_handlers(app)

    # Health check endpoints (no auth required)
    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Simple health check endpoint for basic liveness probes."""
        return {"status": "healthy"}

    @app.get("/health/live", tags=["health"])
    async def liveness_check() -> dict[str, str]:
        """Liveness probe: 200 while the process is running."""
        return {"status": "healthy"}

    @app.get("/health/ready", tags=["health"])
    async def readiness_check(
        db_session: AsyncSession = Depends(get_db_session),
    ) -> Response:
        """Readiness probe: 503 while the database is unreachable."""
        health_service = HealthCheckService(db_session=db_session, settings=settings)
        result = await health_service.check_readiness()

        status_code = 200 if result.status != HealthStatus.UNHEALTHY else 503
        return JSONResponse(content=result.to_dict(), status_code=status_code)

    @app.get("/health/detailed", tags=["health"])
    async def detailed_health_check(
        request: Request,
        db_session: AsyncSession = Depends(get_db_session),
    ) -> dict[str, Any]:
        """All components, including the ingestion buffer and experiment snapshot."""
        health_service = HealthCheckService(
            db_session=db_session,
            settings=settings,
            ingestor=getattr(request.app.state, "ingestor", None),
            cache=getattr(request.app.state, "experiment_cache", None),
        )
        result = await health_service.check_all()
        return result.to_dict()

    app.include_router(v1_router)

    return app


# Create application instance
app = create_app()


def run() -> None:
    """Run the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "market_experiments.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.app_log_level.lower(),
    )


if __name__ == "__main__":
    run()
