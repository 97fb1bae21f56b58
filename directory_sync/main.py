"""
FastAPI Production Application

Main entry point for the directory category sync service. The lifespan
wires the write path (projector + sync service), the refresh coordinator
with its builder, the query service and, when enabled, the Kafka consumer.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
import structlog

from directory_sync.config import get_settings
from directory_sync.config.logging import configure_logging
from directory_sync.database.connection import init_database, close_database
from directory_sync.errors import DirectoryError
from directory_sync.projection.projector import AssociationProjector
from directory_sync.projection.service import CategorySyncService
from directory_sync.readmodel.builder import ReadModelBuilder
from directory_sync.refresh.coordinator import RefreshCoordinator
from directory_sync.serving.cache import init_redis, close_redis
from directory_sync.serving.query_service import QueryService
from directory_sync.serving.api.middleware import (
    RequestLoggingMiddleware,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
)
from directory_sync.serving.api.routes import (
    health_router,
    categories_router,
    listings_router,
    internal_router,
)

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    logger.info("Starting directory category sync", environment=settings.app_env)

    await init_database()
    logger.info("Database initialized")

    if settings.redis.enabled:
        try:
            await init_redis()
            logger.info("Redis initialized")
        except Exception as e:
            # Queries run uncached without Redis
            logger.warning("Redis init failed, serving uncached", error=str(e))

    builder = ReadModelBuilder()
    coordinator = RefreshCoordinator(builder)
    app.state.coordinator = coordinator
    app.state.sync_service = CategorySyncService(AssociationProjector(), coordinator)
    app.state.query_service = QueryService()

    await coordinator.start(await builder.known_scopes())

    consumer = None
    consumer_task = None
    if settings.kafka.enabled:
        from directory_sync.ingestion.stream_consumer import ListingEventConsumer
        consumer = ListingEventConsumer(app.state.sync_service)
        consumer_task = asyncio.create_task(consumer.run(), name="listing-event-consumer")
        logger.info("Kafka consumer started", topic=consumer.config.topic)

    yield

    logger.info("Shutting down...")
    if consumer is not None:
        await consumer.stop()
        consumer_task.cancel()
        await asyncio.gather(consumer_task, return_exceptions=True)
    await coordinator.stop()
    await close_redis()
    await close_database()


# Create FastAPI application
app = FastAPI(
    title="Directory Category Sync API",
    description="Category browsing, statistics and related listings over versioned read models",
    version=settings.version,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json",
    lifespan=lifespan,
)


@app.exception_handler(DirectoryError)
async def directory_error_handler(request: Request, exc: DirectoryError) -> JSONResponse:
    """Map domain errors to their HTTP status with a stable body."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.security.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Compression
app.add_middleware(GZipMiddleware, minimum_size=1000)

# Custom middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    max_requests=settings.security.rate_limit_requests,
    window_seconds=settings.security.rate_limit_window_seconds,
)

# API routes
app.include_router(health_router, prefix="/api/v1", tags=["Health"])
app.include_router(categories_router, prefix="/api/v1/directory/categories", tags=["Categories"])
app.include_router(listings_router, prefix="/api/v1/directory/listings", tags=["Listings"])
app.include_router(internal_router, prefix="/api/v1/directory/internal", tags=["Internal"])

# Prometheus scrape endpoint
app.mount("/metrics", make_asgi_app())


@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": "Directory Category Sync API",
        "version": settings.version,
        "environment": settings.app_env,
        "documentation": "/docs" if settings.is_development else None,
        "max_staleness_seconds": (
            settings.directory.debounce_seconds + settings.directory.build_timeout_seconds
        ),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
