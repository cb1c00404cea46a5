"""
FastAPI application with database pool and Redis lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from segmentation.config import settings
from segmentation.db.pool import db_pool
from segmentation.db.schema import ensure_schema
from segmentation.features.segments import segments_router
from segmentation.infrastructure.observability.logging import get_logger, setup_logging
from segmentation.routes import health
from segmentation.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        if settings.AUTO_CREATE_SCHEMA:
            await ensure_schema()
            startup_tasks.append("schema")

        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
        startup_tasks.append("redis")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if "redis" in startup_tasks:
            await fast_redis.close()
        if "database_pool" in startup_tasks:
            await db_pool.close()

        raise

    yield

    logger.info("Application shutting down")

    # Redis first (faster), database pool last (may have active connections)
    await fast_redis.close()
    await db_pool.close()

    logger.info("All services closed")


app = FastAPI(
    title="Audience Segmentation",
    description="Segment definitions, dry runs and materialized builds over the contact store",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(segments_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
