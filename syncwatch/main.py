# syncwatch/main.py
"""
API process: health, webhook, manual-sync and admin dashboard routes.
Scheduled scans run in separate worker processes (see syncwatch/jobs/worker.py).
"""

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from syncwatch.config import settings
from syncwatch.db.pool import db_pool
from syncwatch.features.sync_orchestration.api.router import router as sync_router
from syncwatch.features.sync_orchestration.clients.sync_api_client import sync_api_client
from syncwatch.features.sync_orchestration.jobs.event_drain_job import (
    start_event_drain_scheduler,
)
from syncwatch.infrastructure.observability.logging import get_logger, setup_logging
from syncwatch.middleware.request_context import RequestContextMiddleware
from syncwatch.routes import health
from syncwatch.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level="DEBUG" if settings.debug else "INFO")
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

        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
        startup_tasks.append("redis")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if "redis" in startup_tasks:
            try:
                await fast_redis.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up Redis", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    # Webhook and manual syncs publish events from this process
    drain_task = asyncio.create_task(start_event_drain_scheduler())

    yield

    logger.info("Application shutting down")

    shutdown_errors = []

    drain_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await drain_task

    try:
        await sync_api_client.close()
    except Exception as e:
        logger.error("Error closing sync API client", error=str(e))
        shutdown_errors.append(f"SyncApiClient: {e}")

    # Close Redis first (faster)
    try:
        logger.info("Closing Redis connection")
        await fast_redis.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
        shutdown_errors.append(f"Redis: {e}")

    # Close database pool last (may have active connections)
    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="syncwatch",
    description="Sync orchestration for calendar and contacts integrations",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

app.include_router(health.router)
app.include_router(sync_router)


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
