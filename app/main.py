"""Main FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api import api_router
from app.api.deps import limiter
from app.config import get_settings
from app.services import build_services, close_services

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("Starting Schedule Sync...")
    logger.info(f"Database: {settings.database_path}")
    logger.info(f"Calendar API: {settings.api_base_url}")

    services = await build_services(settings)
    app.state.services = services
    logger.info("Services initialized")

    if settings.enable_background_tasks:
        try:
            await services.scheduler.start()
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
        # Cold start: bring the catalog and the sync window up to date
        services.tasks.create(services.engine.perform_full_sync(), "startup_full_sync")
    else:
        logger.info("Background tasks disabled (ENABLE_BACKGROUND_TASKS=false)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await close_services(services)
    app.state.services = None
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Schedule Sync",
    description="Bidirectional sync of local schedule entries with Google Calendar",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Health check endpoint
@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint for monitoring."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "error": "not initialized"},
        )
    try:
        await services.db.execute("SELECT 1")
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "error": str(e)},
        )
    return {
        "status": "healthy",
        "database": "connected",
        "syncing": services.engine.is_syncing,
    }


# Include routers
app.include_router(api_router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # For API requests, return JSON
    if request.url.path.startswith("/api/"):
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "An unexpected error occurred"},
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    log_level = settings.log_level.lower()

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=3000,
        log_level=log_level,
        reload=False,
    )
