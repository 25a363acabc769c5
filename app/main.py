"""Car Listing Cache - Main Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.routes import cars_router, sync_router
from app.core.config import get_settings
from app.core.database import SessionLocal, get_db_stats, init_db
from app.core.scheduler import cancel_active_sync, get_scheduler, init_scheduler
from app.core.sync.status import SyncStatusStore

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info(f"Starting {settings.app_name}...")

    # Initialize database
    init_db()
    logger.info("Database initialized")

    # Initialize and start scheduler
    scheduler = init_scheduler()
    scheduler.start()
    logger.info("Background scheduler started")

    if not settings.is_configured:
        logger.warning("Remote listing API is not configured; sync runs will fail fast")

    yield

    # Shutdown
    logger.info("Shutting down...")
    cancel_active_sync()
    scheduler.shutdown()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Local cache of a remote car auction catalog with a globally "
                "sorted, filterable, cursor-paginated read API.",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(cars_router)
app.include_router(sync_router)


@app.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/health/detailed")
async def detailed_health_check():
    """Detailed health check with component status."""
    components = {
        "database": "unknown",
        "scheduler": "unknown",
        "remote_api_configured": settings.is_configured,
    }
    database_stats = {}
    sync = None

    # Check database
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            database_stats = get_db_stats(db)
        finally:
            db.close()
        components["database"] = "healthy"
    except Exception as e:
        components["database"] = f"unhealthy: {str(e)}"

    # Check scheduler
    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        components["scheduler"] = "running"
    else:
        components["scheduler"] = "not_running"

    # Sync stream summary
    if components["database"] == "healthy":
        status = SyncStatusStore().get_status()
        sync = {
            "status": status["status"],
            "run_id": status["run_id"],
            "progress_percent": status["progress_percent"],
            "last_activity_at": status["last_activity_at"],
            "error_category": status["error_category"],
        }

    healthy = components["database"] == "healthy"
    return {
        "status": "healthy" if healthy and components["scheduler"] == "running" else "degraded",
        "version": settings.app_version,
        "components": components,
        "database_stats": database_stats,
        "sync": sync,
    }


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
