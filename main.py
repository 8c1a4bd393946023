"""
Shiptrack - shipment tracking sync service (FastAPI)
"""
import logging

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from routes.api import register_routes
from shiptrack.config import settings
from shiptrack.database import engine, init_db
from shiptrack.http.controllers.tracking import get_sync_service
from shiptrack.workers.scheduler import start_background_workers, stop_background_workers

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
init_db()

app = FastAPI(
    title="Shiptrack API",
    description="Shipment tracking synchronization and status-transition engine",
    version="1.0.0",
    docs_url="/docs" if settings.IS_DEVELOPMENT else None,  # Disable docs in production
    redoc_url="/redoc" if settings.IS_DEVELOPMENT else None,
)

logger.info(f"🚀 Starting Shiptrack API")
logger.info(f"📊 Environment: {settings.ENV}")
logger.info(f"🌐 Production: {settings.IS_PRODUCTION}")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler so every error is returned as JSON"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "message": str(exc) if settings.IS_DEVELOPMENT else "An error occurred"
        },
    )


# Register all API routes (prefix /api)
register_routes(app, settings)


@app.get("/health")
async def health():
    """Health check endpoint. Includes DB connectivity check."""
    db_status = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check DB ping failed: %s", e)
        db_status = "error"
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "service": "shiptrack",
        "db": db_status,
        "environment": settings.ENV,
        "production": settings.IS_PRODUCTION,
    }


@app.on_event("startup")
async def startup_tracking_workers() -> None:
    """Start the tracking sync scheduler (hourly active, daily inactive, daily cleanup)."""
    if not settings.ENABLE_BACKGROUND_WORKERS:
        logger.info("Background workers disabled (ENABLE_BACKGROUND_WORKERS=false)")
        return
    start_background_workers(get_sync_service())


@app.on_event("shutdown")
async def shutdown_tracking_workers() -> None:
    stop_background_workers()


@app.get("/api")
async def root():
    """API root endpoint"""
    return {
        "message": "Welcome to Shiptrack API",
        "version": "1.0.0",
        "environment": settings.ENV,
        "docs": "/docs" if settings.IS_DEVELOPMENT else "disabled in production"
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.IS_DEVELOPMENT,  # Auto-reload only in development
        log_level=settings.LOG_LEVEL.lower()
    )
