"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from shiptrack.http.controllers import tracking

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    app.include_router(tracking.router, prefix=f"{settings.API_PREFIX}/tracking", tags=["tracking"])
    logger.debug("Registered tracking routes under %s/tracking", settings.API_PREFIX)
