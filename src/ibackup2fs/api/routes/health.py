"""Health check endpoints."""

import logging

from fastapi import APIRouter, Request

from ibackup2fs import __version__

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    logger.debug("Health check requested")

    coordinator = request.app.state.manager.coordinator
    return {
        "status": "healthy",
        "version": __version__,
        "extraction": coordinator.state.value if coordinator is not None else "idle",
    }


@router.get("/config")
async def get_configuration(request: Request):
    """Get current configuration."""
    logger.debug("Configuration requested")
    return request.app.state.config.model_dump()
