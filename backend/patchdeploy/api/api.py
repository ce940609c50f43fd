"""
Main API router for the PatchDeploy backend.

This module sets up the main API router and includes all endpoint routers.
"""
import logging
from fastapi import APIRouter

from patchdeploy.api.endpoints import deployments, sse

logger = logging.getLogger(__name__)

# Create main API router
api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(deployments.router, prefix="/deployments", tags=["deployments"])
api_router.include_router(sse.router, prefix="/deployments", tags=["deployments", "events"])
