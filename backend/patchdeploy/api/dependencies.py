"""
Shared API dependencies.
"""
import logging

from fastapi import HTTPException, Request, status

from patchdeploy.core.errors import (
    AdmissionRejected,
    ConnectionNotFound,
    CredentialResolutionError,
    DeploymentError,
    DeploymentNotFound,
    DeploymentTerminal,
    InvalidTransition,
    PatchNotFound,
    ValidationBlocked,
)
from patchdeploy.services.deployment_service import DeploymentEngine

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 30


def get_engine(request: Request) -> DeploymentEngine:
    """Get the engine created in the application lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Deployment engine is not running")
    return engine


def http_error(error: DeploymentError) -> HTTPException:
    """
    Map an engine error to an HTTP error.

    Args:
        error: The engine error

    Returns:
        The HTTPException to raise
    """
    if isinstance(error, (DeploymentNotFound, PatchNotFound, ConnectionNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, (DeploymentTerminal, InvalidTransition)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, AdmissionRejected):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"message": str(error), "deployment_id": error.deployment_id, "retry_later": True},
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )
    if isinstance(error, (ValidationBlocked, CredentialResolutionError)):
        return HTTPException(status_code=422, detail=str(error))

    logger.error(f"Unhandled engine error: {str(error)}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
