from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status

from patchdeploy.api.dependencies import get_engine, http_error
from patchdeploy.core.errors import DeploymentError
from patchdeploy.models.deployment import DeploymentRecord, RollbackRecord, ValidationResult
from patchdeploy.models.requests import DeploymentRequest, PreflightRequest, RollbackRequest
from patchdeploy.services.deployment_service import DeploymentEngine

router = APIRouter()


@router.post("/", response_model=DeploymentRecord, status_code=status.HTTP_202_ACCEPTED)
async def create_deployment(
    request: DeploymentRequest,
    engine: DeploymentEngine = Depends(get_engine)
):
    """
    Start deploying a scan's patch package to a site
    """
    try:
        return await engine.submit(request.scan_id, request.site_id, request.user_id)
    except DeploymentError as e:
        raise http_error(e)


@router.post("/preflight", response_model=ValidationResult)
async def preflight_deployment(
    request: PreflightRequest,
    strict: bool = Query(False, description="Answer 422 when the deployment would be blocked"),
    engine: DeploymentEngine = Depends(get_engine)
):
    """
    Run the safety checks for a deployment without starting it
    """
    try:
        return await engine.preflight(request.scan_id, request.site_id, strict=strict)
    except DeploymentError as e:
        raise http_error(e)


@router.get("/active", response_model=List[DeploymentRecord])
async def list_active_deployments(engine: DeploymentEngine = Depends(get_engine)):
    """
    List deployments that are still in flight
    """
    return engine.list_active()


@router.get("/history", response_model=List[DeploymentRecord])
async def deployment_history(
    user_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    engine: DeploymentEngine = Depends(get_engine)
):
    """
    List past and present deployments, newest first
    """
    return await engine.get_history(user_id=user_id, limit=limit)


@router.get("/{deployment_id}", response_model=DeploymentRecord)
async def get_deployment(
    deployment_id: str,
    engine: DeploymentEngine = Depends(get_engine)
):
    """
    Get a deployment by ID
    """
    try:
        return await engine.get_status(deployment_id)
    except DeploymentError as e:
        raise http_error(e)


@router.post("/{deployment_id}/cancel", response_model=DeploymentRecord, status_code=status.HTTP_202_ACCEPTED)
async def cancel_deployment(
    deployment_id: str,
    engine: DeploymentEngine = Depends(get_engine)
):
    """
    Request cancellation; honored at the deployment's next step boundary
    """
    try:
        return await engine.cancel(deployment_id)
    except DeploymentError as e:
        raise http_error(e)


@router.post("/{deployment_id}/rollback", response_model=RollbackRecord)
async def rollback_deployment(
    deployment_id: str,
    request: Optional[RollbackRequest] = None,
    engine: DeploymentEngine = Depends(get_engine)
):
    """
    Roll a deployment back to its backed-up state
    """
    request = request or RollbackRequest()
    try:
        return await engine.rollback(deployment_id, reason=request.reason, force=request.force)
    except DeploymentError as e:
        raise http_error(e)
