from typing import Optional

from pydantic import BaseModel, Field


class DeploymentRequest(BaseModel):
    """Request to deploy the patch package of a scan to a site."""
    scan_id: str = Field(..., min_length=1)
    site_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None


class PreflightRequest(BaseModel):
    scan_id: str = Field(..., min_length=1)
    site_id: str = Field(..., min_length=1)


class RollbackRequest(BaseModel):
    reason: str = "manual"
    force: bool = False
