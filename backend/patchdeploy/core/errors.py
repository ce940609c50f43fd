"""
Error taxonomy for the deployment engine.

Each class maps to one failure mode the orchestrator knows how to react to.
Transport-level transient errors are retried inside an adapter; everything
else propagates to the orchestrator and drives a state transition.
"""
from typing import List, Optional


class DeploymentError(Exception):
    """Base class for all engine errors."""


class ValidationBlocked(DeploymentError):
    """
    Pre-flight validation failed. Nothing was mutated.

    Raised by a strict preflight. Deployments blocked while running report it
    through their status instead.
    """

    def __init__(self, blockers: List[str], retry_later: bool = False):
        self.blockers = list(blockers)
        self.retry_later = retry_later
        super().__init__("; ".join(self.blockers) or "Validation blocked")


class AdmissionRejected(ValidationBlocked):
    """The admission ceiling or a same-site deployment rejected the request."""

    def __init__(self, reason: str, deployment_id: Optional[str] = None):
        self.deployment_id = deployment_id
        super().__init__([reason], retry_later=True)


class BackupFailed(DeploymentError):
    """A required backup could not be captured. Nothing was mutated."""

    def __init__(self, asset_key: str, reason: str):
        self.asset_key = asset_key
        self.reason = reason
        super().__init__(f"Backup failed for {asset_key}: {reason}")


class PartialDeploymentFailure(DeploymentError):
    """Some assets deployed and some did not."""

    def __init__(self, deployed: List[str], failed: List[str]):
        self.deployed = list(deployed)
        self.failed = list(failed)
        super().__init__(
            f"{len(self.failed)} of {len(self.deployed) + len(self.failed)} assets failed to deploy"
        )


class HealthDegraded(DeploymentError):
    """The live site's health crossed the rollback threshold."""


class RollbackFailed(DeploymentError):
    """At least one asset could not be restored. Needs an operator."""

    def __init__(self, deployment_id: str, failed_assets: List[str]):
        self.deployment_id = deployment_id
        self.failed_assets = list(failed_assets)
        super().__init__(
            f"Rollback of {deployment_id} failed for: {', '.join(self.failed_assets)}"
        )


class InvalidTransition(DeploymentError):
    """A status change not allowed by the deployment state machine."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition from {current} to {requested}")


class DeploymentNotFound(DeploymentError):
    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(f"Deployment not found: {deployment_id}")


class DeploymentTerminal(DeploymentError):
    """The deployment has already reached a terminal status."""

    def __init__(self, deployment_id: str, status: str):
        self.deployment_id = deployment_id
        self.status = status
        super().__init__(f"Deployment {deployment_id} is already {status}")


class PatchNotFound(DeploymentError):
    def __init__(self, scan_id: str):
        self.scan_id = scan_id
        super().__init__(f"No patch package for scan: {scan_id}")


class ConnectionNotFound(DeploymentError):
    def __init__(self, site_id: str):
        self.site_id = site_id
        super().__init__(f"No connection registered for site: {site_id}")


class CredentialResolutionError(DeploymentError):
    def __init__(self, credential_ref: str, reason: Optional[str] = None):
        self.credential_ref = credential_ref
        super().__init__(f"Could not resolve credential {credential_ref}" + (f": {reason}" if reason else ""))


class TransportError(DeploymentError):
    """A transport call failed and must not be retried."""

    def __init__(self, message: str, asset_key: Optional[str] = None):
        self.asset_key = asset_key
        super().__init__(message)


class TransientTransportError(TransportError):
    """Timeouts, rate limits and other failures that are safe to retry."""


class ContentDriftError(TransportError):
    """The live asset no longer contains the text a replace change expects."""
