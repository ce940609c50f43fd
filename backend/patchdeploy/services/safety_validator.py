"""
Pre-flight safety validation.

Every check must pass before a deployment may touch the live site. The
validator only reads: it never mutates the registry, the site or the store.
"""
import logging
import re
from typing import List, Optional

from patchdeploy.models.deployment import (
    Connection,
    HealthStatus,
    PatchPackage,
    Platform,
    RiskLevel,
    ValidationCheck,
    ValidationResult,
)
from patchdeploy.services.active_registry import ActiveDeploymentRegistry
from patchdeploy.services.credential_service import CredentialVault
from patchdeploy.services.health_monitor import HealthChecker
from patchdeploy.services.transports import TransportRegistry

logger = logging.getLogger(__name__)

# Content-management mutations are the riskiest: they go live instantly and
# are shared by every page that renders the asset.
PLATFORM_RISK = {
    Platform.CMS_API: 3.0,
    Platform.SHELL_SESSION: 2.0,
    Platform.FILE_TRANSFER: 1.0,
}

_SELECTOR_SPLIT = re.compile(r"\s*[>+~]\s*|\s+")

# Checks whose failure means "try again later" rather than "fix the input"
RETRYABLE_CHECKS = {"concurrency", "conflict"}


def selector_depth(selector: Optional[str]) -> int:
    if not selector or not selector.strip():
        return 0
    return len([part for part in _SELECTOR_SPLIT.split(selector.strip()) if part])


def calculate_risk(patch: PatchPackage, platform: Platform) -> float:
    """
    Combine patch size, DOM complexity and platform into a 0-10 risk score.

    The package's own risk score is averaged in.
    """
    size_component = min(len(patch.changes) / 10, 1.0) * 4
    depths = [selector_depth(change.selector) for change in patch.changes if change.selector]
    average_depth = sum(depths) / len(depths) if depths else 0
    dom_component = min(average_depth / 5, 1.0) * 3
    platform_component = PLATFORM_RISK.get(platform, 3.0)
    computed = size_component + dom_component + platform_component
    return round((computed + patch.risk_score) / 2, 2)


def risk_level_for(score: float) -> RiskLevel:
    if score < 4:
        return RiskLevel.LOW
    if score < 7:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


class SafetyValidator:
    """Runs the pre-flight checks for one patch against one connection."""

    def __init__(
        self,
        registry: ActiveDeploymentRegistry,
        transports: TransportRegistry,
        credentials: CredentialVault,
        health_checker: HealthChecker,
    ):
        self.registry = registry
        self.transports = transports
        self.credentials = credentials
        self.health_checker = health_checker

    async def validate(
        self, patch: PatchPackage, connection: Connection, deployment_id: Optional[str] = None
    ) -> ValidationResult:
        """
        Validate a patch for deployment.

        Args:
            patch: The patch package to deploy
            connection: The target site's connection
            deployment_id: The deployment being validated, excluded from its
                own concurrency and conflict checks

        Returns:
            The verdict, with every check's outcome and the risk assessment
        """
        checks: List[ValidationCheck] = []

        active = self.registry.count(exclude=deployment_id)
        checks.append(ValidationCheck(
            name="concurrency",
            passed=active < self.registry.max_active,
            reason=f"{active} of {self.registry.max_active} deployment slots in use"
            if active < self.registry.max_active
            else f"Maximum concurrent deployments reached ({self.registry.max_active}); try again later",
        ))

        other = self.registry.conflicting(connection.site_url, exclude=deployment_id)
        checks.append(ValidationCheck(
            name="conflict",
            passed=other is None,
            reason=f"Deployment {other} is already in progress for {connection.site_url}" if other
            else "No other deployment targets this site",
        ))

        checks.append(ValidationCheck(
            name="platform",
            passed=patch.target_platform == connection.platform,
            reason=f"Patch targets {patch.target_platform.value}, connection is {connection.platform.value}"
            if patch.target_platform != connection.platform else "Patch and connection platforms match",
        ))

        adapter = self.transports.get(connection.platform)
        has_backup_strategy = adapter is not None and adapter.supports_backup
        checks.append(ValidationCheck(
            name="backup_strategy",
            passed=has_backup_strategy,
            reason=f"Backups supported via {adapter.name}" if has_backup_strategy
            else f"No backup strategy for platform {connection.platform.value}",
        ))

        config_problems = adapter.validate_connection(connection) if adapter else []
        config_problems += await self.credentials.validate(connection.credential_ref, connection.platform)
        checks.append(ValidationCheck(
            name="connection_config",
            passed=not config_problems,
            reason="; ".join(config_problems) or "Connection configuration is complete",
        ))

        baseline = await self.health_checker.check(connection.site_url)
        checks.append(ValidationCheck(
            name="baseline_health",
            passed=baseline.status != HealthStatus.CRITICAL,
            reason=f"Baseline health is {baseline.status.value} ({baseline.overall_score})"
            + (f": {baseline.error}" if baseline.error else ""),
        ))

        blockers = [check.reason for check in checks if not check.passed]
        retry_later = bool(blockers) and all(
            check.name in RETRYABLE_CHECKS for check in checks if not check.passed
        )
        risk_score = calculate_risk(patch, connection.platform)

        result = ValidationResult(
            safe=not blockers,
            blockers=blockers,
            risk_level=risk_level_for(risk_score),
            risk_score=risk_score,
            checks=checks,
            retry_later=retry_later,
        )
        if result.safe:
            logger.info(f"Validation passed for patch {patch.id} on {connection.site_url} (risk {result.risk_level.value})")
        else:
            logger.warning(f"Validation blocked patch {patch.id} on {connection.site_url}: {'; '.join(blockers)}")
        return result
