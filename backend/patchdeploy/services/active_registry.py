"""
Registry of in-flight deployments.

Backs the admission ceiling and the one-deployment-per-site rule. Entries are
inserted when a deployment is admitted and removed when it reaches a terminal
status. All calls run on the engine's event loop, so a reservation is atomic.
"""
import logging
from typing import Dict, Optional, Set
from urllib.parse import urlparse

from patchdeploy.core.config import settings

logger = logging.getLogger(__name__)


def normalize_site_url(site_url: str) -> str:
    """Reduce a site URL to scheme-less host plus path for conflict checks."""
    url = site_url.strip()
    if "://" not in url:
        url = f"https://{url}"
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    port = f":{parsed.port}" if parsed.port and parsed.port not in (80, 443) else ""
    path = parsed.path.rstrip("/")
    return f"{host}{port}{path}"


class ActiveDeploymentRegistry:
    """In-flight deployments by id, with their normalized site URLs."""

    def __init__(self, max_active: Optional[int] = None):
        self.max_active = max_active or settings.MAX_CONCURRENT_DEPLOYMENTS
        self._sites: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._sites)

    def __contains__(self, deployment_id: str) -> bool:
        return deployment_id in self._sites

    @property
    def deployment_ids(self) -> Set[str]:
        return set(self._sites)

    def count(self, exclude: Optional[str] = None) -> int:
        return len([d for d in self._sites if d != exclude])

    def conflicting(self, site_url: str, exclude: Optional[str] = None) -> Optional[str]:
        """Return the id of another active deployment on the same site, if any."""
        site = normalize_site_url(site_url)
        for deployment_id, active_site in self._sites.items():
            if deployment_id != exclude and active_site == site:
                return deployment_id
        return None

    def admission_problem(self, site_url: str, exclude: Optional[str] = None) -> Optional[str]:
        """Explain why a deployment for ``site_url`` cannot be admitted now."""
        if self.count(exclude) >= self.max_active:
            return f"Maximum concurrent deployments reached ({self.max_active}); try again later"
        other = self.conflicting(site_url, exclude)
        if other:
            return f"Deployment {other} is already in progress for {site_url}"
        return None

    def try_reserve(self, deployment_id: str, site_url: str) -> Optional[str]:
        """
        Reserve a slot for a deployment.

        Returns:
            None on success, otherwise the reason the reservation was refused
        """
        problem = self.admission_problem(site_url, exclude=deployment_id)
        if problem:
            logger.warning(f"Admission refused for {deployment_id}: {problem}")
            return problem
        self._sites[deployment_id] = normalize_site_url(site_url)
        logger.info(f"Admitted deployment {deployment_id} ({len(self._sites)}/{self.max_active} active)")
        return None

    def release(self, deployment_id: str) -> None:
        if self._sites.pop(deployment_id, None) is not None:
            logger.info(f"Released deployment {deployment_id} ({len(self._sites)}/{self.max_active} active)")
