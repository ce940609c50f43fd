"""
Transport adapter registry.

Adapters are registered once at startup, keyed by platform, and looked up by
the validator, backup manager, orchestrator and rollback executor.
"""
import logging
from typing import Dict, Iterable, Optional

from patchdeploy.models.deployment import Platform
from patchdeploy.services.credential_service import CredentialVault
from patchdeploy.services.transports.base import TransportAdapter, TransportReceipt
from patchdeploy.services.transports.cms_api import CmsApiTransport
from patchdeploy.services.transports.file_transfer import FileTransferTransport
from patchdeploy.services.transports.shell_session import ShellSessionTransport

logger = logging.getLogger(__name__)


class TransportRegistry:
    """Platform to adapter lookup."""

    def __init__(self, adapters: Optional[Iterable[TransportAdapter]] = None):
        self._adapters: Dict[Platform, TransportAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: TransportAdapter) -> None:
        if adapter.platform in self._adapters:
            logger.warning(f"Replacing transport adapter for {adapter.platform.value}")
        self._adapters[adapter.platform] = adapter
        logger.info(f"Registered transport adapter {adapter.name}")

    def get(self, platform: Platform) -> Optional[TransportAdapter]:
        return self._adapters.get(platform)

    def __contains__(self, platform: Platform) -> bool:
        return platform in self._adapters

    @property
    def platforms(self):
        return list(self._adapters)


def build_default_transports(credentials: CredentialVault) -> TransportRegistry:
    """Create a registry with one adapter per supported platform."""
    return TransportRegistry([
        CmsApiTransport(credentials),
        FileTransferTransport(credentials),
        ShellSessionTransport(credentials),
    ])


__all__ = [
    "TransportAdapter",
    "TransportReceipt",
    "TransportRegistry",
    "CmsApiTransport",
    "FileTransferTransport",
    "ShellSessionTransport",
    "build_default_transports",
]
