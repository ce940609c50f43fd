"""
Interfaces the engine consumes from the rest of the platform.

Patch packages are produced by the analysis pipeline and site connections are
managed by the dashboard; the engine only reads them. The in-memory versions
back local runs and the tests.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict

from patchdeploy.core.errors import ConnectionNotFound, PatchNotFound
from patchdeploy.models.deployment import Connection, PatchPackage

logger = logging.getLogger(__name__)


class PatchSource(ABC):
    """Source of patch packages, keyed by the scan that produced them."""

    @abstractmethod
    async def get_patch_package(self, scan_id: str) -> PatchPackage:
        """
        Get the patch package for a scan.

        Raises:
            PatchNotFound: if the scan has no patch package
        """


class ConnectionRegistry(ABC):
    """Source of site connections, keyed by site identifier."""

    @abstractmethod
    async def resolve(self, site_id: str) -> Connection:
        """
        Resolve a site identifier to its connection.

        Raises:
            ConnectionNotFound: if the site is not registered
        """


class InMemoryPatchSource(PatchSource):
    def __init__(self):
        self._packages: Dict[str, PatchPackage] = {}

    def add(self, package: PatchPackage) -> None:
        self._packages[package.source_scan_id] = package

    async def get_patch_package(self, scan_id: str) -> PatchPackage:
        package = self._packages.get(scan_id)
        if package is None:
            raise PatchNotFound(scan_id)
        return package


class InMemoryConnectionRegistry(ConnectionRegistry):
    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    def add(self, connection: Connection) -> None:
        self._connections[connection.id] = connection
        logger.debug(f"Registered connection {connection.id} for {connection.site_url}")

    async def resolve(self, site_id: str) -> Connection:
        connection = self._connections.get(site_id)
        if connection is None:
            raise ConnectionNotFound(site_id)
        return connection
