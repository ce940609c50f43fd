"""
Base interface for transport adapters.

A transport adapter knows how to read, write and delete one asset on one kind
of remote platform. The shared ``apply``/``restore``/``fetch`` operations are
built on those three primitives so every platform gets the same retry and
checksum behaviour.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from patchdeploy.core.config import settings
from patchdeploy.core.errors import TransientTransportError
from patchdeploy.models.deployment import Backup, ChangeKind, Connection, FileChange, Platform, content_checksum, utcnow
from patchdeploy.services.credential_service import CredentialVault

logger = logging.getLogger(__name__)


class TransportReceipt(BaseModel):
    """Acknowledgement of one completed asset mutation."""
    asset_key: str
    checksum: Optional[str] = None
    completed_at: datetime = Field(default_factory=utcnow)


class TransportAdapter(ABC):
    """Base class for platform transport adapters."""

    platform: Platform

    def __init__(
        self,
        credentials: CredentialVault,
        max_attempts: Optional[int] = None,
        backoff_min: Optional[float] = None,
        backoff_max: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize the adapter.

        Args:
            credentials: Vault used to resolve credential references per call
            max_attempts: Attempts for transient failures (default from settings)
            backoff_min: Minimum exponential backoff in seconds
            backoff_max: Maximum exponential backoff in seconds
            timeout: Per-call timeout in seconds
        """
        self.credentials = credentials
        self.max_attempts = max_attempts or settings.TRANSPORT_MAX_ATTEMPTS
        self.backoff_min = settings.TRANSPORT_BACKOFF_MIN_SECONDS if backoff_min is None else backoff_min
        self.backoff_max = settings.TRANSPORT_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        self.timeout = timeout or settings.TRANSPORT_TIMEOUT_SECONDS

    @property
    def name(self) -> str:
        return self.platform.value

    @property
    def supports_backup(self) -> bool:
        return True

    @abstractmethod
    async def read_asset(self, connection: Connection, credentials: Dict[str, str], asset_key: str) -> Optional[str]:
        """
        Read an asset.

        Returns:
            The asset content, or None if the asset does not exist
        """

    @abstractmethod
    async def write_asset(
        self, connection: Connection, credentials: Dict[str, str], asset_key: str, content: str
    ) -> None:
        """Create or overwrite an asset with the full content."""

    @abstractmethod
    async def delete_asset(self, connection: Connection, credentials: Dict[str, str], asset_key: str) -> None:
        """Delete an asset. Deleting an absent asset is not an error."""

    def validate_connection(self, connection: Connection) -> List[str]:
        """
        Check a connection's configuration for this adapter.

        Returns:
            A list of problems; empty when the connection looks usable
        """
        problems = []
        if connection.platform != self.platform:
            problems.append(f"Connection platform {connection.platform.value} does not match {self.platform.value}")
        if not connection.endpoint:
            problems.append("Connection endpoint is required")
        if not connection.credential_ref:
            problems.append("Connection credential reference is required")
        return problems

    async def fetch(self, connection: Connection, asset_key: str) -> Optional[str]:
        """Read an asset for backup purposes. Reads are always safe to retry."""
        credentials = await self.credentials.resolve(connection.credential_ref)
        async for attempt in self._retrying():
            with attempt:
                return await self.read_asset(connection, credentials, asset_key)

    async def apply(self, connection: Connection, change: FileChange) -> TransportReceipt:
        """
        Apply one change to the live site.

        Raises:
            ContentDriftError: if a replace change no longer matches the asset
            TransportError: on any non-retryable failure
        """
        credentials = await self.credentials.resolve(connection.credential_ref)
        current = None
        async for attempt in self._retrying():
            with attempt:
                current = await self.read_asset(connection, credentials, change.asset_key)

        content = change.apply_to(current)
        if current is not None and change.change_kind == ChangeKind.CREATE:
            logger.warning(f"Asset {change.asset_key} already exists on {connection.site_url}; overwriting")

        await self._put(connection, credentials, change.asset_key, content)
        logger.info(f"Applied {change.change_kind.value} to {change.asset_key} via {self.name}")
        return TransportReceipt(asset_key=change.asset_key, checksum=content_checksum(content))

    async def restore(self, connection: Connection, backup: Backup) -> TransportReceipt:
        """Restore an asset to its backed-up state. Absent backups delete the asset."""
        credentials = await self.credentials.resolve(connection.credential_ref)
        await self._put(connection, credentials, backup.asset_key, backup.original_content)
        logger.info(f"Restored {backup.asset_key} via {self.name}")
        return TransportReceipt(asset_key=backup.asset_key, checksum=backup.checksum)

    async def _put(
        self, connection: Connection, credentials: Dict[str, str], asset_key: str, content: Optional[str]
    ) -> None:
        """
        Write (or delete, for None) with checksummed resend.

        A retry first re-reads the asset; if it already holds the intended
        content, the earlier attempt landed and nothing is resent.
        """
        target = content_checksum(content)
        async for attempt in self._retrying():
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    current = await self.read_asset(connection, credentials, asset_key)
                    if content_checksum(current) == target:
                        logger.info(f"Earlier attempt for {asset_key} already landed; not resending")
                        return
                if content is None:
                    await self.delete_asset(connection, credentials, asset_key)
                else:
                    await self.write_asset(connection, credentials, asset_key, content)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception_type(TransientTransportError),
            reraise=True,
        )
