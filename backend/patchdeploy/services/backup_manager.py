"""
Backup manager.

Snapshots every asset a patch will touch before anything is mutated. Capture
is all-or-nothing: if one asset can't be read, or the snapshots can't be
persisted, no backup set is returned and the deployment must not proceed.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from patchdeploy.core.config import settings
from patchdeploy.core.errors import BackupFailed
from patchdeploy.db.store import DeploymentStore
from patchdeploy.models.deployment import Backup, Connection, utcnow
from patchdeploy.services.transports.base import TransportAdapter

logger = logging.getLogger(__name__)


class BackupManager:
    """Captures, persists and expires pre-mutation snapshots."""

    def __init__(self, store: DeploymentStore, max_parallel: Optional[int] = None):
        self.store = store
        self.max_parallel = max_parallel or settings.MAX_ASSET_FANOUT

    async def create_backups(
        self,
        deployment_id: str,
        connection: Connection,
        adapter: TransportAdapter,
        asset_keys: Sequence[str],
    ) -> List[Backup]:
        """
        Capture and durably persist a backup for every asset.

        Assets that don't exist yet are recorded as absent, so restoring them
        deletes the asset.

        Args:
            deployment_id: Deployment the backups belong to
            connection: Connection to the target site
            adapter: Transport adapter for the connection's platform
            asset_keys: Every asset the patch will touch

        Returns:
            The persisted backups, in ``asset_keys`` order

        Raises:
            BackupFailed: if any asset could not be captured or the set could
                not be persisted
        """
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def capture(asset_key: str) -> Backup:
            async with semaphore:
                content = await adapter.fetch(connection, asset_key)
            return Backup.capture(deployment_id, asset_key, content)

        results = await asyncio.gather(*(capture(key) for key in asset_keys), return_exceptions=True)

        for asset_key, result in zip(asset_keys, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(f"Backup of {asset_key} for deployment {deployment_id} failed: {result}")
                raise BackupFailed(asset_key, str(result)) from result

        backups: List[Backup] = list(results)
        try:
            await self.store.save_backups(deployment_id, backups)
        except Exception as e:
            logger.error(f"Persisting backups for deployment {deployment_id} failed: {e}")
            raise BackupFailed(", ".join(asset_keys), f"could not persist backups: {e}") from e

        absent = len([backup for backup in backups if backup.absent])
        logger.info(
            f"Backed up {len(backups)} assets for deployment {deployment_id}"
            + (f" ({absent} not yet present)" if absent else "")
        )
        return backups

    async def get_backups(self, deployment_id: str) -> List[Backup]:
        return await self.store.get_backups(deployment_id)

    async def purge_expired(self, retention_days: Optional[float] = None, now: Optional[datetime] = None) -> int:
        """Garbage-collect backups older than the retention window."""
        retention_days = retention_days if retention_days is not None else settings.BACKUP_RETENTION_DAYS
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        count = await self.store.purge_backups(cutoff)
        if count:
            logger.info(f"Purged {count} backups created before {cutoff.isoformat()}")
        return count
