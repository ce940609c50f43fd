"""
Rollback executor.

Replays a deployment's backups through the adapter that performed the
mutations. A rollback runs at most once per deployment: later calls return the
stored result without touching the site, and a failed rollback is only
retried when an operator explicitly forces it.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from patchdeploy.core.config import settings
from patchdeploy.db.store import DeploymentStore
from patchdeploy.models.deployment import (
    Backup,
    DeploymentRecord,
    RollbackRecord,
    RollbackTrigger,
    content_checksum,
    utcnow,
)
from patchdeploy.services.collaborators import ConnectionRegistry
from patchdeploy.services.transports import TransportRegistry
from patchdeploy.utils.metrics import rollback_count

logger = logging.getLogger(__name__)


def rollback_targets(record: DeploymentRecord) -> List[str]:
    """
    Assets to consider: everything deployed plus everything that failed.

    A failed asset may still have been written before its error surfaced, so
    it is checked against its backup and restored only if it changed.
    """
    targets: List[str] = []
    for asset_key in record.deployed_keys + record.failed_keys:
        if asset_key not in targets:
            targets.append(asset_key)
    return targets


class RollbackExecutor:
    """Restores deployed assets from their backups."""

    def __init__(
        self,
        store: DeploymentStore,
        transports: TransportRegistry,
        connections: ConnectionRegistry,
        max_parallel: Optional[int] = None,
    ):
        self.store = store
        self.transports = transports
        self.connections = connections
        self.max_parallel = max_parallel or settings.MAX_ASSET_FANOUT

    async def rollback(
        self,
        record: DeploymentRecord,
        reason: str,
        trigger: RollbackTrigger = RollbackTrigger.MANUAL,
        force: bool = False,
    ) -> RollbackRecord:
        """
        Roll a deployment back.

        Args:
            record: The deployment to roll back
            reason: Why the rollback was triggered
            trigger: Manual or automatic
            force: Retry a rollback that previously failed

        Returns:
            The rollback result. Restoration failures are reported in the
            result, never raised.
        """
        prior = await self.store.get_rollback(record.id)
        if prior is not None:
            if prior.success:
                logger.info(f"Deployment {record.id} already rolled back; returning prior result")
                return prior
            if not force:
                logger.warning(
                    f"Rollback of {record.id} previously failed; not retrying without explicit instruction"
                )
                return prior
            logger.warning(f"Forcing a new rollback attempt for {record.id}")

        rollback = RollbackRecord(deployment_id=record.id, trigger=trigger, reason=reason)
        targets = rollback_targets(record)
        logger.info(f"Rolling back {len(targets)} assets for deployment {record.id} ({reason})")

        try:
            adapter = self.transports.get(record.platform)
            if adapter is None:
                raise LookupError(f"No transport adapter for {record.platform.value}")
            connection = await self.connections.resolve(record.connection_id)
            backups: Dict[str, Backup] = {
                backup.asset_key: backup for backup in await self.store.get_backups(record.id)
            }
        except Exception as e:
            logger.error(f"Rollback of {record.id} could not start: {e}")
            for asset_key in targets:
                rollback.failed_assets.append(asset_key)
                rollback.errors[asset_key] = str(e)
        else:
            semaphore = asyncio.Semaphore(self.max_parallel)
            deployed = set(record.deployed_keys)

            async def restore(asset_key: str) -> None:
                backup = backups.get(asset_key)
                if backup is None:
                    rollback.failed_assets.append(asset_key)
                    rollback.errors[asset_key] = "No backup recorded for asset"
                    return
                async with semaphore:
                    try:
                        if asset_key not in deployed:
                            current = await adapter.fetch(connection, asset_key)
                            if content_checksum(current) == backup.checksum:
                                logger.info(f"{asset_key} is unchanged since backup; nothing to restore")
                                rollback.restored_assets.append(asset_key)
                                return
                        await adapter.restore(connection, backup)
                    except Exception as e:
                        logger.error(f"Restoring {asset_key} for deployment {record.id} failed: {e}")
                        rollback.failed_assets.append(asset_key)
                        rollback.errors[asset_key] = str(e)
                        return
                rollback.restored_assets.append(asset_key)

            await asyncio.gather(*(restore(asset_key) for asset_key in targets))

        rollback.success = not rollback.failed_assets
        rollback.requires_manual_intervention = not rollback.success
        rollback.completed_at = utcnow()
        await self.store.save_rollback(rollback)

        outcome = "success" if rollback.success else "failed"
        rollback_count.labels(trigger=trigger.value, outcome=outcome).inc()
        if rollback.success:
            logger.info(f"Rolled back deployment {record.id}: restored {len(rollback.restored_assets)} assets")
        else:
            logger.critical(
                f"Rollback of deployment {record.id} failed for {', '.join(rollback.failed_assets)}; "
                f"manual intervention required"
            )
        return rollback
