"""
Durable state for deployments.

One record per deployment keyed by id, one backup per (deployment id, asset
key) and one rollback result per deployment. Records and backups are only
appended or replaced by their owner until archival or garbage collection.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from patchdeploy.models.deployment import Backup, DeploymentRecord, DeploymentStatus, RollbackRecord, utcnow

logger = logging.getLogger(__name__)


class DeploymentStore(ABC):
    """Persistence interface used by the engine."""

    @abstractmethod
    async def save_record(self, record: DeploymentRecord) -> None:
        """Insert or replace a deployment record."""

    @abstractmethod
    async def get_record(self, deployment_id: str) -> Optional[DeploymentRecord]:
        """Get a record, archived or not."""

    @abstractmethod
    async def list_records(
        self,
        user_id: Optional[str] = None,
        statuses: Optional[List[DeploymentStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[DeploymentRecord]:
        """List records, newest first."""

    @abstractmethod
    async def archive_record(self, deployment_id: str) -> None:
        """Move a terminal record to cold storage."""

    @abstractmethod
    async def purge_archived(self, before: datetime) -> int:
        """
        Delete archived records that ended before ``before``. Returns the count.

        Records left in ``rollback_failed`` are kept until an operator resolves them.
        """

    @abstractmethod
    async def save_backups(self, deployment_id: str, backups: List[Backup]) -> None:
        """
        Persist all backups for a deployment in one call.

        A backup that already exists for the same asset is kept unchanged.
        """

    @abstractmethod
    async def get_backups(self, deployment_id: str) -> List[Backup]:
        pass

    @abstractmethod
    async def purge_backups(self, before: datetime) -> int:
        """Delete backups created before ``before``. Returns the count."""

    @abstractmethod
    async def save_rollback(self, rollback: RollbackRecord) -> None:
        pass

    @abstractmethod
    async def get_rollback(self, deployment_id: str) -> Optional[RollbackRecord]:
        pass


class InMemoryDeploymentStore(DeploymentStore):
    """Process-local store. Holds copies so callers can't alias stored state."""

    def __init__(self):
        self._records: Dict[str, DeploymentRecord] = {}
        self._archived_at: Dict[str, datetime] = {}
        self._backups: Dict[Tuple[str, str], Backup] = {}
        self._rollbacks: Dict[str, RollbackRecord] = {}

    async def save_record(self, record: DeploymentRecord) -> None:
        self._records[record.id] = record.snapshot()

    async def get_record(self, deployment_id: str) -> Optional[DeploymentRecord]:
        record = self._records.get(deployment_id)
        return record.snapshot() if record else None

    async def list_records(
        self,
        user_id: Optional[str] = None,
        statuses: Optional[List[DeploymentStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[DeploymentRecord]:
        records = [
            record for record in self._records.values()
            if (user_id is None or record.user_id == user_id)
            and (statuses is None or record.status in statuses)
        ]
        records.sort(key=lambda r: r.start_time, reverse=True)
        if limit is not None:
            records = records[:limit]
        return [record.snapshot() for record in records]

    async def archive_record(self, deployment_id: str) -> None:
        if deployment_id in self._records:
            self._archived_at.setdefault(deployment_id, utcnow())

    def is_archived(self, deployment_id: str) -> bool:
        return deployment_id in self._archived_at

    async def purge_archived(self, before: datetime) -> int:
        expired = [
            deployment_id for deployment_id in self._archived_at
            if self._records[deployment_id].status != DeploymentStatus.ROLLBACK_FAILED
            and (self._records[deployment_id].end_time or self._archived_at[deployment_id]) < before
        ]
        for deployment_id in expired:
            del self._records[deployment_id]
            del self._archived_at[deployment_id]
            self._rollbacks.pop(deployment_id, None)
        return len(expired)

    async def save_backups(self, deployment_id: str, backups: List[Backup]) -> None:
        for backup in backups:
            self._backups.setdefault((deployment_id, backup.asset_key), backup)

    async def get_backups(self, deployment_id: str) -> List[Backup]:
        return [backup for (owner, _), backup in self._backups.items() if owner == deployment_id]

    async def purge_backups(self, before: datetime) -> int:
        expired = [key for key, backup in self._backups.items() if backup.created_at < before]
        for key in expired:
            del self._backups[key]
        return len(expired)

    async def save_rollback(self, rollback: RollbackRecord) -> None:
        self._rollbacks[rollback.deployment_id] = rollback.model_copy(deep=True)

    async def get_rollback(self, deployment_id: str) -> Optional[RollbackRecord]:
        rollback = self._rollbacks.get(deployment_id)
        return rollback.model_copy(deep=True) if rollback else None
