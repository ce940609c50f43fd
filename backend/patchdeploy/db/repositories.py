"""
Supabase-backed deployment store.

Tables:

- ``deployments``: one row per deployment; the full record is kept in the
  ``data`` JSON column next to the columns used for filtering
- ``deployment_backups``: one row per (deployment_id, asset_key)
- ``deployment_rollbacks``: one row per deployment_id
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from patchdeploy.db.store import DeploymentStore
from patchdeploy.db.supabase_client import (
    delete_before,
    execute_query,
    select_by_id,
    select_data,
    update_data,
    upsert_data,
)
from patchdeploy.models.deployment import Backup, DeploymentRecord, DeploymentStatus, RollbackRecord, utcnow

# Configure logging
logger = logging.getLogger(__name__)

DEPLOYMENTS_TABLE = "deployments"
BACKUPS_TABLE = "deployment_backups"
ROLLBACKS_TABLE = "deployment_rollbacks"


def _record_row(record: DeploymentRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "site_url": record.site_url,
        "status": record.status.value,
        "start_time": record.start_time.isoformat(),
        "end_time": record.end_time.isoformat() if record.end_time else None,
        "data": record.model_dump(mode="json"),
    }


class SupabaseDeploymentStore(DeploymentStore):
    """Deployment store on top of the Supabase helpers."""

    async def save_record(self, record: DeploymentRecord) -> None:
        try:
            await upsert_data(DEPLOYMENTS_TABLE, _record_row(record))
        except Exception as e:
            logger.error(f"Error saving deployment record {record.id}: {str(e)}")
            raise

    async def get_record(self, deployment_id: str) -> Optional[DeploymentRecord]:
        row = await select_by_id(DEPLOYMENTS_TABLE, "id", deployment_id)
        return DeploymentRecord.model_validate(row["data"]) if row else None

    async def list_records(
        self,
        user_id: Optional[str] = None,
        statuses: Optional[List[DeploymentStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[DeploymentRecord]:
        def query_builder(query, **kwargs):
            query = query.select("data")
            if kwargs.get("user_id") is not None:
                query = query.eq("user_id", kwargs["user_id"])
            if kwargs.get("statuses") is not None:
                query = query.in_("status", kwargs["statuses"])
            query = query.order("start_time", desc=True)
            if kwargs.get("limit") is not None:
                query = query.limit(kwargs["limit"])
            return query.execute()

        result = await execute_query(
            DEPLOYMENTS_TABLE,
            query_builder,
            user_id=user_id,
            statuses=[status.value for status in statuses] if statuses is not None else None,
            limit=limit,
        )
        return [DeploymentRecord.model_validate(row["data"]) for row in result.data or []]

    async def archive_record(self, deployment_id: str) -> None:
        await update_data(
            DEPLOYMENTS_TABLE, "id", deployment_id,
            {"archived": True, "archived_at": utcnow().isoformat()},
        )
        logger.info(f"Archived deployment record {deployment_id}")

    async def purge_archived(self, before: datetime) -> int:
        count = await delete_before(
            DEPLOYMENTS_TABLE, "end_time", before.isoformat(),
            exclude={"status": DeploymentStatus.ROLLBACK_FAILED.value}, archived=True,
        )
        if count:
            logger.info(f"Purged {count} archived deployment records")
        return count

    async def save_backups(self, deployment_id: str, backups: List[Backup]) -> None:
        rows = [backup.model_dump(mode="json") for backup in backups]
        if not rows:
            return
        try:
            await upsert_data(BACKUPS_TABLE, rows, on_conflict="deployment_id,asset_key", ignore_duplicates=True)
        except Exception as e:
            logger.error(f"Error saving backups for deployment {deployment_id}: {str(e)}")
            raise

    async def get_backups(self, deployment_id: str) -> List[Backup]:
        rows = await select_data(BACKUPS_TABLE, deployment_id=deployment_id)
        return [Backup.model_validate(row) for row in rows]

    async def purge_backups(self, before: datetime) -> int:
        count = await delete_before(BACKUPS_TABLE, "created_at", before.isoformat())
        if count:
            logger.info(f"Purged {count} expired backups")
        return count

    async def save_rollback(self, rollback: RollbackRecord) -> None:
        await upsert_data(
            ROLLBACKS_TABLE,
            {"deployment_id": rollback.deployment_id, "data": rollback.model_dump(mode="json")},
            on_conflict="deployment_id",
        )

    async def get_rollback(self, deployment_id: str) -> Optional[RollbackRecord]:
        row = await select_by_id(ROLLBACKS_TABLE, "deployment_id", deployment_id)
        return RollbackRecord.model_validate(row["data"]) if row else None
