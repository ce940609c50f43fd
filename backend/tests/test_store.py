from datetime import timedelta

import pytest

from patchdeploy.db.store import InMemoryDeploymentStore
from patchdeploy.models.deployment import (
    Backup,
    DeploymentRecord,
    DeploymentStatus,
    LogLevel,
    Platform,
    RollbackRecord,
    RollbackTrigger,
    utcnow,
)


def make_record(deployment_id, user_id=None, minutes_ago=0, status=DeploymentStatus.COMPLETED):
    return DeploymentRecord(
        id=deployment_id,
        patch_id="patch-1",
        scan_id="scan-1",
        connection_id="site-1",
        user_id=user_id,
        site_url="https://shop.example.com",
        platform=Platform.CMS_API,
        status=status,
        start_time=utcnow() - timedelta(minutes=minutes_ago),
    )


@pytest.mark.asyncio
async def test_records_are_copied():
    store = InMemoryDeploymentStore()
    record = make_record("dep-1")
    await store.save_record(record)

    record.add_log(LogLevel.INFO, "changed after save")
    loaded = await store.get_record("dep-1")
    loaded.status = DeploymentStatus.FAILED

    assert (await store.get_record("dep-1")).logs == []
    assert (await store.get_record("dep-1")).status == DeploymentStatus.COMPLETED
    assert await store.get_record("missing") is None


@pytest.mark.asyncio
async def test_list_records_newest_first():
    store = InMemoryDeploymentStore()
    await store.save_record(make_record("old", user_id="alice", minutes_ago=30))
    await store.save_record(make_record("new", user_id="alice", minutes_ago=1))
    await store.save_record(make_record("bob", user_id="bob", minutes_ago=10, status=DeploymentStatus.FAILED))

    assert [r.id for r in await store.list_records()] == ["new", "bob", "old"]
    assert [r.id for r in await store.list_records(user_id="alice")] == ["new", "old"]
    assert [r.id for r in await store.list_records(statuses=[DeploymentStatus.FAILED])] == ["bob"]
    assert [r.id for r in await store.list_records(limit=1)] == ["new"]


@pytest.mark.asyncio
async def test_purge_archived_records():
    store = InMemoryDeploymentStore()
    record = make_record("dep-1")
    record.end_time = utcnow()
    await store.save_record(record)
    await store.save_record(make_record("dep-2"))
    await store.save_rollback(RollbackRecord(deployment_id="dep-1", trigger=RollbackTrigger.MANUAL, reason="manual"))
    await store.archive_record("dep-1")

    assert await store.purge_archived(utcnow() - timedelta(hours=1)) == 0
    assert await store.purge_archived(utcnow() + timedelta(seconds=1)) == 1
    assert await store.get_record("dep-1") is None
    assert await store.get_rollback("dep-1") is None
    assert await store.get_record("dep-2") is not None


@pytest.mark.asyncio
async def test_purge_keeps_failed_rollbacks():
    store = InMemoryDeploymentStore()
    record = make_record("dep-1", status=DeploymentStatus.ROLLBACK_FAILED)
    record.end_time = utcnow() - timedelta(days=2)
    await store.save_record(record)
    await store.save_rollback(RollbackRecord(
        deployment_id="dep-1", trigger=RollbackTrigger.AUTOMATIC, reason="verification_failed",
        requires_manual_intervention=True,
    ))
    await store.archive_record("dep-1")

    assert await store.purge_archived(utcnow()) == 0
    assert (await store.get_record("dep-1")).status == DeploymentStatus.ROLLBACK_FAILED
    assert (await store.get_rollback("dep-1")).requires_manual_intervention


@pytest.mark.asyncio
async def test_backups_are_write_once():
    store = InMemoryDeploymentStore()
    await store.save_backups("dep-1", [Backup.capture("dep-1", "theme.css", "original")])
    await store.save_backups("dep-1", [Backup.capture("dep-1", "theme.css", "patched")])
    await store.save_backups("dep-2", [Backup.capture("dep-2", "theme.css", "other")])

    backups = await store.get_backups("dep-1")
    assert len(backups) == 1
    assert backups[0].original_content == "original"


@pytest.mark.asyncio
async def test_purge_backups():
    store = InMemoryDeploymentStore()
    await store.save_backups("dep-1", [
        Backup.capture("dep-1", "theme.css", "original"),
        Backup.capture("dep-1", "assets/new.js", None),
    ])

    assert await store.purge_backups(utcnow() - timedelta(days=1)) == 0
    assert await store.purge_backups(utcnow() + timedelta(seconds=1)) == 2
    assert await store.get_backups("dep-1") == []
