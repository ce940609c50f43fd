import asyncio

import pytest

from patchdeploy.core.errors import (
    AdmissionRejected,
    ConnectionNotFound,
    DeploymentNotFound,
    DeploymentTerminal,
    PatchNotFound,
    TransientTransportError,
    TransportError,
)
from patchdeploy.db.store import InMemoryDeploymentStore
from patchdeploy.models.deployment import (
    Connection,
    DeploymentStatus,
    HealthStatus,
    LogLevel,
    Platform,
    RollbackTrigger,
    StepName,
    StepStatus,
    TERMINAL_STATUSES,
)

from conftest import ORIGINAL_ASSETS, wait_for_status


async def collect_statuses(subscription):
    statuses = []
    async for update in subscription:
        if not statuses or statuses[-1] != update.status:
            statuses.append(update.status)
    return statuses


@pytest.mark.asyncio
async def test_successful_deployment(engine, transport, store):
    """A healthy deployment walks every state and completes"""
    record = await engine.submit("scan-1", "site-1", user_id="user-1")
    assert record.status == DeploymentStatus.VALIDATING

    subscription = await engine.subscribe(record.id)
    final = await engine.wait(record.id, timeout=5)
    statuses = await collect_statuses(subscription)

    assert final.status == DeploymentStatus.COMPLETED
    assert final.progress == 100
    assert statuses == [
        DeploymentStatus.VALIDATING,
        DeploymentStatus.BACKING_UP,
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.VERIFYING,
        DeploymentStatus.MONITORING,
        DeploymentStatus.COMPLETED,
    ]
    assert sorted(final.deployed_keys) == sorted(["theme.css", "layout/theme.liquid", "assets/skip-link.js"])
    assert transport.assets["theme.css"] == "a:focus { outline: 2px solid #005fcc; }\n"
    assert transport.assets["assets/skip-link.js"] == "document.body.prepend(skipLink);"
    assert final.health_samples
    assert final.end_time is not None
    assert all(step.status == StepStatus.COMPLETED for step in final.steps)
    assert engine.list_active() == []
    assert store.is_archived(record.id)


@pytest.mark.asyncio
async def test_backup_exists_before_each_mutation(engine, transport, store):
    """Every asset is read for backup before the first write happens"""
    record = await engine.submit("scan-1", "site-1")
    await engine.wait(record.id, timeout=5)

    first_write = next(i for i, call in enumerate(transport.calls) if call[0] == "write")
    backed_up = {call[1] for call in transport.calls[:first_write] if call[0] == "read"}
    assert backed_up == {"theme.css", "layout/theme.liquid", "assets/skip-link.js"}

    backups = {backup.asset_key: backup for backup in await store.get_backups(record.id)}
    assert backups["theme.css"].original_content == ORIGINAL_ASSETS["theme.css"]
    assert backups["assets/skip-link.js"].absent


@pytest.mark.asyncio
async def test_partial_failure_continues_to_verification(engine, transport):
    """Asset #2 fails: two deployed, one failed, and the deployment carries on"""
    transport.fail_writes["layout/theme.liquid"] = TransportError("permission denied", "layout/theme.liquid")

    record = await engine.submit("scan-1", "site-1")
    subscription = await engine.subscribe(record.id)
    final = await engine.wait(record.id, timeout=5)
    statuses = await collect_statuses(subscription)

    assert len(final.deployed_assets) == 2
    assert len(final.failed_assets) == 1
    assert final.failed_assets[0].asset_key == "layout/theme.liquid"
    assert "permission denied" in final.failed_assets[0].error
    assert DeploymentStatus.VERIFYING in statuses
    assert final.status == DeploymentStatus.COMPLETED
    assert final.rollback_info is None
    assert any("Partial deployment" in entry.message for entry in final.logs)


@pytest.mark.asyncio
async def test_backup_failure_leaves_site_untouched(engine, transport):
    """A network error backing up theme.css fails the deployment with zero applies"""
    transport.fail_reads["theme.css"] = TransientTransportError("connection reset", "theme.css")
    before = dict(transport.assets)

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert final.status == DeploymentStatus.FAILED
    assert final.deployed_assets == []
    assert transport.count("apply") == 0
    assert transport.count("write") == 0
    assert transport.assets == before
    assert "theme.css" in final.error
    # transient read errors are retried before giving up
    assert transport.calls.count(("read", "theme.css")) == 3


@pytest.mark.asyncio
async def test_blocked_when_baseline_critical(engine, transport, health_checker):
    """Validation failure blocks the deployment and mutates nothing"""
    health_checker.push(HealthStatus.CRITICAL)
    before = dict(transport.assets)

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert final.status == DeploymentStatus.BLOCKED
    assert transport.calls == []
    assert transport.assets == before
    assert any("Baseline health" in blocker for blocker in final.validation.blockers)


@pytest.mark.asyncio
async def test_all_assets_failing_fails_without_rollback(engine, transport):
    for key in ("theme.css", "layout/theme.liquid", "assets/skip-link.js"):
        transport.fail_writes[key] = TransportError("read-only theme", key)

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert final.status == DeploymentStatus.FAILED
    assert len(final.failed_assets) == 3
    assert final.rollback_info is None
    assert transport.count("restore") == 0


@pytest.mark.asyncio
async def test_content_drift_is_recorded_as_failed_asset(engine, transport):
    transport.assets["theme.css"] = "a:focus { outline: 1px dotted; }\n"

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert "theme.css" in final.failed_keys
    assert "changed" in final.failed_assets[0].error
    assert transport.assets["theme.css"] == "a:focus { outline: 1px dotted; }\n"


@pytest.mark.asyncio
async def test_critical_verification_rolls_back(engine, transport, health_checker):
    """A critical check right after deploying is a hard gate"""
    health_checker.push(HealthStatus.HEALTHY, HealthStatus.CRITICAL)

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert final.status == DeploymentStatus.ROLLED_BACK
    assert final.rollback_info.reason == "verification_failed"
    assert final.rollback_info.trigger == RollbackTrigger.AUTOMATIC
    assert transport.assets == ORIGINAL_ASSETS


@pytest.mark.asyncio
async def test_warning_verification_is_advisory(engine, health_checker):
    health_checker.push(HealthStatus.HEALTHY, HealthStatus.WARNING)

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert final.status == DeploymentStatus.COMPLETED_WITH_WARNINGS


@pytest.mark.asyncio
async def test_consecutive_critical_samples_trigger_rollback(make_engine, transport, health_checker):
    """Scores 40, 35 and 50 in a row roll the deployment back automatically"""
    engine = make_engine(monitoring_window=5, check_interval=0.01)
    health_checker.push(HealthStatus.HEALTHY, HealthStatus.HEALTHY, 40, 35, 50)

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert final.status == DeploymentStatus.ROLLED_BACK
    assert final.rollback_info.reason == "health_check_failures"
    assert final.rollback_info.trigger == RollbackTrigger.AUTOMATIC
    assert final.rollback_info.success
    assert [s.overall_score for s in final.health_samples[-3:]] == [40, 35, 50]
    assert transport.assets == ORIGINAL_ASSETS
    assert "assets/skip-link.js" not in transport.assets


@pytest.mark.asyncio
async def test_non_consecutive_critical_samples_do_not_roll_back(make_engine, health_checker):
    engine = make_engine(monitoring_window=0.2, check_interval=0.01)
    health_checker.push(HealthStatus.HEALTHY, HealthStatus.HEALTHY, 40, 35, HealthStatus.HEALTHY, 40, 35)

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert final.status == DeploymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_rollback_requires_manual_intervention(engine, transport, health_checker):
    health_checker.push(HealthStatus.HEALTHY, HealthStatus.CRITICAL)
    transport.fail_restores["theme.css"] = TransportError("locked", "theme.css")

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert final.status == DeploymentStatus.ROLLBACK_FAILED
    assert final.rollback_info.requires_manual_intervention
    assert final.rollback_info.failed_assets == ["theme.css"]
    assert any(entry.level == LogLevel.CRITICAL for entry in final.logs)

    # Not retried without an explicit instruction
    restores = transport.count("restore")
    again = await engine.rollback(record.id)
    assert again.failed_assets == ["theme.css"]
    assert transport.count("restore") == restores

    # Forced retry once the asset is unlocked
    del transport.fail_restores["theme.css"]
    forced = await engine.rollback(record.id, force=True)
    assert forced.success
    assert transport.assets == ORIGINAL_ASSETS
    assert (await engine.get_status(record.id)).status == DeploymentStatus.ROLLBACK_FAILED


@pytest.mark.asyncio
async def test_unwritable_failed_asset_still_rolls_back(engine, transport, health_checker):
    """An asset that could never be written needs no restore once health degrades"""
    transport.fail_writes["layout/theme.liquid"] = TransportError("permission denied", "layout/theme.liquid")
    health_checker.push(HealthStatus.HEALTHY, HealthStatus.CRITICAL)

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert final.status == DeploymentStatus.ROLLED_BACK
    assert final.failed_keys == ["layout/theme.liquid"]
    assert final.rollback_info.success
    assert not final.rollback_info.requires_manual_intervention
    assert transport.assets == ORIGINAL_ASSETS


@pytest.mark.asyncio
async def test_rollback_is_idempotent(engine, transport, health_checker):
    """A second rollback returns the same record and makes no transport calls"""
    health_checker.push(HealthStatus.HEALTHY, HealthStatus.CRITICAL)
    record = await engine.submit("scan-1", "site-1")
    await engine.wait(record.id, timeout=5)

    first = await engine.rollback(record.id)
    calls = len(transport.calls)
    second = await engine.rollback(record.id)

    assert first == second
    assert len(transport.calls) == calls


@pytest.mark.asyncio
async def test_cancel_during_monitoring_stops_sampling(make_engine, health_checker):
    engine = make_engine(monitoring_window=30, check_interval=0.01)
    record = await engine.submit("scan-1", "site-1")
    await wait_for_status(engine, record.id, DeploymentStatus.MONITORING)
    await asyncio.sleep(0.03)

    await engine.cancel(record.id)
    final = await engine.wait(record.id, timeout=5)
    calls_after_cancel = health_checker.calls
    await asyncio.sleep(0.05)

    assert final.status == DeploymentStatus.CANCELLED
    assert health_checker.calls == calls_after_cancel
    assert engine._sessions == {}
    assert final.steps[-1].status == StepStatus.SKIPPED


@pytest.mark.asyncio
async def test_cancel_during_deploying_waits_for_in_flight_assets(make_engine, transport):
    engine = make_engine(max_fanout=1)
    transport.write_delay = 0.05
    record = await engine.submit("scan-1", "site-1")
    await wait_for_status(engine, record.id, DeploymentStatus.DEPLOYING)

    await engine.cancel(record.id)
    final = await engine.wait(record.id, timeout=5)

    assert final.status == DeploymentStatus.CANCELLED
    # the asset in flight finished; the rest were never started
    assert len(final.deployed_assets) == 1
    assert transport.count("apply") == 1
    assert final.backups


@pytest.mark.asyncio
async def test_manual_rollback_during_monitoring(make_engine, transport):
    engine = make_engine(monitoring_window=30, check_interval=0.01)
    record = await engine.submit("scan-1", "site-1")
    await wait_for_status(engine, record.id, DeploymentStatus.MONITORING)

    rollback = await engine.rollback(record.id, reason="customer request")
    final = await engine.get_status(record.id)

    assert rollback.trigger == RollbackTrigger.MANUAL
    assert rollback.reason == "customer request"
    assert final.status == DeploymentStatus.ROLLED_BACK
    assert transport.assets == ORIGINAL_ASSETS


@pytest.mark.asyncio
async def test_rollback_of_completed_deployment_is_rejected(engine):
    record = await engine.submit("scan-1", "site-1")
    await engine.wait(record.id, timeout=5)

    with pytest.raises(DeploymentTerminal):
        await engine.rollback(record.id)


@pytest.mark.asyncio
async def test_terminal_status_never_changes(engine):
    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)
    assert final.status in TERMINAL_STATUSES

    with pytest.raises(DeploymentTerminal):
        await engine.cancel(record.id)
    assert (await engine.get_status(record.id)).status == final.status


@pytest.mark.asyncio
async def test_second_deployment_to_same_site_is_rejected(make_engine):
    engine = make_engine(monitoring_window=30)
    first = await engine.submit("scan-1", "site-1")

    with pytest.raises(AdmissionRejected) as exc_info:
        await engine.submit("scan-1", "site-1")

    assert exc_info.value.retry_later
    blocked = await engine.get_status(exc_info.value.deployment_id)
    assert blocked.status == DeploymentStatus.BLOCKED
    assert [r.id for r in engine.list_active()] == [first.id]

    await engine.shutdown()


@pytest.mark.asyncio
async def test_admission_ceiling(make_engine, connections):
    engine = make_engine(max_active=2, monitoring_window=30)
    for index in range(3):
        connections.add(Connection(
            id=f"site-{index + 10}",
            platform=Platform.CMS_API,
            endpoint="https://example.com/admin/api",
            credential_ref="shop-token",
            site_url=f"https://site{index}.example.com",
        ))

    await engine.submit("scan-1", "site-10")
    await engine.submit("scan-1", "site-11")
    with pytest.raises(AdmissionRejected):
        await engine.submit("scan-1", "site-12")

    assert len(engine.list_active()) == 2
    await engine.shutdown()
    assert engine.list_active() == []


@pytest.mark.asyncio
async def test_site_is_released_after_terminal_state(engine, transport):
    first = await engine.submit("scan-1", "site-1")
    await engine.wait(first.id, timeout=5)
    transport.assets = dict(ORIGINAL_ASSETS)

    second = await engine.submit("scan-1", "site-1")
    final = await engine.wait(second.id, timeout=5)
    assert final.status == DeploymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_inputs(engine):
    with pytest.raises(PatchNotFound):
        await engine.submit("missing-scan", "site-1")
    with pytest.raises(ConnectionNotFound):
        await engine.submit("scan-1", "missing-site")
    with pytest.raises(DeploymentNotFound):
        await engine.get_status("missing")


@pytest.mark.asyncio
async def test_preflight_creates_no_record(engine, store):
    result = await engine.preflight("scan-1", "site-1")

    assert result.safe
    assert {check.name for check in result.checks} >= {"concurrency", "conflict", "backup_strategy", "baseline_health"}
    assert await store.list_records() == []


@pytest.mark.asyncio
async def test_history_is_filtered_by_user(engine):
    first = await engine.submit("scan-1", "site-1", user_id="alice")
    await engine.wait(first.id, timeout=5)
    second = await engine.submit("scan-1", "site-1", user_id="bob")
    await engine.wait(second.id, timeout=5)

    history = await engine.get_history("alice", limit=10)
    assert [record.id for record in history] == [first.id]
    assert len(await engine.get_history(limit=10)) == 2


@pytest.mark.asyncio
async def test_subscribe_after_terminal_yields_final_state(engine):
    record = await engine.submit("scan-1", "site-1")
    await engine.wait(record.id, timeout=5)

    subscription = await engine.subscribe(record.id)
    updates = [update async for update in subscription]

    assert len(updates) == 1
    assert updates[0].terminal
    assert updates[0].status == DeploymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_logs_are_capped(make_engine, monkeypatch):
    from patchdeploy.core.config import settings
    monkeypatch.setattr(settings, "MAX_LOG_ENTRIES", 5)
    engine = make_engine()

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)

    assert len(final.logs) == 5
    assert final.steps[0].name == StepName.VALIDATION


@pytest.mark.asyncio
async def test_purge_expired(engine, store, monkeypatch):
    from patchdeploy.core.config import settings

    record = await engine.submit("scan-1", "site-1")
    await engine.wait(record.id, timeout=5)
    assert await engine.purge_expired() == {"records": 0, "backups": 0}

    monkeypatch.setattr(settings, "HISTORY_RETENTION_HOURS", -1)
    monkeypatch.setattr(settings, "BACKUP_RETENTION_DAYS", -1)

    assert await engine.purge_expired() == {"records": 1, "backups": 3}
    with pytest.raises(DeploymentNotFound):
        await engine.get_status(record.id)


@pytest.mark.asyncio
async def test_purge_keeps_failed_rollbacks(engine, transport, health_checker, monkeypatch):
    """Deployments awaiting an operator survive history retention"""
    from patchdeploy.core.config import settings

    health_checker.push(HealthStatus.HEALTHY, HealthStatus.CRITICAL)
    transport.fail_restores["theme.css"] = TransportError("locked", "theme.css")
    record = await engine.submit("scan-1", "site-1")
    assert (await engine.wait(record.id, timeout=5)).status == DeploymentStatus.ROLLBACK_FAILED

    monkeypatch.setattr(settings, "HISTORY_RETENTION_HOURS", -1)
    assert (await engine.purge_expired())["records"] == 0

    kept = await engine.get_status(record.id)
    assert kept.status == DeploymentStatus.ROLLBACK_FAILED
    assert kept.rollback_info.requires_manual_intervention

    del transport.fail_restores["theme.css"]
    forced = await engine.rollback(record.id, force=True)
    assert forced.success
    assert transport.assets == ORIGINAL_ASSETS


class UnreliableStore(InMemoryDeploymentStore):
    """Fails the first record save, then behaves normally."""

    def __init__(self):
        super().__init__()
        self.failures = 1

    async def save_record(self, record):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("database unavailable")
        await super().save_record(record)


@pytest.mark.asyncio
async def test_failed_initial_save_releases_the_site(make_engine):
    store = UnreliableStore()
    engine = make_engine(store=store)

    with pytest.raises(ConnectionError):
        await engine.submit("scan-1", "site-1")

    assert engine.list_active() == []
    history = await store.list_records()
    assert [record.status for record in history] == [DeploymentStatus.BLOCKED]
    assert "database unavailable" in history[0].error

    record = await engine.submit("scan-1", "site-1")
    final = await engine.wait(record.id, timeout=5)
    assert final.status == DeploymentStatus.COMPLETED
