"""
Deployment orchestrator.

``DeploymentEngine`` owns every in-flight deployment. Each deployment runs as
one asyncio task that walks the state machine:

    pending -> validating -> (blocked | backing_up) -> deploying -> verifying
            -> monitoring -> completed | completed_with_warnings | failed

with ``cancelled`` reachable from any non-terminal status and
``rolling_back -> rolled_back | rollback_failed`` reachable from deploying,
verifying or monitoring. Only the task that owns a record mutates it; every
reader gets a snapshot.
"""
import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from patchdeploy.core.config import settings
from patchdeploy.core.errors import (
    AdmissionRejected,
    BackupFailed,
    DeploymentNotFound,
    DeploymentTerminal,
    HealthDegraded,
    InvalidTransition,
    PartialDeploymentFailure,
    RollbackFailed,
    ValidationBlocked,
)
from patchdeploy.db.store import DeploymentStore, InMemoryDeploymentStore
from patchdeploy.models.deployment import (
    TERMINAL_STATUSES,
    Connection,
    DeployedAsset,
    DeploymentRecord,
    DeploymentStatus,
    FailedAsset,
    FileChange,
    HealthSample,
    HealthStatus,
    LogEntry,
    LogLevel,
    PatchPackage,
    RollbackRecord,
    RollbackTrigger,
    StatusUpdate,
    StepName,
    StepStatus,
    ValidationResult,
    utcnow,
)
from patchdeploy.services.active_registry import ActiveDeploymentRegistry
from patchdeploy.services.backup_manager import BackupManager
from patchdeploy.services.collaborators import ConnectionRegistry, PatchSource
from patchdeploy.services.credential_service import CredentialVault
from patchdeploy.services.health_monitor import HealthChecker, MonitoringSession
from patchdeploy.services.rollback_executor import RollbackExecutor
from patchdeploy.services.safety_validator import SafetyValidator
from patchdeploy.services.state_machine import can_transition, transition
from patchdeploy.services.status_channel import StatusBroker, Subscription
from patchdeploy.services.transports import TransportRegistry
from patchdeploy.services.transports.base import TransportAdapter
from patchdeploy.utils.metrics import (
    active_deployments,
    asset_operations,
    deployment_count,
    deployment_duration,
    health_samples,
)

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}

SUCCESS_STATUSES = {DeploymentStatus.COMPLETED, DeploymentStatus.COMPLETED_WITH_WARNINGS}

# Monitoring outcomes
WINDOW_EXPIRED = "window_expired"
DEGRADED = "degraded"
INTERRUPTED = "interrupted"


class DeploymentEngine:
    """
    Runs deployments of patch packages against live sites.
    """

    def __init__(
        self,
        patch_source: PatchSource,
        connections: ConnectionRegistry,
        transports: TransportRegistry,
        store: Optional[DeploymentStore] = None,
        credentials: Optional[CredentialVault] = None,
        health_checker: Optional[HealthChecker] = None,
        broker: Optional[StatusBroker] = None,
        max_active: Optional[int] = None,
        max_fanout: Optional[int] = None,
        monitoring_window: Optional[float] = None,
        check_interval: Optional[float] = None,
        critical_threshold: Optional[int] = None,
    ):
        """
        Initialize the engine.

        Args:
            patch_source: Where patch packages come from
            connections: Where site connections come from
            transports: Registered transport adapters
            store: Durable store for records, backups and rollbacks
            credentials: Vault used to validate credential references
            health_checker: Probe used for baseline, verification and monitoring
            broker: Status channel for subscribers
            max_active: Admission ceiling
            max_fanout: Concurrent asset mutations per deployment
            monitoring_window: Monitoring window in seconds
            check_interval: Seconds between monitoring samples
            critical_threshold: Consecutive critical samples that trigger rollback
        """
        self.patch_source = patch_source
        self.connections = connections
        self.transports = transports
        self.store = store or InMemoryDeploymentStore()
        self.credentials = credentials or CredentialVault()
        self.health_checker = health_checker or HealthChecker()
        self.broker = broker or StatusBroker()
        self.registry = ActiveDeploymentRegistry(max_active)

        self.max_fanout = max_fanout or settings.MAX_ASSET_FANOUT
        self.monitoring_window = monitoring_window if monitoring_window is not None else settings.MONITORING_WINDOW_SECONDS
        self.check_interval = check_interval if check_interval is not None else settings.HEALTH_CHECK_INTERVAL_SECONDS
        self.critical_threshold = critical_threshold or settings.CONSECUTIVE_CRITICAL_THRESHOLD

        self.validator = SafetyValidator(self.registry, transports, self.credentials, self.health_checker)
        self.backup_manager = BackupManager(self.store, self.max_fanout)
        self.rollback_executor = RollbackExecutor(self.store, transports, connections, self.max_fanout)

        self._records: Dict[str, DeploymentRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._signals: Dict[str, asyncio.Event] = {}
        self._rollback_requests: Dict[str, str] = {}
        self._sessions: Dict[str, MonitoringSession] = {}

    # ------------------------------------------------------------------
    # Status sink surface
    # ------------------------------------------------------------------

    async def submit(self, scan_id: str, site_id: str, user_id: Optional[str] = None) -> DeploymentRecord:
        """
        Start deploying the patch package of a scan to a site.

        Returns:
            A snapshot of the new deployment record

        Raises:
            PatchNotFound: if the scan has no patch package
            ConnectionNotFound: if the site is not registered
            AdmissionRejected: if the engine is at capacity or the site already
                has a deployment in flight. The rejected attempt is recorded
                as blocked.
        """
        patch = await self.patch_source.get_patch_package(scan_id)
        connection = await self.connections.resolve(site_id)
        adapter = self.transports.get(connection.platform)

        record = DeploymentRecord(
            id=str(uuid.uuid4()),
            patch_id=patch.id,
            scan_id=scan_id,
            connection_id=connection.id,
            user_id=user_id,
            site_url=connection.site_url,
            platform=connection.platform,
            transport=adapter.name if adapter else None,
        )
        self._log(record, LogLevel.INFO, f"Deployment of patch {patch.id} to {connection.site_url} created")
        transition(record, DeploymentStatus.VALIDATING)
        record.set_step(StepName.VALIDATION, StepStatus.IN_PROGRESS, "Checking admission")

        problem = self.registry.try_reserve(record.id, connection.site_url)
        if problem:
            record.validation = ValidationResult(safe=False, blockers=[problem], retry_later=True)
            record.set_step(StepName.VALIDATION, StepStatus.FAILED, problem)
            self._log(record, LogLevel.WARNING, f"Deployment blocked: {problem}")
            transition(record, DeploymentStatus.BLOCKED)
            await self._finalize(record)
            raise AdmissionRejected(problem, deployment_id=record.id)

        self._records[record.id] = record
        self._signals[record.id] = asyncio.Event()
        active_deployments.set(len(self.registry))
        try:
            await self.store.save_record(record)
            self._tasks[record.id] = asyncio.create_task(
                self._run(record, patch, connection), name=f"deployment-{record.id}"
            )
        except Exception as e:
            logger.error(f"Could not start deployment {record.id}: {str(e)}")
            record.error = f"Could not start deployment: {e}"
            record.set_step(StepName.VALIDATION, StepStatus.FAILED, record.error)
            await self._abort(record, record.error)
            await self._finalize(record)
            raise
        logger.info(f"Deployment {record.id} submitted for scan {scan_id} on site {site_id}")
        return record.snapshot()

    async def preflight(self, scan_id: str, site_id: str, strict: bool = False) -> ValidationResult:
        """
        Run the safety checks without creating a deployment.

        Raises:
            ValidationBlocked: if ``strict`` and the deployment would be blocked
        """
        patch = await self.patch_source.get_patch_package(scan_id)
        connection = await self.connections.resolve(site_id)
        result = await self.validator.validate(patch, connection)
        if strict and not result.safe:
            raise ValidationBlocked(result.blockers, retry_later=result.retry_later)
        return result

    async def get_status(self, deployment_id: str) -> DeploymentRecord:
        record = self._records.get(deployment_id)
        if record is not None:
            return record.snapshot()
        stored = await self.store.get_record(deployment_id)
        if stored is None:
            raise DeploymentNotFound(deployment_id)
        return stored

    def list_active(self) -> List[DeploymentRecord]:
        return [record.snapshot() for record in self._records.values() if not record.is_terminal]

    async def get_history(self, user_id: Optional[str] = None, limit: int = 50) -> List[DeploymentRecord]:
        """Deployments of a user (or everyone), newest first."""
        return await self.store.list_records(user_id=user_id, limit=limit)

    async def cancel(self, deployment_id: str) -> DeploymentRecord:
        """
        Request cooperative cancellation.

        The request is honored at the next step boundary; an asset that is
        being written is never interrupted.

        Raises:
            DeploymentNotFound: if the deployment does not exist
            DeploymentTerminal: if the deployment has already finished
            InvalidTransition: if the deployment is rolling back
        """
        record = await self._live_record(deployment_id)
        if record.status == DeploymentStatus.ROLLING_BACK:
            raise InvalidTransition(record.status.value, DeploymentStatus.CANCELLED.value)
        if not record.cancel_requested:
            record.cancel_requested = True
            self._log(record, LogLevel.WARNING, f"Cancellation requested during {record.status.value}")
            self._signals[deployment_id].set()
        return record.snapshot()

    async def rollback(self, deployment_id: str, reason: str = "manual", force: bool = False) -> RollbackRecord:
        """
        Roll a deployment back on operator request.

        An in-flight deployment rolls back at its next step boundary and this
        call waits for it. A rolled-back deployment returns the prior result.
        A failed rollback returns the prior result unless ``force`` is set.

        Raises:
            DeploymentNotFound: if the deployment does not exist
            DeploymentTerminal: if the deployment finished without a rollback
            InvalidTransition: if a rollback is already running
        """
        record = self._records.get(deployment_id)
        if record is not None and not record.is_terminal:
            if record.status == DeploymentStatus.ROLLING_BACK:
                raise InvalidTransition(record.status.value, DeploymentStatus.ROLLING_BACK.value)
            if deployment_id not in self._rollback_requests:
                self._rollback_requests[deployment_id] = reason
                self._log(record, LogLevel.WARNING, f"Manual rollback requested: {reason}")
                self._signals[deployment_id].set()
            final = await self.wait(deployment_id)
            if final.rollback_info is None:
                raise DeploymentTerminal(deployment_id, final.status.value)
            return final.rollback_info

        final = await self.get_status(deployment_id)
        if final.status == DeploymentStatus.ROLLED_BACK:
            return await self.store.get_rollback(deployment_id) or final.rollback_info
        if final.status == DeploymentStatus.ROLLBACK_FAILED:
            return await self.rollback_executor.rollback(
                final, reason, RollbackTrigger.MANUAL, force=force
            )
        raise DeploymentTerminal(deployment_id, final.status.value)

    async def subscribe(self, deployment_id: str) -> Subscription:
        """
        Follow a deployment's status and log updates.

        The first update is the current state. The subscription ends after the
        terminal update; subscribing to a finished deployment yields its final
        state and ends immediately.
        """
        record = self._records.get(deployment_id)
        if record is not None:
            return self.broker.subscribe(deployment_id, initial=self._update(record))
        stored = await self.store.get_record(deployment_id)
        if stored is None:
            raise DeploymentNotFound(deployment_id)
        return self.broker.closed_subscription(deployment_id, self._update(stored, terminal=True))

    async def wait(self, deployment_id: str, timeout: Optional[float] = None) -> DeploymentRecord:
        """Wait for a deployment to reach a terminal status."""
        task = self._tasks.get(deployment_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.get_status(deployment_id)

    async def purge_expired(self) -> Dict[str, int]:
        """Drop archived records past the history retention and expired backups."""
        cutoff = utcnow() - timedelta(hours=settings.HISTORY_RETENTION_HOURS)
        records = await self.store.purge_archived(cutoff)
        backups = await self.backup_manager.purge_expired()
        if records or backups:
            logger.info(f"Purged {records} archived deployments and {backups} backups")
        return {"records": records, "backups": backups}

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel every running deployment, cooperatively first."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return
        logger.info(f"Shutting down engine with {len(tasks)} running deployments")
        for deployment_id, record in list(self._records.items()):
            if not record.is_terminal and record.status != DeploymentStatus.ROLLING_BACK:
                record.cancel_requested = True
                self._signals[deployment_id].set()

        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    async def _run(self, record: DeploymentRecord, patch: PatchPackage, connection: Connection) -> None:
        try:
            await self._execute(record, patch, connection)
        except asyncio.CancelledError:
            self._log(record, LogLevel.WARNING, "Deployment task cancelled")
            await self._abort(record, "Engine shut down before the deployment finished")
            raise
        except Exception as e:
            logger.exception(f"Deployment {record.id} failed unexpectedly")
            record.error = str(e)
            self._log(record, LogLevel.ERROR, f"Unexpected error: {e}")
            await self._recover(record)
        finally:
            await self._finalize(record)

    async def _execute(self, record: DeploymentRecord, patch: PatchPackage, connection: Connection) -> None:
        adapter = self.transports.get(connection.platform)

        # Validating
        if await self._interrupted(record):
            return
        record.set_step(StepName.VALIDATION, StepStatus.IN_PROGRESS, "Running safety checks")
        result = await self.validator.validate(patch, connection, deployment_id=record.id)
        record.validation = result
        record.risk_level = result.risk_level
        record.risk_score = result.risk_score
        if not result.safe:
            message = "; ".join(result.blockers)
            record.error = message
            record.set_step(StepName.VALIDATION, StepStatus.FAILED, message)
            self._log(record, LogLevel.WARNING, f"Validation blocked the deployment: {message}")
            await self._set_status(record, DeploymentStatus.BLOCKED)
            return
        record.set_step(StepName.VALIDATION, StepStatus.COMPLETED, f"Risk {result.risk_level.value} ({result.risk_score})")
        self._log(record, LogLevel.INFO, f"Validation passed with {result.risk_level.value} risk")
        if await self._interrupted(record):
            return

        # Backing up
        await self._set_status(record, DeploymentStatus.BACKING_UP)
        record.set_step(StepName.BACKUP, StepStatus.IN_PROGRESS, f"Backing up {len(patch.changes)} assets")
        try:
            record.backups = await self.backup_manager.create_backups(
                record.id, connection, adapter, patch.asset_keys
            )
        except BackupFailed as e:
            record.error = str(e)
            record.set_step(StepName.BACKUP, StepStatus.FAILED, str(e))
            self._log(record, LogLevel.ERROR, f"{e}; no assets were changed")
            await self._set_status(record, DeploymentStatus.FAILED)
            return
        record.set_step(StepName.BACKUP, StepStatus.COMPLETED, f"{len(record.backups)} backups stored")
        self._log(record, LogLevel.INFO, f"Backed up {len(record.backups)} assets")
        if await self._interrupted(record):
            return

        # Deploying
        await self._set_status(record, DeploymentStatus.DEPLOYING)
        record.set_step(StepName.DEPLOYMENT, StepStatus.IN_PROGRESS, f"Applying {len(patch.changes)} changes")
        await self._deploy_assets(record, patch, connection, adapter)

        if not record.deployed_assets:
            if await self._interrupted(record):
                return
            record.error = "No assets were deployed"
            record.set_step(StepName.DEPLOYMENT, StepStatus.FAILED, record.error)
            self._log(record, LogLevel.ERROR, "Every asset failed to deploy; the site is unchanged")
            await self._set_status(record, DeploymentStatus.FAILED)
            return
        if record.failed_assets:
            partial = PartialDeploymentFailure(record.deployed_keys, record.failed_keys)
            record.set_step(StepName.DEPLOYMENT, StepStatus.COMPLETED, str(partial))
            self._log(record, LogLevel.WARNING, f"Partial deployment: {partial}")
        else:
            record.set_step(
                StepName.DEPLOYMENT, StepStatus.COMPLETED, f"{len(record.deployed_assets)} assets deployed"
            )
        if await self._interrupted(record):
            return

        # Verifying
        await self._set_status(record, DeploymentStatus.VERIFYING)
        record.set_step(StepName.VERIFICATION, StepStatus.IN_PROGRESS, "Checking site health")
        sample = await self.health_checker.check(record.site_url)
        self._record_sample(record, sample)
        if sample.status == HealthStatus.CRITICAL:
            record.set_step(StepName.VERIFICATION, StepStatus.FAILED, f"Site is critical ({sample.overall_score})")
            self._log(record, LogLevel.ERROR, f"Verification failed: site health is critical ({sample.overall_score})")
            await self._roll_back(record, "verification_failed", RollbackTrigger.AUTOMATIC)
            return
        saw_warning = sample.status == HealthStatus.WARNING
        if saw_warning:
            self._log(record, LogLevel.WARNING, f"Verification passed with warnings ({sample.overall_score})")
        record.set_step(StepName.VERIFICATION, StepStatus.COMPLETED, f"Site is {sample.status.value}")
        if await self._interrupted(record):
            return

        # Monitoring
        await self._set_status(record, DeploymentStatus.MONITORING)
        record.set_step(StepName.MONITORING, StepStatus.IN_PROGRESS, "Monitoring site health")
        outcome, monitoring_warning = await self._monitor(record)

        if outcome == DEGRADED:
            degraded = HealthDegraded(f"{self.critical_threshold} consecutive critical health samples")
            record.error = str(degraded)
            record.set_step(StepName.MONITORING, StepStatus.FAILED, str(degraded))
            self._log(record, LogLevel.ERROR, f"Health degraded: {degraded}")
            await self._roll_back(record, "health_check_failures", RollbackTrigger.AUTOMATIC)
            return
        if outcome == INTERRUPTED:
            await self._interrupted(record)
            return

        record.set_step(StepName.MONITORING, StepStatus.COMPLETED, "Monitoring window finished")
        if saw_warning or monitoring_warning:
            self._log(record, LogLevel.WARNING, "Deployment completed with health warnings")
            await self._set_status(record, DeploymentStatus.COMPLETED_WITH_WARNINGS)
        else:
            self._log(record, LogLevel.INFO, "Deployment completed")
            await self._set_status(record, DeploymentStatus.COMPLETED)

    async def _deploy_assets(
        self,
        record: DeploymentRecord,
        patch: PatchPackage,
        connection: Connection,
        adapter: TransportAdapter,
    ) -> None:
        """Apply every change with bounded fan-out. One asset's failure never stops the others."""
        semaphore = asyncio.Semaphore(self.max_fanout)
        backed_up = {backup.asset_key for backup in record.backups}
        platform = record.platform.value

        async def deploy(change: FileChange) -> None:
            async with semaphore:
                if record.cancel_requested or record.id in self._rollback_requests:
                    self._log(record, LogLevel.INFO, f"Skipped {change.asset_key}: deployment interrupted")
                    return
                if change.asset_key not in backed_up:
                    self._fail_asset(record, change, "No backup captured for asset")
                    return
                try:
                    receipt = await adapter.apply(connection, change)
                except Exception as e:
                    self._fail_asset(record, change, str(e))
                    asset_operations.labels(platform=platform, outcome="failed").inc()
                    return
            record.deployed_assets.append(DeployedAsset(
                asset_key=change.asset_key,
                change_kind=change.change_kind,
                checksum=receipt.checksum,
                applied_at=receipt.completed_at,
            ))
            asset_operations.labels(platform=platform, outcome="deployed").inc()
            self._log(record, LogLevel.INFO, f"Deployed {change.change_kind.value} to {change.asset_key}")

        await asyncio.gather(*(deploy(change) for change in patch.changes))

    def _fail_asset(self, record: DeploymentRecord, change: FileChange, error: str) -> None:
        record.failed_assets.append(FailedAsset(
            asset_key=change.asset_key, change_kind=change.change_kind, error=error
        ))
        self._log(record, LogLevel.ERROR, f"Failed to deploy {change.asset_key}: {error}")

    async def _monitor(self, record: DeploymentRecord) -> Tuple[str, bool]:
        """
        Sample the site until the window expires, health degrades, or the
        deployment is interrupted. The sampling timer never outlives this call.

        Returns:
            The outcome and whether any warning sample was seen
        """
        session = MonitoringSession(
            record.id, record.site_url, self.health_checker, self.check_interval, self.monitoring_window
        )
        self._sessions[record.id] = session
        signal = self._signals[record.id]
        consecutive_critical = 0
        saw_warning = False

        session.start()
        try:
            while not self._interrupt_pending(record):
                sample_task = asyncio.ensure_future(session.next_sample())
                signal_task = asyncio.ensure_future(signal.wait())
                done, pending = await asyncio.wait(
                    {sample_task, signal_task}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in pending:
                    task.cancel()
                if signal_task in done:
                    signal.clear()
                if self._interrupt_pending(record):
                    break
                if sample_task not in done:
                    continue

                sample = sample_task.result()
                if sample is None:
                    return WINDOW_EXPIRED, saw_warning
                self._record_sample(record, sample)
                if sample.status == HealthStatus.CRITICAL:
                    consecutive_critical += 1
                    self._log(
                        record,
                        LogLevel.WARNING,
                        f"Critical health sample {consecutive_critical}/{self.critical_threshold} "
                        f"(score {sample.overall_score})",
                    )
                    if consecutive_critical >= self.critical_threshold:
                        return DEGRADED, saw_warning
                else:
                    consecutive_critical = 0
                    saw_warning = saw_warning or sample.status == HealthStatus.WARNING
            return INTERRUPTED, saw_warning
        finally:
            await session.stop()
            self._sessions.pop(record.id, None)

    def _interrupt_pending(self, record: DeploymentRecord) -> bool:
        return record.cancel_requested or record.id in self._rollback_requests

    async def _interrupted(self, record: DeploymentRecord) -> bool:
        """
        Honor a pending manual rollback or cancellation at a step boundary.

        Returns:
            True if the deployment ended here
        """
        reason = self._rollback_requests.pop(record.id, None)
        if reason is not None:
            if record.deployed_assets and can_transition(record.status, DeploymentStatus.ROLLING_BACK):
                await self._roll_back(record, reason, RollbackTrigger.MANUAL)
                return True
            self._log(record, LogLevel.INFO, "Rollback requested before any change was made; cancelling instead")
            record.cancel_requested = True

        if record.cancel_requested:
            if record.deployed_assets:
                self._log(
                    record,
                    LogLevel.WARNING,
                    f"Cancelled with {len(record.deployed_assets)} deployed assets left in place; "
                    f"their backups are retained for manual rollback",
                )
            await self._set_status(record, DeploymentStatus.CANCELLED)
            return True
        return False

    async def _roll_back(self, record: DeploymentRecord, reason: str, trigger: RollbackTrigger) -> None:
        await self._set_status(record, DeploymentStatus.ROLLING_BACK)
        self._log(record, LogLevel.WARNING, f"Rolling back ({trigger.value}): {reason}")
        rollback = await self.rollback_executor.rollback(record, reason, trigger)
        record.rollback_info = rollback
        if rollback.success:
            self._log(record, LogLevel.INFO, f"Rolled back {len(rollback.restored_assets)} assets")
            await self._set_status(record, DeploymentStatus.ROLLED_BACK)
        else:
            failure = RollbackFailed(record.id, rollback.failed_assets)
            record.error = str(failure)
            self._log(record, LogLevel.CRITICAL, f"{failure}; manual intervention required")
            await self._set_status(record, DeploymentStatus.ROLLBACK_FAILED)

    async def _recover(self, record: DeploymentRecord) -> None:
        """Bring a record to a terminal status after an unexpected error."""
        if record.is_terminal:
            return
        try:
            if record.deployed_assets and can_transition(record.status, DeploymentStatus.ROLLING_BACK):
                await self._roll_back(record, "unexpected_error", RollbackTrigger.AUTOMATIC)
                return
        except Exception as e:
            logger.exception(f"Rollback of deployment {record.id} after an unexpected error failed")
            record.error = f"{record.error}; rollback error: {e}"
        await self._abort(record, record.error or "Unexpected error")

    async def _abort(self, record: DeploymentRecord, reason: str) -> None:
        """Force the nearest terminal status without further remote calls."""
        if record.is_terminal:
            return
        if record.status == DeploymentStatus.ROLLING_BACK:
            record.rollback_info = record.rollback_info or RollbackRecord(
                deployment_id=record.id,
                trigger=RollbackTrigger.AUTOMATIC,
                reason=reason,
                failed_assets=record.deployed_keys,
                requires_manual_intervention=True,
                completed_at=utcnow(),
            )
            self._log(record, LogLevel.CRITICAL, f"Rollback interrupted: {reason}; manual intervention required")
            target = DeploymentStatus.ROLLBACK_FAILED
        elif record.status == DeploymentStatus.VALIDATING:
            target = DeploymentStatus.BLOCKED
        elif can_transition(record.status, DeploymentStatus.FAILED) and not record.deployed_assets:
            target = DeploymentStatus.FAILED
        else:
            target = DeploymentStatus.CANCELLED
        record.error = record.error or reason
        transition(record, target)
        logger.warning(f"Deployment {record.id} aborted as {target.value}: {reason}")

    async def _finalize(self, record: DeploymentRecord) -> None:
        """Release, persist, archive and close the channel of a finished deployment."""
        record.end_time = record.end_time or utcnow()
        for step in record.steps:
            if step.status == StepStatus.PENDING:
                record.set_step(step.name, StepStatus.SKIPPED, step.message)
            elif step.status == StepStatus.IN_PROGRESS:
                interrupted = record.status in (DeploymentStatus.CANCELLED, DeploymentStatus.BLOCKED)
                record.set_step(step.name, StepStatus.SKIPPED if interrupted else StepStatus.FAILED, step.message)
        if record.status in SUCCESS_STATUSES:
            record.set_step(StepName.COMPLETION, StepStatus.COMPLETED, record.status.value)

        self.registry.release(record.id)
        active_deployments.set(len(self.registry))
        deployment_count.labels(platform=record.platform.value, status=record.status.value).inc()
        deployment_duration.labels(platform=record.platform.value).observe(
            (record.end_time - record.start_time).total_seconds()
        )

        try:
            await self.store.save_record(record)
            await self.store.archive_record(record.id)
        except Exception as e:
            logger.error(f"Could not persist final state of deployment {record.id}: {str(e)}")

        self.broker.close(record.id, self._update(record, terminal=True))
        self._records.pop(record.id, None)
        self._signals.pop(record.id, None)
        self._rollback_requests.pop(record.id, None)
        self._tasks.pop(record.id, None)
        logger.info(f"Deployment {record.id} finished as {record.status.value}")

    # ------------------------------------------------------------------
    # Record helpers
    # ------------------------------------------------------------------

    async def _set_status(self, record: DeploymentRecord, status: DeploymentStatus) -> None:
        previous = transition(record, status)
        logger.info(f"Deployment {record.id}: {previous.value} -> {status.value}")
        self._log(record, LogLevel.INFO, f"Status changed to {status.value}")
        if status not in TERMINAL_STATUSES:
            await self.store.save_record(record)

    def _log(self, record: DeploymentRecord, level: LogLevel, message: str) -> LogEntry:
        entry = record.add_log(level, message, settings.MAX_LOG_ENTRIES)
        logger.log(_LOG_LEVELS[level], f"[{record.id}] {message}")
        self.broker.publish(self._update(record, log=entry))
        return entry

    def _record_sample(self, record: DeploymentRecord, sample: HealthSample) -> None:
        record.health_samples.append(sample)
        overflow = len(record.health_samples) - settings.HEALTH_SAMPLE_HISTORY
        if overflow > 0:
            del record.health_samples[:overflow]
        health_samples.labels(status=sample.status.value).inc()
        self.broker.publish(self._update(record, sample=sample))

    @staticmethod
    def _update(
        record: DeploymentRecord,
        log: Optional[LogEntry] = None,
        sample: Optional[HealthSample] = None,
        terminal: bool = False,
    ) -> StatusUpdate:
        return StatusUpdate(
            deployment_id=record.id,
            status=record.status,
            progress=record.progress,
            log=log.model_copy() if log else None,
            health_sample=sample.model_copy() if sample else None,
            terminal=terminal,
        )

    async def _live_record(self, deployment_id: str) -> DeploymentRecord:
        record = self._records.get(deployment_id)
        if record is not None and not record.is_terminal:
            return record
        stored = record or await self.store.get_record(deployment_id)
        if stored is None:
            raise DeploymentNotFound(deployment_id)
        raise DeploymentTerminal(deployment_id, stored.status.value)
