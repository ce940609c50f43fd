import hashlib
from enum import Enum
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from patchdeploy.core.errors import ContentDriftError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def content_checksum(content: Optional[str]) -> Optional[str]:
    """SHA-256 of the asset content, or None for an absent asset."""
    if content is None:
        return None
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class Platform(str, Enum):
    CMS_API = "cms_api"
    FILE_TRANSFER = "file_transfer"
    SHELL_SESSION = "shell_session"


class ChangeKind(str, Enum):
    CREATE = "create"
    REPLACE = "replace"
    APPEND = "append"
    OVERWRITE = "overwrite"
    DELETE = "delete"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    BLOCKED = "blocked"
    BACKING_UP = "backing_up"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


TERMINAL_STATUSES = frozenset({
    DeploymentStatus.BLOCKED,
    DeploymentStatus.COMPLETED,
    DeploymentStatus.COMPLETED_WITH_WARNINGS,
    DeploymentStatus.FAILED,
    DeploymentStatus.CANCELLED,
    DeploymentStatus.ROLLED_BACK,
    DeploymentStatus.ROLLBACK_FAILED,
})


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class RollbackTrigger(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StepName(str, Enum):
    VALIDATION = "validation"
    BACKUP = "backup"
    DEPLOYMENT = "deployment"
    VERIFICATION = "verification"
    MONITORING = "monitoring"
    COMPLETION = "completion"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class FileChange(BaseModel):
    """One proposed change to one remote asset."""
    model_config = ConfigDict(frozen=True)

    path: str
    selector: Optional[str] = None
    change_kind: ChangeKind
    before: Optional[str] = None
    after: Optional[str] = None

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("path must not be empty")
        if ".." in v.split("/"):
            raise ValueError("path must not contain '..' segments")
        return v

    @model_validator(mode="after")
    def check_payload(self) -> "FileChange":
        if self.change_kind == ChangeKind.REPLACE and not self.before:
            raise ValueError("replace changes need the 'before' text")
        if self.change_kind != ChangeKind.DELETE and self.after is None:
            raise ValueError(f"{self.change_kind.value} changes need the 'after' text")
        return self

    @property
    def asset_key(self) -> str:
        return self.path

    def apply_to(self, current: Optional[str]) -> Optional[str]:
        """
        Compute the asset content after this change.

        Args:
            current: Current content, or None if the asset does not exist

        Returns:
            New content, or None if the asset should be deleted
        """
        kind = self.change_kind
        if kind == ChangeKind.DELETE:
            return None
        if kind in (ChangeKind.CREATE, ChangeKind.OVERWRITE):
            return self.after
        if kind == ChangeKind.APPEND:
            if not current:
                return self.after
            separator = "" if current.endswith("\n") else "\n"
            return f"{current}{separator}{self.after}"
        # REPLACE
        if current is None or self.before not in current:
            raise ContentDriftError(
                f"Expected text not found in {self.path}; the live asset has changed",
                asset_key=self.path,
            )
        return current.replace(self.before, self.after, 1)


class PatchPackage(BaseModel):
    """An immutable set of proposed fixes for one site."""
    model_config = ConfigDict(frozen=True)

    id: str
    target_platform: Platform
    source_scan_id: str
    changes: Tuple[FileChange, ...]
    risk_score: float = Field(0.0, ge=0, le=10)

    @field_validator("changes")
    @classmethod
    def unique_assets(cls, v: Tuple[FileChange, ...]) -> Tuple[FileChange, ...]:
        seen = set()
        for change in v:
            if change.path in seen:
                raise ValueError(f"Duplicate change for asset {change.path}")
            seen.add(change.path)
        return v

    @property
    def asset_keys(self) -> List[str]:
        return [change.asset_key for change in self.changes]


class Connection(BaseModel):
    """How to reach one site. Never carries the raw secret."""
    model_config = ConfigDict(frozen=True)

    id: str
    platform: Platform
    endpoint: str
    credential_ref: str
    site_url: str
    options: Dict[str, str] = Field(default_factory=dict)


class Backup(BaseModel):
    """Pre-mutation snapshot of one asset. ``original_content`` None means absent."""
    model_config = ConfigDict(frozen=True)

    deployment_id: str
    asset_key: str
    original_content: Optional[str] = None
    checksum: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def absent(self) -> bool:
        return self.original_content is None

    @classmethod
    def capture(cls, deployment_id: str, asset_key: str, content: Optional[str]) -> "Backup":
        return cls(
            deployment_id=deployment_id,
            asset_key=asset_key,
            original_content=content,
            checksum=content_checksum(content),
        )


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.INFO
    message: str


class DeployedAsset(BaseModel):
    asset_key: str
    change_kind: ChangeKind
    checksum: Optional[str] = None
    applied_at: datetime = Field(default_factory=utcnow)


class FailedAsset(BaseModel):
    asset_key: str
    change_kind: ChangeKind
    error: str
    failed_at: datetime = Field(default_factory=utcnow)


class DeploymentStep(BaseModel):
    name: StepName
    status: StepStatus = StepStatus.PENDING
    message: str = ""
    timestamp: Optional[datetime] = None


class HealthSample(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    connectivity_score: float = 0
    performance_score: float = 0
    functionality_score: float = 0
    overall_score: float = 0
    status: HealthStatus = HealthStatus.CRITICAL
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None


class RollbackRecord(BaseModel):
    deployment_id: str
    trigger: RollbackTrigger
    reason: str
    restored_assets: List[str] = Field(default_factory=list)
    failed_assets: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)
    success: bool = False
    requires_manual_intervention: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class ValidationCheck(BaseModel):
    name: str
    passed: bool
    reason: str


class ValidationResult(BaseModel):
    safe: bool
    blockers: List[str] = Field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    risk_score: float = 0.0
    checks: List[ValidationCheck] = Field(default_factory=list)
    retry_later: bool = False


def _initial_steps() -> List[DeploymentStep]:
    return [DeploymentStep(name=name) for name in StepName]


class DeploymentRecord(BaseModel):
    """
    Aggregate root for one deployment.

    Mutated only by the orchestrator task that owns it; everyone else gets a
    deep copy from ``snapshot()``.
    """
    id: str
    patch_id: str
    scan_id: str
    connection_id: str
    user_id: Optional[str] = None
    site_url: str
    platform: Platform
    transport: Optional[str] = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    progress: int = 0
    deployed_assets: List[DeployedAsset] = Field(default_factory=list)
    failed_assets: List[FailedAsset] = Field(default_factory=list)
    backups: List[Backup] = Field(default_factory=list)
    logs: List[LogEntry] = Field(default_factory=list)
    steps: List[DeploymentStep] = Field(default_factory=_initial_steps)
    health_samples: List[HealthSample] = Field(default_factory=list)
    validation: Optional[ValidationResult] = None
    risk_level: Optional[RiskLevel] = None
    risk_score: Optional[float] = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    rollback_info: Optional[RollbackRecord] = None
    error: Optional[str] = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def deployed_keys(self) -> List[str]:
        return [asset.asset_key for asset in self.deployed_assets]

    @property
    def failed_keys(self) -> List[str]:
        return [asset.asset_key for asset in self.failed_assets]

    def snapshot(self) -> "DeploymentRecord":
        return self.model_copy(deep=True)

    def add_log(self, level: LogLevel, message: str, max_entries: int = 100) -> LogEntry:
        entry = LogEntry(level=level, message=message)
        self.logs.append(entry)
        if len(self.logs) > max_entries:
            del self.logs[: len(self.logs) - max_entries]
        return entry

    def set_step(self, name: StepName, status: StepStatus, message: str = "") -> None:
        for step in self.steps:
            if step.name == name:
                step.status = status
                step.message = message
                step.timestamp = utcnow()
                return


class StatusUpdate(BaseModel):
    """One incremental update pushed to subscribers of a deployment."""
    event: str = "status"
    deployment_id: str
    status: DeploymentStatus
    progress: int
    log: Optional[LogEntry] = None
    health_sample: Optional[HealthSample] = None
    terminal: bool = False
    timestamp: datetime = Field(default_factory=utcnow)
