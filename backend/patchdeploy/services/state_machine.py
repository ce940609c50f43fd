"""Deployment state machine: allowed transitions and status progress."""

from typing import Dict, Set

from patchdeploy.core.errors import InvalidTransition
from patchdeploy.models.deployment import DeploymentRecord, DeploymentStatus as S, TERMINAL_STATUSES


_ALLOWED_TRANSITIONS: Dict[S, Set[S]] = {
    S.PENDING: {S.VALIDATING, S.CANCELLED},
    S.VALIDATING: {S.BLOCKED, S.BACKING_UP, S.CANCELLED},
    S.BACKING_UP: {S.DEPLOYING, S.FAILED, S.CANCELLED},
    S.DEPLOYING: {S.VERIFYING, S.FAILED, S.ROLLING_BACK, S.CANCELLED},
    S.VERIFYING: {S.MONITORING, S.ROLLING_BACK, S.CANCELLED},
    S.MONITORING: {S.COMPLETED, S.COMPLETED_WITH_WARNINGS, S.ROLLING_BACK, S.CANCELLED},
    S.ROLLING_BACK: {S.ROLLED_BACK, S.ROLLBACK_FAILED},
    S.BLOCKED: set(),
    S.COMPLETED: set(),
    S.COMPLETED_WITH_WARNINGS: set(),
    S.FAILED: set(),
    S.CANCELLED: set(),
    S.ROLLED_BACK: set(),
    S.ROLLBACK_FAILED: set(),
}

# Failure statuses keep whatever progress was reached.
_PROGRESS: Dict[S, int] = {
    S.PENDING: 0,
    S.VALIDATING: 15,
    S.BACKING_UP: 25,
    S.DEPLOYING: 60,
    S.VERIFYING: 85,
    S.MONITORING: 90,
    S.COMPLETED: 100,
    S.COMPLETED_WITH_WARNINGS: 100,
}


def can_transition(current: S, requested: S) -> bool:
    return requested in _ALLOWED_TRANSITIONS.get(current, set())


def transition(record: DeploymentRecord, requested: S) -> S:
    """
    Move a record to a new status.

    Raises:
        InvalidTransition: if the move is not allowed, including any move out
            of a terminal status
    """
    current = record.status
    if current in TERMINAL_STATUSES or not can_transition(current, requested):
        raise InvalidTransition(current.value, requested.value)
    record.status = requested
    if requested in _PROGRESS:
        record.progress = _PROGRESS[requested]
    return current
