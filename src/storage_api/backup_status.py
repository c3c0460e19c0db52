"""
Backup status state machine.

A resource starts at NONE. Enqueueing a replication job moves it to PENDING,
the worker moves it to PENDING_SYNC once the source object is verified and the
copy begins, and every worker invocation ends in one of the terminal states
COMPLETED or FAILED. PENDING is the only way back from a terminal state: it is
written when a job is (re-)enqueued.
"""

from enum import Enum
from typing import Optional, Union

from storage_api.errors import InvalidBackupStatusError


class BackupStatus(str, Enum):
    NONE = "NONE"
    PENDING = "PENDING"
    PENDING_SYNC = "PENDING_SYNC"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({BackupStatus.COMPLETED, BackupStatus.FAILED})

# Values accepted from the internal status API.
SETTABLE_STATUSES = (
    BackupStatus.PENDING,
    BackupStatus.PENDING_SYNC,
    BackupStatus.COMPLETED,
    BackupStatus.FAILED,
)

MAX_ERROR_LENGTH = 512


def parse_status(value: Union[str, BackupStatus, None], allow_none: bool = False) -> BackupStatus:
    """Parse a status string, rejecting anything outside the settable set."""
    if value is None or value == "":
        raise InvalidBackupStatusError("Status is required")
    try:
        parsed = BackupStatus(value)
    except (ValueError, TypeError):
        raise InvalidBackupStatusError(
            f"Invalid status '{value}'. Valid statuses: {', '.join(s.value for s in SETTABLE_STATUSES)}"
        ) from None
    if parsed is BackupStatus.NONE and not allow_none:
        raise InvalidBackupStatusError(
            f"Invalid status '{value}'. Valid statuses: {', '.join(s.value for s in SETTABLE_STATUSES)}"
        )
    return parsed


def is_terminal(status: BackupStatus) -> bool:
    return status in TERMINAL_STATUSES


def truncate_error(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH]


def resolve_transition(current: BackupStatus, requested: BackupStatus) -> bool:
    """
    Decide whether ``requested`` may overwrite ``current``.

    PENDING always applies since it is written only when a job is enqueued.
    A COMPLETED record never moves to PENDING_SYNC or FAILED: those writes come
    from a redelivered or concurrent copy of a job that already succeeded.
    """
    if requested is BackupStatus.PENDING:
        return True
    if current is BackupStatus.COMPLETED:
        return requested is BackupStatus.COMPLETED
    return True


def is_noop(current: BackupStatus, current_error: Optional[str],
            requested: BackupStatus, requested_error: Optional[str]) -> bool:
    """An identical rewrite leaves the record (including backup_at) untouched."""
    return current is requested and (current_error or None) == (truncate_error(requested_error) or None)
