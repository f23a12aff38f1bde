"""Pydantic models for the status record and operation results.

Usage:
    from db_mirror.backup.models import BackupStatus, OperationResult

    status = BackupStatus(last_backup_success=True, backup_count=3)
    if status.is_backup_due(timedelta(hours=6)):
        ...
"""

from datetime import datetime, timedelta, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Status Record
# ============================================================================


class BackupStatus(BaseModel):
    """Operational metadata stored in the reserved status row.

    Keys this model does not know about are kept, so a payload written by
    another tool survives a read-merge-write cycle.
    """

    model_config = ConfigDict(extra="allow")

    is_auto_backup_enabled: bool = True
    last_backup_time: datetime | None = None
    last_backup_success: bool | None = None
    last_backup_error: str | None = None
    backup_count: int = 0
    last_restore_time: datetime | None = None
    last_restore_success: bool | None = None
    last_restore_error: str | None = None
    restore_count: int = 0

    @property
    def has_backup(self) -> bool:
        """Whether a backup has ever been attempted."""
        return self.last_backup_time is not None

    def is_backup_due(self, interval: timedelta, now: datetime | None = None) -> bool:
        """Whether a scheduler should start an automatic backup.

        Never due while auto-backup is disabled; always due when no backup
        has run yet.
        """
        if not self.is_auto_backup_enabled:
            return False
        if self.last_backup_time is None:
            return True
        now = now or utc_now()
        last = self.last_backup_time
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now - last >= interval


# ============================================================================
# Operation Results
# ============================================================================


class TableReport(BaseModel):
    """Rows moved for one table."""

    name: str
    rows: int = 0


class OperationResult(BaseModel):
    """Outcome of a backup, restore, or initialize run."""

    operation: Literal["backup", "restore", "initialize"]
    success: bool = False
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    tables: list[TableReport] = Field(default_factory=list)
    error: str | None = None

    @property
    def total_rows(self) -> int:
        return sum(t.rows for t in self.tables)

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


# ============================================================================
# History
# ============================================================================


class HistoryEntry(BaseModel):
    """One row of the append-only run history kept in the primary database."""

    id: int | None = None
    operation: Literal["backup", "restore"]
    success: bool
    error: str | None = None
    started_at: datetime
    finished_at: datetime | None = None
    tables: int = 0
    rows: int = 0

    @classmethod
    def from_result(cls, result: OperationResult) -> "HistoryEntry":
        return cls(
            operation=result.operation,
            success=result.success,
            error=result.error,
            started_at=result.started_at,
            finished_at=result.finished_at,
            tables=len(result.tables),
            rows=result.total_rows,
        )
