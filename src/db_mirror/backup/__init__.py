"""Backup and restore runs, the status record, run history, and their models.

Usage:
    from db_mirror.backup import BackupOrchestrator, RestoreOrchestrator, StatusStore
"""

from db_mirror.backup.history import HistoryStore
from db_mirror.backup.models import BackupStatus, HistoryEntry, OperationResult, TableReport
from db_mirror.backup.orchestrator import (
    BackupOrchestrator,
    InitializeOrchestrator,
    RestoreOrchestrator,
)
from db_mirror.backup.status import StatusStore

__all__ = [
    "BackupOrchestrator",
    "RestoreOrchestrator",
    "InitializeOrchestrator",
    "StatusStore",
    "HistoryStore",
    "BackupStatus",
    "HistoryEntry",
    "OperationResult",
    "TableReport",
]
