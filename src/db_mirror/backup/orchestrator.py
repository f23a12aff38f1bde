"""Backup, restore, and initialize runs.

Each orchestrator drives one run end to end, sequentially, table by table:

- ``BackupOrchestrator``: list tables, copy each one, write status
- ``RestoreOrchestrator``: read status, drop leftovers, list backup tables,
  stage and swap each one, write the preserved status back
- ``InitializeOrchestrator``: create missing backup tables, structure only

A run never raises for a run-level failure.  It returns an
``OperationResult`` whose ``error`` reads ``"<ErrorType>: <message>"``, and
the same text goes into the status record.  Backup and restore runs also
append a history row.  Status and history writes are best effort.

Callers must serialize runs; nothing here takes a lock.

Usage:
    from db_mirror.backup.orchestrator import BackupOrchestrator

    orchestrator = BackupOrchestrator(pair.primary, pair.backup, config)
    result = await orchestrator.run()
    if not result.success:
        print(result.error)
"""

import logging
from collections.abc import Callable

from db_mirror.adapters.base import DatabaseSession
from db_mirror.backup.history import HistoryStore
from db_mirror.backup.models import BackupStatus, OperationResult, TableReport, utc_now
from db_mirror.backup.status import StatusStore
from db_mirror.config.models import MirrorConfig
from db_mirror.errors import RestoreError
from db_mirror.replication.replicator import (
    RowExclusion,
    TableReplicator,
    referential_checks_suspended,
)
from db_mirror.schema.inspector import SchemaInspector
from db_mirror.schema.models import TableDescriptor

logger = logging.getLogger(__name__)

InspectorFactory = Callable[[DatabaseSession], SchemaInspector]


def describe_error(error: BaseException) -> str:
    """Human-readable error text recorded in status and results."""
    return f"{type(error).__name__}: {error}"


class _Orchestrator:
    """Shared wiring: sessions, config, inspector factory, replicator, stores."""

    operation = ""

    def __init__(
        self,
        primary: DatabaseSession,
        backup: DatabaseSession,
        config: MirrorConfig,
        replicator: TableReplicator | None = None,
        status_store: StatusStore | None = None,
        inspector_factory: InspectorFactory | None = None,
        history_store: HistoryStore | None = None,
    ):
        self.primary = primary
        self.backup = backup
        self.config = config
        self.replicator = replicator or TableReplicator(batch_size=config.batch_size)
        self.status_store = status_store or StatusStore(primary, config.status)
        self.history_store = history_store or HistoryStore(primary, config.history)
        self._inspector_factory = inspector_factory or self._default_inspector

    def _default_inspector(self, session: DatabaseSession) -> SchemaInspector:
        return SchemaInspector(
            session,
            schema=self.config.schema_name,
            excluded_tables=self.config.excluded_tables,
        )

    def inspector(self, session: DatabaseSession) -> SchemaInspector:
        return self._inspector_factory(session)

    def replicated(self, tables: list[str]) -> list[str]:
        """Drop the history table from a listing; it is never copied."""
        if not self.history_store.enabled:
            return tables
        return [t for t in tables if t != self.history_store.table]

    def exclusion_for(self, table: str) -> RowExclusion | None:
        """The reserved status row is filtered from its own table only."""
        if table == self.status_store.table:
            return self.status_store.exclusion()
        return None

    async def _verify_connectivity(self) -> None:
        await self.primary.connect()
        await self.backup.connect()

    def _fail(self, result: OperationResult, error: Exception) -> None:
        result.success = False
        result.error = describe_error(error)
        logger.exception(f"{self.operation.capitalize()} failed: {result.error}")

    async def _append_history(self, result: OperationResult) -> None:
        try:
            await self.history_store.append(result)
        except Exception as e:
            logger.error(f"Failed to record {self.operation} history: {e}")


# ============================================================================
# Backup
# ============================================================================


class BackupOrchestrator(_Orchestrator):
    """Copies every primary table into the backup database.

    All-or-nothing per run: the first failing table fails the run.  The
    backup database may then hold a partially updated snapshot.
    """

    operation = "backup"

    async def run(self) -> OperationResult:
        result = OperationResult(operation="backup")
        logger.info("Backup started")

        try:
            await self._verify_connectivity()

            # List and capture
            inspector = self.inspector(self.primary)
            tables = self.replicated(await inspector.list_tables())
            if not tables:
                logger.warning("Primary database has no tables to back up")
            descriptors = await inspector.capture_all(tables)

            # Copy
            async with referential_checks_suspended(
                self.backup, self.config.suspend_referential_checks
            ):
                for descriptor in descriptors:
                    rows = await self.replicator.replicate(
                        self.primary,
                        self.backup,
                        descriptor,
                        exclude=self.exclusion_for(descriptor.name),
                    )
                    result.tables.append(TableReport(name=descriptor.name, rows=rows))
                await self.replicator.apply_foreign_keys(self.backup, descriptors)
                if self.config.prune_stale_tables:
                    await self._prune_stale_tables(tables)

            result.success = True
        except Exception as e:
            self._fail(result, e)

        # Status
        result.finished_at = utc_now()
        await self._write_status(result)
        await self._append_history(result)

        if result.success:
            logger.info(
                f"Backup finished: {len(result.tables)} tables, {result.total_rows} rows"
            )
        return result

    async def _prune_stale_tables(self, primary_tables: list[str]) -> None:
        """Drop backup tables whose primary counterpart no longer exists."""
        backup_tables = await self.inspector(self.backup).list_tables()
        stale = sorted(set(backup_tables) - set(primary_tables))
        for table in stale:
            logger.warning(f"Dropping stale backup table {table} (not in primary)")
            await self.replicator.drop_table(self.backup, table)

    async def _write_status(self, result: OperationResult) -> None:
        try:
            await self.status_store.record_backup(
                success=result.success,
                error=result.error,
                at=result.finished_at,
            )
        except Exception as e:
            logger.error(f"Failed to write backup status: {e}")


# ============================================================================
# Restore
# ============================================================================


class RestoreOrchestrator(_Orchestrator):
    """Rebuilds primary tables from the backup database via staged swaps.

    Atomic per table, not across tables: when table i fails, tables
    0..i-1 stay swapped in and the run reports failure.
    """

    operation = "restore"

    async def run(self) -> OperationResult:
        result = OperationResult(operation="restore")
        logger.info("Restore started")
        preserved: BackupStatus | None = None

        try:
            await self._verify_connectivity()

            # Preserve the status record before the status table is replaced
            preserved = await self.status_store.read() or BackupStatus()

            primary_inspector = self.inspector(self.primary)
            backup_inspector = self.inspector(self.backup)

            # Leftovers of an interrupted run
            for leftover in await primary_inspector.list_leftovers():
                logger.warning(f"Dropping leftover table {leftover}")
                await self.replicator.drop_table(self.primary, leftover)

            # List and capture
            tables = self.replicated(await backup_inspector.list_tables())
            if not tables:
                raise RestoreError("Backup database has no tables to restore")
            descriptors = await backup_inspector.capture_all(tables)

            primary_tables = self.replicated(await primary_inspector.list_tables())
            untouched = sorted(set(primary_tables) - set(tables))
            for table in untouched:
                logger.warning(f"Primary table {table} is not in the backup; left untouched")
            inbound = await self._inbound_foreign_keys(primary_inspector, untouched, tables)

            # Stage and swap
            async with referential_checks_suspended(
                self.primary, self.config.suspend_referential_checks
            ):
                for descriptor in descriptors:
                    rows = await self._rebuild(descriptor)
                    result.tables.append(TableReport(name=descriptor.name, rows=rows))
                await self.replicator.apply_foreign_keys(self.primary, descriptors)
                if inbound:
                    # Existing rows may point at rows the backup no longer has
                    await self.replicator.apply_foreign_keys(self.primary, inbound, validate=False)
                    logger.info(
                        f"Re-added foreign keys of {len(inbound)} primary-only tables"
                    )

            result.success = True
        except Exception as e:
            self._fail(result, e)

        # Status
        result.finished_at = utc_now()
        if preserved is not None:
            await self._reinstate_status(preserved, result)
        else:
            await self._record_failure_only(result)
        await self._append_history(result)

        if result.success:
            logger.info(
                f"Restore finished: {len(result.tables)} tables, {result.total_rows} rows"
            )
        return result

    async def _inbound_foreign_keys(
        self,
        inspector: SchemaInspector,
        untouched: list[str],
        restored: list[str],
    ) -> list[TableDescriptor]:
        """Foreign keys of primary-only tables that point at restored tables.

        Dropping a replaced table with CASCADE removes them, so they are
        captured before anything is staged and added back at the end.
        """
        targets = set(restored)
        inbound = []
        for descriptor in await inspector.capture_all(untouched):
            kept = descriptor.referencing(targets)
            if kept.foreign_keys:
                inbound.append(kept)
        return inbound

    async def _rebuild(self, descriptor: TableDescriptor) -> int:
        """Stage then swap one table; a failed stage leaves the live table alone."""
        try:
            rows = await self.replicator.stage(
                self.backup,
                self.primary,
                descriptor,
                exclude=self.exclusion_for(descriptor.name),
            )
        except Exception:
            await self.replicator.discard_staging(self.primary, descriptor.name)
            raise
        await self.replicator.swap(self.primary, descriptor)
        return rows

    async def _reinstate_status(self, preserved: BackupStatus, result: OperationResult) -> None:
        try:
            await self.status_store.record_restore(
                preserved,
                success=result.success,
                error=result.error,
                at=result.finished_at,
            )
        except Exception as e:
            logger.error(f"Failed to reinstate status after restore: {e}")

    async def _record_failure_only(self, result: OperationResult) -> None:
        """The record could not be read: merge the outcome into whatever is stored."""
        try:
            await self.status_store.upsert(
                last_restore_time=result.finished_at,
                last_restore_success=False,
                last_restore_error=result.error,
            )
        except Exception as e:
            logger.error(f"Failed to write restore status: {e}")


# ============================================================================
# Initialize
# ============================================================================


class InitializeOrchestrator(_Orchestrator):
    """Creates the backup tables that do not exist yet (no data).

    Idempotent: existing backup tables are never touched, so a second run
    creates nothing.
    """

    operation = "initialize"

    async def run(self) -> OperationResult:
        result = OperationResult(operation="initialize")
        logger.info("Backup database initialization started")

        try:
            await self._verify_connectivity()

            inspector = self.inspector(self.primary)
            tables = self.replicated(await inspector.list_tables())
            descriptors = await inspector.capture_all(tables)
            existing = set(await self.inspector(self.backup).list_tables())

            missing = [d for d in descriptors if d.name not in existing]
            for descriptor in missing:
                await self.replicator.create_structure(self.backup, descriptor)
                result.tables.append(TableReport(name=descriptor.name, rows=0))
            await self.replicator.apply_foreign_keys(self.backup, missing)

            result.success = True
        except Exception as e:
            self._fail(result, e)

        result.finished_at = utc_now()
        if result.success:
            if result.tables:
                logger.info(f"Initialized backup database: {len(result.tables)} tables created")
            else:
                logger.info("Backup database already initialized")
        return result
