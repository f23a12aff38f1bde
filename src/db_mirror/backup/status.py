"""Status record store.

The status record is a single reserved row in an ordinary table of the
primary database (``system_config`` by default).  Because that table is
itself backed up and restored, the replicator is told to skip the row
(``StatusStore.exclusion()``) and the orchestrators write it directly.

Usage:
    from db_mirror.backup.status import StatusStore

    store = StatusStore(primary_session, settings)
    status = await store.read()            # None when never written
    await store.upsert(is_auto_backup_enabled=False)
"""

import json
import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from db_mirror.adapters.base import DatabaseSession
from db_mirror.backup.models import BackupStatus, utc_now
from db_mirror.config.models import StatusSettings
from db_mirror.errors import ConnectivityError, StatusStoreError
from db_mirror.replication.replicator import RowExclusion
from db_mirror.schema.ddl import quote_ident

logger = logging.getLogger(__name__)


class StatusStore:
    """Reads and merges the reserved status row.

    Args:
        session: Primary database session.
        settings: Location of the row (table, key column, payload column).
    """

    def __init__(self, session: DatabaseSession, settings: StatusSettings | None = None):
        self._session = session
        self.settings = settings or StatusSettings()

    @property
    def table(self) -> str:
        return self.settings.table

    def exclusion(self) -> RowExclusion:
        """Row filter keeping the reserved row out of generic replication."""
        return RowExclusion(column=self.settings.key_column, value=self.settings.key)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def table_exists(self) -> bool:
        value = await self._session.fetch_scalar(
            "SELECT to_regclass(:relation) IS NOT NULL",
            {"relation": quote_ident(self.settings.table)},
        )
        return bool(value)

    async def read(self) -> BackupStatus | None:
        """Return the stored record, or ``None`` when it was never written.

        Raises:
            StatusStoreError: If the row cannot be read or parsed.
        """
        s = self.settings
        try:
            if not await self.table_exists():
                return None
            payload = await self._session.fetch_scalar(
                f"SELECT {quote_ident(s.payload_column)} FROM {quote_ident(s.table)} "
                f"WHERE {quote_ident(s.key_column)} = :key",
                {"key": s.key},
            )
        except (ConnectivityError, StatusStoreError):
            raise
        except Exception as e:
            raise StatusStoreError(f"Cannot read status record: {e}") from e

        if payload is None:
            return None
        try:
            # text columns come back as str, json/jsonb already decoded
            if isinstance(payload, (str, bytes)):
                return BackupStatus.model_validate_json(payload)
            return BackupStatus.model_validate(payload)
        except ValidationError as e:
            raise StatusStoreError(f"Malformed status record: {e}") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def ensure_table(self) -> None:
        """Create a minimal status table when it is missing and allowed to.

        Raises:
            StatusStoreError: If the table is missing and ``create_table`` is off.
        """
        if await self.table_exists():
            return
        s = self.settings
        if not s.create_table:
            raise StatusStoreError(f"Status table '{s.table}' does not exist")

        columns = [
            f"{quote_ident(s.key_column)} text PRIMARY KEY",
            f"{quote_ident(s.payload_column)} text NOT NULL",
        ]
        if s.updated_at_column:
            columns.append(
                f"{quote_ident(s.updated_at_column)} timestamptz NOT NULL DEFAULT CURRENT_TIMESTAMP"
            )
        await self._session.execute(
            f"CREATE TABLE IF NOT EXISTS {quote_ident(s.table)} ({', '.join(columns)})"
        )
        logger.info(f"Created status table {s.table}")

    async def write(self, status: BackupStatus) -> BackupStatus:
        """Insert or replace the whole record."""
        s = self.settings
        columns = [s.key_column, s.payload_column]
        values = [":key", ":payload"]
        params: dict[str, Any] = {
            "key": s.key,
            "payload": status.model_dump_json(),
        }
        updates = [f"{quote_ident(s.payload_column)} = EXCLUDED.{quote_ident(s.payload_column)}"]

        if s.updated_at_column:
            columns.append(s.updated_at_column)
            values.append("CURRENT_TIMESTAMP")
            updates.append(
                f"{quote_ident(s.updated_at_column)} = EXCLUDED.{quote_ident(s.updated_at_column)}"
            )
        for i, (column, value) in enumerate(s.insert_defaults.items()):
            columns.append(column)
            values.append(f":d{i}")
            params[f"d{i}"] = _bind_default(value)

        sql = (
            f"INSERT INTO {quote_ident(s.table)} ({', '.join(quote_ident(c) for c in columns)}) "
            f"VALUES ({', '.join(values)}) "
            f"ON CONFLICT ({quote_ident(s.key_column)}) DO UPDATE SET {', '.join(updates)}"
        )
        try:
            await self.ensure_table()
            await self._session.execute(sql, params)
        except (ConnectivityError, StatusStoreError):
            raise
        except Exception as e:
            raise StatusStoreError(f"Cannot write status record: {e}") from e
        return status

    async def upsert(self, **fields: Any) -> BackupStatus:
        """Merge ``fields`` into the stored record, creating it if absent.

        Fields not given keep their stored values.

        Example:
            await store.upsert(is_auto_backup_enabled=False)
        """
        current = await self.read() or BackupStatus()
        try:
            merged = BackupStatus.model_validate({**current.model_dump(), **fields})
        except ValidationError as e:
            raise StatusStoreError(f"Invalid status fields: {e}") from e
        return await self.write(merged)

    async def record_backup(
        self,
        success: bool,
        error: str | None = None,
        at: datetime | None = None,
    ) -> BackupStatus:
        """Record a backup outcome; a success bumps ``backup_count``."""
        current = await self.read() or BackupStatus()
        fields: dict[str, Any] = {
            "last_backup_time": at or utc_now(),
            "last_backup_success": success,
            "last_backup_error": None if success else error,
        }
        if success:
            fields["backup_count"] = current.backup_count + 1
        return await self.upsert(**fields)

    async def record_restore(
        self,
        preserved: BackupStatus,
        success: bool,
        error: str | None = None,
        at: datetime | None = None,
    ) -> BackupStatus:
        """Reinstate ``preserved`` with the restore outcome merged in.

        ``preserved`` is the record read before the restore started; the
        live row may have been replaced by the restore itself.
        """
        fields = preserved.model_dump()
        fields.update(
            last_restore_time=at or utc_now(),
            last_restore_success=success,
            last_restore_error=None if success else error,
        )
        if success:
            fields["restore_count"] = preserved.restore_count + 1
        return await self.upsert(**fields)


def _bind_default(value: Any) -> Any:
    """TOML tables and arrays become JSON text."""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value
