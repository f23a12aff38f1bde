"""Run history store.

Every backup and restore appends one row (time, operation, outcome, error)
to a dedicated table of the primary database.  Rows are never updated.
The table stays out of replication, so restoring an older backup does not
rewind the log.

Usage:
    from db_mirror.backup.history import HistoryStore

    history = HistoryStore(primary_session, settings)
    await history.append(result)
    for entry in await history.recent(limit=20, page=1):
        print(entry.finished_at, entry.operation, entry.success)
"""

import logging

from db_mirror.adapters.base import DatabaseSession
from db_mirror.backup.models import HistoryEntry, OperationResult
from db_mirror.config.models import HistorySettings
from db_mirror.errors import ConnectivityError, StatusStoreError
from db_mirror.schema.ddl import quote_ident

logger = logging.getLogger(__name__)

_COLUMNS = (
    ("id", "bigserial PRIMARY KEY"),
    ("operation", "text NOT NULL"),
    ("success", "boolean NOT NULL"),
    ("error", "text"),
    ("started_at", "timestamptz NOT NULL"),
    ("finished_at", "timestamptz"),
    ("tables", "integer NOT NULL DEFAULT 0"),
    ("rows", "bigint NOT NULL DEFAULT 0"),
)


class HistoryStore:
    """Appends and pages through run history rows.

    Args:
        session: Primary database session.
        settings: Table name and on/off switch.
    """

    def __init__(self, session: DatabaseSession, settings: HistorySettings | None = None):
        self._session = session
        self.settings = settings or HistorySettings()

    @property
    def table(self) -> str:
        return self.settings.table

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    async def table_exists(self) -> bool:
        value = await self._session.fetch_scalar(
            "SELECT to_regclass(:relation) IS NOT NULL",
            {"relation": quote_ident(self.table)},
        )
        return bool(value)

    async def ensure_table(self) -> None:
        if await self.table_exists():
            return
        columns = ", ".join(f"{quote_ident(name)} {sql}" for name, sql in _COLUMNS)
        await self._session.execute(
            f"CREATE TABLE IF NOT EXISTS {quote_ident(self.table)} ({columns})"
        )
        logger.info(f"Created history table {self.table}")

    async def append(self, result: OperationResult) -> HistoryEntry | None:
        """Record a finished run; does nothing when history is disabled.

        Raises:
            StatusStoreError: If the row cannot be written.
        """
        if not self.enabled:
            return None
        entry = HistoryEntry.from_result(result)
        fields = entry.model_dump(exclude={"id"})
        sql = (
            f"INSERT INTO {quote_ident(self.table)} "
            f"({', '.join(quote_ident(f) for f in fields)}) "
            f"VALUES ({', '.join(':' + f for f in fields)})"
        )
        try:
            await self.ensure_table()
            await self._session.execute(sql, fields)
        except ConnectivityError:
            raise
        except Exception as e:
            raise StatusStoreError(f"Cannot write history entry: {e}") from e
        return entry

    async def recent(self, limit: int = 20, page: int = 1) -> list[HistoryEntry]:
        """Newest entries first, ``limit`` per page.

        Returns an empty list when nothing was recorded yet.

        Raises:
            ValueError: If ``limit`` or ``page`` is below 1.
            StatusStoreError: If the rows cannot be read.
        """
        if limit < 1 or page < 1:
            raise ValueError("limit and page must be at least 1")
        columns = ", ".join(quote_ident(name) for name, _ in _COLUMNS)
        try:
            if not await self.table_exists():
                return []
            rows = await self._session.fetch_all(
                f"SELECT {columns} FROM {quote_ident(self.table)} "
                f"ORDER BY {quote_ident('id')} DESC LIMIT :limit OFFSET :offset",
                {"limit": limit, "offset": (page - 1) * limit},
            )
        except ConnectivityError:
            raise
        except Exception as e:
            raise StatusStoreError(f"Cannot read history: {e}") from e
        return [HistoryEntry.model_validate(row) for row in rows]
