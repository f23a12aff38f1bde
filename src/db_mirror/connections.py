"""Primary/backup connection pair.

Holds two independent sessions, one per database, each addressed by its own
connection URL.  Sessions connect lazily, reconnect after a lost connection,
and are released together by ``close()``.

Usage:
    from db_mirror.connections import ConnectionPair

    async with ConnectionPair(primary_url, backup_url) as pair:
        health = await pair.check_health()
        tables = await pair.primary.fetch_all("SELECT 1 AS ok")
"""

import logging

from db_mirror.adapters.base import DatabaseSession
from db_mirror.adapters.postgres import PostgresSession

logger = logging.getLogger(__name__)


class ConnectionPair:
    """Owns the primary and backup database sessions.

    Args:
        primary_url: Connection URL of the live application database.
        backup_url: Connection URL of the backup database.
        schema: Schema name used on both sides.
        primary: Pre-built primary session (tests, custom drivers).  When
            given, ``primary_url`` is ignored.
        backup: Pre-built backup session.  When given, ``backup_url`` is ignored.
    """

    def __init__(
        self,
        primary_url: str | None = None,
        backup_url: str | None = None,
        schema: str = "public",
        primary: DatabaseSession | None = None,
        backup: DatabaseSession | None = None,
    ) -> None:
        if primary is None:
            if not primary_url:
                raise ValueError("primary_url or primary session is required")
            primary = PostgresSession(primary_url, schema=schema, name="primary")
        if backup is None:
            if not backup_url:
                raise ValueError("backup_url or backup session is required")
            backup = PostgresSession(backup_url, schema=schema, name="backup")
        self.primary: DatabaseSession = primary
        self.backup: DatabaseSession = backup

    async def __aenter__(self) -> "ConnectionPair":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def check_health(self) -> dict[str, bool]:
        """Ping both databases.

        Never raises; an unreachable side is reported as ``False``.

        Returns:
            ``{"primary": bool, "backup": bool}``
        """
        health: dict[str, bool] = {}
        for label, session in (("primary", self.primary), ("backup", self.backup)):
            try:
                health[label] = await session.test_connection()
            except Exception as e:
                logger.error(f"{label} database health check failed: {e}")
                health[label] = False
        return health

    async def close(self) -> None:
        """Disconnect both sessions.

        A failure closing one side is logged and does not prevent closing
        the other.
        """
        for label, session in (("primary", self.primary), ("backup", self.backup)):
            try:
                await session.close()
            except Exception as e:
                logger.error(f"Error closing {label} database connection: {e}")
