"""Database session protocol definition.

Defines the ``DatabaseSession`` Protocol that the schema inspector, the
table replicator and the status store talk to.  A session is a single
pinned connection: session-scoped settings (such as
``session_replication_role``) set through it stay in effect for every
later statement until reset.

All methods are ``async def``.

Usage:
    from db_mirror.adapters.base import DatabaseSession

    async def copy_names(session: DatabaseSession) -> None:
        rows = await session.fetch_all("SELECT id, name FROM groups")
        async with session.transaction():
            await session.execute("DELETE FROM groups")
            await session.execute_many(
                "INSERT INTO groups (id, name) VALUES (:id, :name)", rows
            )
"""

from collections.abc import AsyncGenerator
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol


class DatabaseSession(Protocol):
    """Interface of a single long-lived database connection."""

    async def connect(self) -> None:
        """Open the connection if it is not open yet.

        Raises:
            ConnectivityError: If the database cannot be reached.
        """
        ...

    async def fetch_all(self, sql: str, params: dict[str, Any] | None = None) -> list[dict]:
        """Run a query and return every row as a dict keyed by column name.

        Example:
            rows = await session.fetch_all(
                "SELECT id FROM images WHERE group_id = :gid",
                {"gid": "g1"},
            )
        """
        ...

    async def fetch_scalar(self, sql: str, params: dict[str, Any] | None = None) -> Any:
        """Run a query and return the first column of the first row (or ``None``)."""
        ...

    def stream(
        self,
        sql: str,
        params: dict[str, Any] | None = None,
        batch_size: int = 1000,
    ) -> AsyncGenerator[list[dict], None]:
        """Run a query through a server-side cursor, yielding batches of rows.

        Memory use is bounded by ``batch_size`` regardless of table size.
        The cursor holds a transaction open until the generator finishes;
        callers that may stop early close it with ``contextlib.aclosing``.

        Example:
            async for batch in session.stream("SELECT * FROM images", batch_size=500):
                handle(batch)
        """
        ...

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> None:
        """Execute a statement (DDL or DML) that returns no rows."""
        ...

    async def execute_many(self, sql: str, rows: list[dict[str, Any]]) -> None:
        """Execute one parameterized statement for every dict in ``rows``."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Group the statements issued inside the block into one transaction.

        Example:
            async with session.transaction():
                await session.execute('ALTER TABLE "a" RENAME TO "b"')
                await session.execute('ALTER TABLE "c" RENAME TO "a"')
        """
        ...

    async def test_connection(self) -> bool:
        """Return ``True`` when ``SELECT 1`` succeeds.

        Raises:
            ConnectivityError: If the connection fails.
        """
        ...

    async def close(self) -> None:
        """Close the connection and release the engine."""
        ...
