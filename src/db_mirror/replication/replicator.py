"""Table replication between two database sessions.

Copies one table at a time from a source session to a destination session:
drop, recreate from a captured ``TableDescriptor``, stream rows out in
primary-key order, and bulk insert them in batches.  Restores load into a
staging table first and swap it live with renames inside one transaction.

Usage:
    from db_mirror.replication import TableReplicator, referential_checks_suspended

    replicator = TableReplicator(batch_size=500)
    async with referential_checks_suspended(backup):
        for descriptor in descriptors:
            await replicator.replicate(primary, backup, descriptor)
        await replicator.apply_foreign_keys(backup, descriptors)
"""

import json
import logging
from contextlib import aclosing, asynccontextmanager
from typing import Any

from pydantic import BaseModel

from db_mirror.adapters.base import DatabaseSession
from db_mirror.errors import ConnectivityError, ReplicationError
from db_mirror.schema.ddl import quote_ident, retired_name, staging_name
from db_mirror.schema.models import TableDescriptor

logger = logging.getLogger(__name__)


class RowExclusion(BaseModel):
    """Rows of a table that must never be copied (``column = value``)."""

    column: str
    value: Any


@asynccontextmanager
async def referential_checks_suspended(session: DatabaseSession, enabled: bool = True):
    """Suspend foreign-key enforcement (and triggers) for the session.

    ``session_replication_role = replica`` is session scoped, so it brackets
    every statement issued through ``session`` until the block exits.  It is
    reset on the way out even when the block raises.

    Args:
        session: Destination session.
        enabled: When ``False`` the block runs with checks left on.
    """
    if not enabled:
        yield
        return

    await session.execute("SET session_replication_role = replica")
    logger.debug("Referential checks suspended")
    try:
        yield
    finally:
        try:
            await session.execute("RESET session_replication_role")
            logger.debug("Referential checks restored")
        except Exception as e:
            # A lost connection takes the session setting with it
            logger.error(f"Failed to restore referential checks: {e}")


class TableReplicator:
    """Copies tables described by ``TableDescriptor`` between sessions.

    Args:
        batch_size: Rows read per cursor partition and sent per insert batch.
    """

    def __init__(self, batch_size: int = 1000):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size

    # ------------------------------------------------------------------
    # Full copies
    # ------------------------------------------------------------------

    async def replicate(
        self,
        source: DatabaseSession,
        destination: DatabaseSession,
        descriptor: TableDescriptor,
        exclude: RowExclusion | None = None,
    ) -> int:
        """Drop, recreate and reload ``descriptor.name`` on the destination.

        Foreign keys are not created here; see ``apply_foreign_keys``.

        Returns:
            Number of rows written.

        Raises:
            ReplicationError: If any step fails.
            ConnectivityError: If either database is lost.
        """
        table = descriptor.name
        try:
            expected = await self.count_rows(source, table)
            logger.info(f"Replicating {table} ({expected} rows)")
            await self.drop_table(destination, table)
            for statement in descriptor.create_statements():
                await destination.execute(statement)
            copied = await self._copy_rows(source, destination, descriptor, table, exclude)
            await self.resync_sequences(destination, descriptor, table)
        except (ConnectivityError, ReplicationError):
            raise
        except Exception as e:
            raise ReplicationError(table, str(e)) from e

        logger.info(f"Replicated {table}: {copied} rows")
        return copied

    async def stage(
        self,
        source: DatabaseSession,
        destination: DatabaseSession,
        descriptor: TableDescriptor,
        exclude: RowExclusion | None = None,
    ) -> int:
        """Load ``descriptor.name`` into its staging table on the destination.

        The live table is not touched.  A staging table left over from an
        earlier run is dropped first.

        Returns:
            Number of rows written.
        """
        table = descriptor.name
        staged = staging_name(table)
        try:
            expected = await self.count_rows(source, table)
            logger.info(f"Staging {table} as {staged} ({expected} rows)")
            await self.drop_table(destination, staged)
            for statement in descriptor.create_statements(staged, staged=True):
                await destination.execute(statement)
            copied = await self._copy_rows(source, destination, descriptor, staged, exclude)
        except (ConnectivityError, ReplicationError):
            raise
        except Exception as e:
            raise ReplicationError(table, f"staging failed: {e}") from e

        logger.debug(f"Staged {table}: {copied} rows")
        return copied

    async def swap(self, destination: DatabaseSession, descriptor: TableDescriptor) -> None:
        """Make the staging table live in a single transaction.

        The live table (if any) is renamed aside and dropped only after the
        staging table has taken its name; any failure rolls the whole swap
        back and leaves the live table as it was.
        """
        table = descriptor.name
        statements = [
            f"ALTER SEQUENCE {quote_ident(s.name)} OWNED BY NONE"
            for s in descriptor.sequences
        ]
        statements += [
            f"ALTER TABLE IF EXISTS {quote_ident(table)} RENAME TO {quote_ident(retired_name(table))}",
            f"ALTER TABLE {quote_ident(staging_name(table))} RENAME TO {quote_ident(table)}",
            f"DROP TABLE IF EXISTS {quote_ident(retired_name(table))} CASCADE",
        ]
        statements += descriptor.unstage_statements()
        statements += descriptor.sequence_ownership_statements()

        try:
            async with destination.transaction():
                for statement in statements:
                    await destination.execute(statement)
            await self.resync_sequences(destination, descriptor, table)
        except (ConnectivityError, ReplicationError):
            raise
        except Exception as e:
            raise ReplicationError(table, f"swap failed: {e}") from e

        logger.info(f"Swapped {table} live")

    async def discard_staging(self, destination: DatabaseSession, table: str) -> None:
        """Drop the staging table of ``table``; failures are logged."""
        staged = staging_name(table)
        try:
            await self.drop_table(destination, staged)
        except Exception as e:
            logger.error(f"Failed to clean up staging table {staged}: {e}")

    # ------------------------------------------------------------------
    # Structure only
    # ------------------------------------------------------------------

    async def create_structure(
        self,
        destination: DatabaseSession,
        descriptor: TableDescriptor,
    ) -> None:
        """Create the table (no data, no foreign keys) on the destination."""
        try:
            for statement in descriptor.create_statements():
                await destination.execute(statement)
        except ConnectivityError:
            raise
        except Exception as e:
            raise ReplicationError(descriptor.name, f"create failed: {e}") from e
        logger.info(f"Created table {descriptor.name}")

    async def apply_foreign_keys(
        self,
        destination: DatabaseSession,
        descriptors: list[TableDescriptor],
        validate: bool = True,
    ) -> None:
        """Add every descriptor's foreign keys once all tables exist.

        A constraint that already exists (the table was not recreated) is
        dropped first so the statement can be re-run.  With ``validate``
        off, constraints are added ``NOT VALID``: new writes are checked,
        existing rows are not.
        """
        for descriptor in descriptors:
            table = quote_ident(descriptor.name)
            try:
                for fk, statement in zip(
                    descriptor.foreign_keys, descriptor.foreign_key_statements()
                ):
                    await destination.execute(
                        f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {quote_ident(fk.name)}"
                    )
                    if not validate and not statement.endswith("NOT VALID"):
                        statement += " NOT VALID"
                    await destination.execute(statement)
            except ConnectivityError:
                raise
            except Exception as e:
                raise ReplicationError(descriptor.name, f"foreign keys failed: {e}") from e
            if descriptor.foreign_keys:
                logger.debug(
                    f"Added {len(descriptor.foreign_keys)} foreign keys to {descriptor.name}"
                )

    async def drop_table(self, destination: DatabaseSession, table: str) -> None:
        """Drop ``table`` if it exists, along with dependent constraints."""
        await destination.execute(f"DROP TABLE IF EXISTS {quote_ident(table)} CASCADE")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def count_rows(self, session: DatabaseSession, table: str) -> int:
        """Row count of ``table``, used for progress logging only."""
        count = await session.fetch_scalar(f"SELECT COUNT(*) FROM {quote_ident(table)}")
        return int(count or 0)

    async def resync_sequences(
        self,
        destination: DatabaseSession,
        descriptor: TableDescriptor,
        table: str,
    ) -> None:
        """Move each sequence past the highest loaded value.

        An empty table resets the sequence so the next value is 1.
        """
        for column in descriptor.sequence_columns:
            col = quote_ident(column)
            await destination.execute(
                f"SELECT setval(pg_get_serial_sequence(:relation, :column), "
                f"COALESCE(MAX({col}), 1), MAX({col}) IS NOT NULL) "
                f"FROM {quote_ident(table)}",
                {"relation": quote_ident(table), "column": column},
            )

    def _select_sql(self, descriptor: TableDescriptor, exclude: RowExclusion | None) -> str:
        columns = ", ".join(quote_ident(c) for c in descriptor.insert_columns)
        sql = f"SELECT {columns} FROM {quote_ident(descriptor.name)}"
        if exclude is not None:
            col = quote_ident(exclude.column)
            sql += f" WHERE {col} IS DISTINCT FROM :excluded"
        if descriptor.order_by:
            sql += " ORDER BY " + ", ".join(quote_ident(c) for c in descriptor.order_by)
        return sql

    def _insert_sql(self, descriptor: TableDescriptor, target: str) -> str:
        columns = descriptor.insert_columns
        names = ", ".join(quote_ident(c) for c in columns)
        binds = ", ".join(f":p{i}" for i in range(len(columns)))
        override = " OVERRIDING SYSTEM VALUE" if descriptor.needs_override else ""
        return f"INSERT INTO {quote_ident(target)} ({names}){override} VALUES ({binds})"

    async def _copy_rows(
        self,
        source: DatabaseSession,
        destination: DatabaseSession,
        descriptor: TableDescriptor,
        target: str,
        exclude: RowExclusion | None,
    ) -> int:
        """Stream rows from the source table into ``target`` batch by batch."""
        columns = descriptor.insert_columns
        json_columns = descriptor.json_columns
        select_sql = self._select_sql(descriptor, exclude)
        insert_sql = self._insert_sql(descriptor, target)
        params = {"excluded": exclude.value} if exclude is not None else None

        copied = 0
        # The stream must be closed even when an insert fails: it holds a
        # transaction open on the source session.
        async with aclosing(
            source.stream(select_sql, params, batch_size=self.batch_size)
        ) as batches:
            async for batch in batches:
                rows = []
                for row in batch:
                    if exclude is not None and row.get(exclude.column) == exclude.value:
                        continue
                    rows.append({
                        f"p{i}": _bind_value(row[column], column in json_columns)
                        for i, column in enumerate(columns)
                    })
                await destination.execute_many(insert_sql, rows)
                copied += len(rows)
        return copied


def _bind_value(value: Any, is_json: bool) -> Any:
    """Prepare a fetched value for re-insertion.

    The driver decodes json/jsonb to Python objects but expects text when
    binding them back.
    """
    if is_json and value is not None:
        return json.dumps(value)
    return value
