"""PostgreSQL schema inspection via pg_catalog.

This module queries a live database to discover, at runtime, the tables a
backup or restore must move and the structure needed to recreate each one:
- Table names (minus migration bookkeeping and engine leftovers)
- Columns, data types, nullability, defaults, identity, generated columns
- Constraints (primary key, unique, check, exclusion, foreign key)
- Indexes that do not back a constraint
- Sequences owned by columns (``serial``)

Inspection is all-or-nothing: any catalog failure raises
``SchemaInspectionError`` so a run never proceeds on a partial schema.
"""

import logging
import re
from fnmatch import fnmatchcase

from db_mirror.adapters.base import DatabaseSession
from db_mirror.errors import ConnectivityError, SchemaInspectionError
from db_mirror.schema.ddl import RETIRED_SUFFIX, STAGING_SUFFIX, quote_ident
from db_mirror.schema.models import (
    ColumnDef,
    ConstraintDef,
    IndexDef,
    SequenceDef,
    TableDescriptor,
)

logger = logging.getLogger(__name__)

# Tables never replicated: migration bookkeeping, extension tables, and
# staging leftovers of an interrupted restore.
DEFAULT_EXCLUDED_TABLES: tuple[str, ...] = (
    "_prisma_migrations",
    "alembic_version",
    "schema_migrations",
    "flyway_schema_history",
    "spatial_ref_sys",
    "pg_stat_statements",
    f"*{STAGING_SUFFIX}",
    f"*{RETIRED_SUFFIX}",
)

_IDENT = r'(?:"(?:[^"]|"")*"|[^\s".]+)'
_INDEX_DEF = re.compile(
    rf"^CREATE (?:UNIQUE )?INDEX .+? ON (?:ONLY )?{_IDENT}(?:\.{_IDENT})? (USING .+)$",
    re.DOTALL,
)


class SchemaInspector:
    """Discovers tables and captures their structure through a session.

    Usage:
        inspector = SchemaInspector(session, schema="public")
        tables = await inspector.list_tables()
        descriptors = await inspector.capture_all(tables)
        print(descriptors[0].ddl)

    Args:
        session: Open (or lazily opening) database session.
        schema: Schema to inspect.
        excluded_tables: ``fnmatch`` patterns of table names to skip.
    """

    def __init__(
        self,
        session: DatabaseSession,
        schema: str = "public",
        excluded_tables: list[str] | tuple[str, ...] = DEFAULT_EXCLUDED_TABLES,
    ):
        self._session = session
        self._schema = schema
        self._excluded = tuple(excluded_tables)

    def is_excluded(self, table_name: str) -> bool:
        """Whether ``table_name`` matches one of the exclusion patterns."""
        return any(fnmatchcase(table_name, pattern) for pattern in self._excluded)

    async def list_tables(self) -> list[str]:
        """List user tables in the schema, ordered by name, minus exclusions.

        Raises:
            SchemaInspectionError: If the catalog query fails.
            ConnectivityError: If the database is unreachable.
        """
        tables = await self._all_tables()
        return [t for t in tables if not self.is_excluded(t)]

    async def list_leftovers(self) -> list[str]:
        """List staging/retired tables left behind by an interrupted restore."""
        tables = await self._all_tables()
        return [
            t for t in tables
            if t.endswith(STAGING_SUFFIX) or t.endswith(RETIRED_SUFFIX)
        ]

    async def capture(self, table_name: str) -> TableDescriptor:
        """Capture everything needed to recreate ``table_name`` elsewhere.

        Raises:
            SchemaInspectionError: If any catalog query fails or the table
                has no columns (it vanished or is not visible).
            ConnectivityError: If the database is unreachable.
        """
        relation = f"{quote_ident(self._schema)}.{quote_ident(table_name)}"
        try:
            columns = await self._get_columns(relation)
            if not columns:
                raise SchemaInspectionError(f"Table '{table_name}' has no visible columns")
            descriptor = TableDescriptor(
                name=table_name,
                columns=columns,
                constraints=await self._get_constraints(relation),
                indexes=await self._get_indexes(relation),
                sequences=await self._get_sequences(relation),
                primary_key=await self._get_primary_key(relation),
            )
        except (ConnectivityError, SchemaInspectionError):
            raise
        except Exception as e:
            raise SchemaInspectionError(
                f"Cannot capture DDL for table '{table_name}': {e}"
            ) from e

        logger.debug(
            f"Captured {table_name}: {len(descriptor.columns)} columns, "
            f"{len(descriptor.constraints)} constraints, {len(descriptor.indexes)} indexes"
        )
        return descriptor

    async def capture_all(self, table_names: list[str]) -> list[TableDescriptor]:
        """Capture every table up front, in the given order.

        The first failure aborts the whole capture.
        """
        return [await self.capture(name) for name in table_names]

    # ------------------------------------------------------------------
    # Catalog queries
    # ------------------------------------------------------------------

    async def _all_tables(self) -> list[str]:
        """Get ordinary and partitioned table names in the schema.

        Partitions are skipped: their rows are read through the parent.
        """
        query = """
            SELECT c.relname AS table_name
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = :schema
              AND c.relkind IN ('r', 'p')
              AND NOT c.relispartition
            ORDER BY c.relname
        """
        try:
            rows = await self._session.fetch_all(query, {"schema": self._schema})
        except ConnectivityError:
            raise
        except Exception as e:
            raise SchemaInspectionError(
                f"Cannot list tables in schema '{self._schema}': {e}"
            ) from e
        return [row["table_name"] for row in rows]

    async def _get_columns(self, relation: str) -> list[ColumnDef]:
        """Get columns in ordinal order."""
        query = """
            SELECT
                a.attname AS name,
                format_type(a.atttypid, a.atttypmod) AS data_type,
                a.attnotnull AS not_null,
                pg_get_expr(d.adbin, d.adrelid) AS column_default,
                CAST(a.attidentity AS text) AS identity,
                CAST(a.attgenerated AS text) AS generated
            FROM pg_attribute a
            LEFT JOIN pg_attrdef d
                ON d.adrelid = a.attrelid
                AND d.adnum = a.attnum
            WHERE a.attrelid = CAST(:relation AS regclass)
              AND a.attnum > 0
              AND NOT a.attisdropped
            ORDER BY a.attnum
        """
        rows = await self._session.fetch_all(query, {"relation": relation})
        columns = []
        for row in rows:
            # Stored generated columns keep their expression in pg_attrdef
            is_generated = (row["generated"] or "").strip() == "s"
            columns.append(
                ColumnDef(
                    name=row["name"],
                    data_type=row["data_type"],
                    not_null=bool(row["not_null"]),
                    default=None if is_generated else row["column_default"],
                    identity=(row["identity"] or "").strip(),
                    generated=row["column_default"] if is_generated else None,
                )
            )
        return columns

    async def _get_constraints(self, relation: str) -> list[ConstraintDef]:
        """Get constraints: primary key first, foreign keys last."""
        query = """
            SELECT
                con.conname AS name,
                CAST(con.contype AS text) AS constraint_type,
                pg_get_constraintdef(con.oid) AS definition,
                ref.relname AS referenced_table
            FROM pg_constraint con
            LEFT JOIN pg_class ref ON ref.oid = con.confrelid
            WHERE con.conrelid = CAST(:relation AS regclass)
              AND con.contype IN ('p', 'u', 'c', 'x', 'f')
            ORDER BY
                CASE con.contype
                    WHEN 'p' THEN 0
                    WHEN 'u' THEN 1
                    WHEN 'c' THEN 2
                    WHEN 'x' THEN 3
                    ELSE 4
                END,
                con.conname
        """
        rows = await self._session.fetch_all(query, {"relation": relation})
        return [
            ConstraintDef(
                name=row["name"],
                constraint_type=row["constraint_type"].strip(),
                definition=row["definition"],
                referenced_table=row.get("referenced_table"),
            )
            for row in rows
        ]

    async def _get_indexes(self, relation: str) -> list[IndexDef]:
        """Get indexes that are not created by a constraint."""
        query = """
            SELECT
                i.relname AS name,
                ix.indisunique AS is_unique,
                pg_get_indexdef(ix.indexrelid) AS definition
            FROM pg_index ix
            JOIN pg_class i ON i.oid = ix.indexrelid
            WHERE ix.indrelid = CAST(:relation AS regclass)
              AND NOT EXISTS (
                  SELECT 1 FROM pg_constraint c
                  WHERE c.conindid = ix.indexrelid
                    AND c.conrelid = ix.indrelid
                    AND c.contype IN ('p', 'u', 'x')
              )
            ORDER BY i.relname
        """
        rows = await self._session.fetch_all(query, {"relation": relation})
        indexes = []
        for row in rows:
            match = _INDEX_DEF.match(row["definition"])
            if match is None:
                raise SchemaInspectionError(
                    f"Unrecognized index definition: {row['definition']}"
                )
            indexes.append(
                IndexDef(
                    name=row["name"],
                    unique=bool(row["is_unique"]),
                    body=match.group(1),
                )
            )
        return indexes

    async def _get_sequences(self, relation: str) -> list[SequenceDef]:
        """Get sequences owned by columns (serial defaults, not identity)."""
        query = """
            SELECT
                s.relname AS name,
                a.attname AS column_name
            FROM pg_depend dep
            JOIN pg_class s
                ON s.oid = dep.objid
                AND s.relkind = 'S'
            JOIN pg_attribute a
                ON a.attrelid = dep.refobjid
                AND a.attnum = dep.refobjsubid
            WHERE dep.refobjid = CAST(:relation AS regclass)
              AND dep.classid = CAST('pg_class' AS regclass)
              AND dep.deptype = 'a'
            ORDER BY a.attnum
        """
        rows = await self._session.fetch_all(query, {"relation": relation})
        return [SequenceDef(name=row["name"], column=row["column_name"]) for row in rows]

    async def _get_primary_key(self, relation: str) -> list[str]:
        """Get primary key columns in key order."""
        query = """
            SELECT a.attname AS column_name
            FROM pg_index ix
            JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS x(attnum, ordinality) ON TRUE
            JOIN pg_attribute a ON a.attrelid = ix.indrelid AND a.attnum = x.attnum
            WHERE ix.indrelid = CAST(:relation AS regclass)
              AND ix.indisprimary
            ORDER BY x.ordinality
        """
        rows = await self._session.fetch_all(query, {"relation": relation})
        return [row["column_name"] for row in rows]
