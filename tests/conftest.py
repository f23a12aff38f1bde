"""Shared fixtures: an in-memory database that understands the engine's SQL.

``FakeDatabase`` holds tables as lists of row dicts.  ``FakeSession``
implements the ``DatabaseSession`` protocol by interpreting exactly the
statements the replicator and status store generate (DROP/CREATE/ALTER
TABLE, batched INSERT, streamed SELECT, status upsert), with transaction
rollback and schema-wide index names like PostgreSQL.  ``FakeInspector``
serves table listings from a fake database and descriptors from a catalog.
"""

import copy
import json
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from db_mirror.errors import ConnectivityError, SchemaInspectionError
from db_mirror.schema.inspector import SchemaInspector
from db_mirror.schema.models import (
    ColumnDef,
    ConstraintDef,
    IndexDef,
    SequenceDef,
    TableDescriptor,
)

IDENT = r'"((?:[^"]|"")*)"'


def _unquote(name: str) -> str:
    return name.replace('""', '"')


def _idents(text: str) -> list[str]:
    return [_unquote(m) for m in re.findall(IDENT, text)]


# ------------------------------------------------------------------
# In-memory database
# ------------------------------------------------------------------


class FakeTable:
    """One table: column names/types, rows, and constraint bookkeeping."""

    def __init__(self, name: str, columns: list[str], types: dict[str, str], ddl: str = ""):
        self.name = name
        self.columns = columns
        self.types = types
        self.ddl = ddl
        self.rows: list[dict] = []
        self.constraints: list[str] = []
        self.foreign_keys: dict[str, str] = {}
        self.foreign_key_targets: dict[str, str] = {}   # constraint -> referenced table

    @property
    def json_columns(self) -> set[str]:
        return {c for c, t in self.types.items() if t in ("json", "jsonb")}


class FakeDatabase:
    """A database: tables, schema-wide index names, and a statement log."""

    def __init__(self, name: str = "db"):
        self.name = name
        self.tables: dict[str, FakeTable] = {}
        self.indexes: dict[str, str] = {}      # index name -> table name
        self.sequences: set[str] = set()
        self.statements: list[str] = []
        self.replication_role = "origin"
        self.insert_log: list[tuple[str, str]] = []  # (table, replication role)
        self.failures: list[tuple[str, Exception]] = []
        self.reachable = True
        self.transactions = 0

    # -- seeding helpers ------------------------------------------------

    def create(self, descriptor: TableDescriptor, rows: list[dict] | None = None) -> FakeTable:
        """Create a table from a descriptor and load rows directly."""
        for statement in descriptor.create_statements():
            self.apply(statement)
        table = self.tables[descriptor.name]
        table.rows = [dict(r) for r in rows or []]
        return table

    def rows(self, table: str) -> list[dict]:
        return [dict(r) for r in self.tables[table].rows]

    def fail_on(self, pattern: str, error: Exception | None = None) -> None:
        """Raise ``error`` for every statement matching ``pattern``."""
        self.failures.append((pattern, error or RuntimeError("simulated failure")))

    def _check_failures(self, sql: str) -> None:
        for pattern, error in self.failures:
            if re.search(pattern, sql):
                raise error

    def snapshot(self):
        return copy.deepcopy((self.tables, self.indexes, self.sequences))

    def rollback_to(self, snapshot) -> None:
        self.tables, self.indexes, self.sequences = snapshot

    # -- statement interpreter -----------------------------------------

    def apply(self, sql: str, params: dict | None = None) -> None:
        sql = sql.strip()
        self._check_failures(sql)
        self.statements.append(sql)
        params = params or {}

        if m := re.match(r"^SET session_replication_role = (\w+)$", sql):
            self.replication_role = m.group(1)
        elif sql == "RESET session_replication_role":
            self.replication_role = "origin"
        elif m := re.match(rf"^DROP TABLE IF EXISTS {IDENT} CASCADE$", sql):
            self._drop(_unquote(m.group(1)))
        elif m := re.match(rf"^CREATE SEQUENCE IF NOT EXISTS {IDENT}$", sql):
            self.sequences.add(_unquote(m.group(1)))
        elif m := re.match(rf"^CREATE TABLE (IF NOT EXISTS )?{IDENT} \((.*)\)$", sql, re.DOTALL):
            self._create_table(_unquote(m.group(2)), m.group(3), sql, bool(m.group(1)))
        elif m := re.match(rf"^CREATE (?:UNIQUE )?INDEX {IDENT} ON {IDENT} ", sql):
            self._register_index(_unquote(m.group(1)), _unquote(m.group(2)))
        elif re.match(rf"^ALTER SEQUENCE {IDENT} OWNED BY ", sql):
            pass
        elif m := re.match(rf"^ALTER TABLE (IF EXISTS )?{IDENT} RENAME TO {IDENT}$", sql):
            self._rename_table(_unquote(m.group(2)), _unquote(m.group(3)), bool(m.group(1)))
        elif m := re.match(rf"^ALTER TABLE {IDENT} RENAME CONSTRAINT {IDENT} TO {IDENT}$", sql):
            self._rename_constraint(*(_unquote(g) for g in m.groups()))
        elif m := re.match(rf"^ALTER INDEX {IDENT} RENAME TO {IDENT}$", sql):
            old, new = _unquote(m.group(1)), _unquote(m.group(2))
            self._register_index(new, self.indexes.pop(old))
        elif m := re.match(rf"^ALTER TABLE {IDENT} DROP CONSTRAINT IF EXISTS {IDENT}$", sql):
            table = self._table(_unquote(m.group(1)))
            table.foreign_keys.pop(_unquote(m.group(2)), None)
            table.foreign_key_targets.pop(_unquote(m.group(2)), None)
        elif m := re.match(rf"^ALTER TABLE {IDENT} ADD CONSTRAINT {IDENT} (.*)$", sql):
            table = self._table(_unquote(m.group(1)))
            name = _unquote(m.group(2))
            if name in table.foreign_keys:
                raise RuntimeError(f'constraint "{name}" already exists')
            table.foreign_keys[name] = m.group(3)
            if target := re.search(rf"REFERENCES (?:{IDENT}|([\w.]+))", m.group(3)):
                referenced = _unquote(target.group(1)) if target.group(1) else target.group(2)
                table.foreign_key_targets[name] = referenced.split(".")[-1]
        elif sql.startswith("SELECT setval("):
            pass
        elif m := re.match(rf"^INSERT INTO {IDENT} \((.*?)\) VALUES \((.*?)\) ON CONFLICT \({IDENT}\)", sql):
            self._upsert(_unquote(m.group(1)), m.group(2), m.group(3), _unquote(m.group(4)), params)
        elif m := re.match(rf"^INSERT INTO {IDENT} \((.*?)\) VALUES \((.*?)\)$", sql):
            self._upsert(_unquote(m.group(1)), m.group(2), m.group(3), None, params)
        else:
            raise AssertionError(f"Unsupported SQL in fake database: {sql}")

    def _table(self, name: str) -> FakeTable:
        if name not in self.tables:
            raise RuntimeError(f'relation "{name}" does not exist')
        return self.tables[name]

    def _drop(self, name: str) -> None:
        if self.tables.pop(name, None) is None:
            return
        self.indexes = {i: t for i, t in self.indexes.items() if t != name}
        # CASCADE: foreign keys of other tables pointing here go too
        for table in self.tables.values():
            for fk in [k for k, target in table.foreign_key_targets.items() if target == name]:
                del table.foreign_keys[fk]
                del table.foreign_key_targets[fk]

    def _register_index(self, index: str, table: str) -> None:
        if index in self.indexes:
            raise RuntimeError(f'relation "{index}" already exists')
        self.indexes[index] = table

    def _create_table(self, name: str, body: str, sql: str, if_not_exists: bool) -> None:
        if name in self.tables:
            if if_not_exists:
                return
            raise RuntimeError(f'relation "{name}" already exists')
        parts = body.split(",\n") if "\n" in body else body.split(", ")
        columns, types, constraints = [], {}, []
        for part in (p.strip() for p in parts):
            if part.startswith("CONSTRAINT "):
                cname = _idents(part)[0]
                constraints.append(cname)
                if re.search(r"\b(PRIMARY KEY|UNIQUE|EXCLUDE)\b", part):
                    self._register_index(cname, name)
            elif m := re.match(rf"^{IDENT} (\S+)", part):
                column = _unquote(m.group(1))
                columns.append(column)
                types[column] = m.group(2)
        table = FakeTable(name, columns, types, ddl=sql)
        table.constraints = constraints
        self.tables[name] = table

    def _rename_table(self, old: str, new: str, if_exists: bool) -> None:
        if old not in self.tables:
            if if_exists:
                return
            raise RuntimeError(f'relation "{old}" does not exist')
        if new in self.tables:
            raise RuntimeError(f'relation "{new}" already exists')
        table = self.tables.pop(old)
        table.name = new
        self.tables[new] = table
        self.indexes = {i: (new if t == old else t) for i, t in self.indexes.items()}
        # foreign keys follow the renamed table
        for other in self.tables.values():
            other.foreign_key_targets = {
                fk: (new if target == old else target)
                for fk, target in other.foreign_key_targets.items()
            }

    def _rename_constraint(self, table_name: str, old: str, new: str) -> None:
        table = self._table(table_name)
        table.constraints[table.constraints.index(old)] = new
        if old in self.indexes:
            self._register_index(new, self.indexes.pop(old))

    def insert(self, sql: str, rows: list[dict]) -> None:
        sql = sql.strip()
        self._check_failures(sql)
        self.statements.append(sql)
        m = re.match(
            rf"^INSERT INTO {IDENT} \((.*?)\)( OVERRIDING SYSTEM VALUE)? VALUES \((.*)\)$", sql
        )
        if m is None:
            raise AssertionError(f"Unsupported INSERT in fake database: {sql}")
        table = self._table(_unquote(m.group(1)))
        columns = _idents(m.group(2))
        binds = [b.strip().lstrip(":") for b in m.group(4).split(",")]
        for params in rows:
            row = {c: None for c in table.columns}
            for column, bind in zip(columns, binds):
                value = params[bind]
                # driver round trip: json text comes back decoded
                if column in table.json_columns and isinstance(value, str):
                    value = json.loads(value)
                row[column] = value
            table.rows.append(row)
        self.insert_log.append((table.name, self.replication_role))

    def _upsert(self, name: str, columns_sql: str, values_sql: str, key: str | None, params: dict) -> None:
        """INSERT ... ON CONFLICT (key) DO UPDATE, or a plain INSERT when ``key`` is None."""
        table = self._table(name)
        columns = _idents(columns_sql)
        values = []
        for token in (v.strip() for v in values_sql.split(",")):
            if token.startswith(":"):
                values.append(params[token[1:]])
            elif token == "CURRENT_TIMESTAMP":
                values.append(datetime.now(timezone.utc))
            else:
                raise AssertionError(f"Unsupported VALUES token: {token}")
        new_row = dict(zip(columns, values))
        for row in table.rows:
            if key is not None and row.get(key) == new_row[key]:
                row.update(new_row)
                return
        for column, type_ in table.types.items():
            if type_ in ("serial", "bigserial") and new_row.get(column) is None:
                new_row[column] = max((r[column] for r in table.rows), default=0) + 1
        table.rows.append({**{c: None for c in table.columns}, **new_row})

    # -- queries -------------------------------------------------------

    def scalar(self, sql: str, params: dict | None = None):
        sql = " ".join(sql.split())
        self._check_failures(sql)
        params = params or {}
        if sql == "SELECT 1":
            return 1
        if m := re.match(rf"^SELECT COUNT\(\*\) FROM {IDENT}$", sql):
            return len(self._table(_unquote(m.group(1))).rows)
        if sql == "SELECT to_regclass(:relation) IS NOT NULL":
            return _idents(params["relation"])[0] in self.tables
        if m := re.match(rf"^SELECT {IDENT} FROM {IDENT} WHERE {IDENT} = :key$", sql):
            column, name, key_column = (_unquote(g) for g in m.groups())
            for row in self._table(name).rows:
                if row.get(key_column) == params["key"]:
                    return row.get(column)
            return None
        raise AssertionError(f"Unsupported query in fake database: {sql}")

    def select(self, sql: str, params: dict | None = None) -> list[dict]:
        sql = " ".join(sql.split())
        self._check_failures(sql)
        params = params or {}
        if m := re.match(
            rf"^SELECT (.*?) FROM {IDENT} ORDER BY {IDENT} DESC LIMIT :limit OFFSET :offset$", sql
        ):
            columns = _idents(m.group(1))
            key = _unquote(m.group(3))
            rows = sorted(self._table(_unquote(m.group(2))).rows, key=lambda r: r[key], reverse=True)
            rows = rows[params["offset"]:params["offset"] + params["limit"]]
            return [{c: copy.deepcopy(r[c]) for c in columns} for r in rows]
        m = re.match(
            rf"^SELECT (.*?) FROM {IDENT}"
            rf"(?: WHERE {IDENT} IS DISTINCT FROM :excluded)?"
            rf"(?: ORDER BY (.*))?$",
            sql,
        )
        if m is None:
            raise AssertionError(f"Unsupported SELECT in fake database: {sql}")
        columns = _idents(m.group(1))
        table = self._table(_unquote(m.group(2)))
        rows = table.rows
        if m.group(3):
            excluded_column = _unquote(m.group(3))
            rows = [r for r in rows if r.get(excluded_column) != params["excluded"]]
        if m.group(4):
            order = _idents(m.group(4))
            rows = sorted(rows, key=lambda r: tuple(r[c] for c in order))
        return [{c: copy.deepcopy(r[c]) for c in columns} for r in rows]


class FakeSession:
    """``DatabaseSession`` over a ``FakeDatabase``."""

    def __init__(self, db: FakeDatabase):
        self.db = db
        self.closed = False
        self._in_transaction = False
        self._streaming = False

    async def connect(self) -> None:
        if not self.db.reachable:
            raise ConnectivityError(f"Cannot connect to {self.db.name} database")
        # A suspended stream holds the connection's transaction, as asyncpg does
        if self._streaming:
            raise RuntimeError(
                "cannot use the connection while a stream holds its transaction open"
            )

    async def fetch_all(self, sql, params=None):
        await self.connect()
        return self.db.select(sql, params)

    async def fetch_scalar(self, sql, params=None):
        await self.connect()
        return self.db.scalar(sql, params)

    async def stream(self, sql, params=None, batch_size=1000):
        await self.connect()
        rows = self.db.select(sql, params)
        self._streaming = True
        try:
            for start in range(0, len(rows), batch_size):
                yield rows[start:start + batch_size]
        finally:
            self._streaming = False

    async def execute(self, sql, params=None):
        await self.connect()
        self.db.apply(sql, params)

    async def execute_many(self, sql, rows):
        await self.connect()
        if rows:
            self.db.insert(sql, rows)

    @asynccontextmanager
    async def transaction(self):
        if self._in_transaction:
            yield
            return
        snapshot = self.db.snapshot()
        self._in_transaction = True
        self.db.transactions += 1
        try:
            yield
        except BaseException:
            self.db.rollback_to(snapshot)
            raise
        finally:
            self._in_transaction = False

    async def test_connection(self) -> bool:
        await self.connect()
        return True

    async def close(self) -> None:
        self.closed = True


class FakeInspector(SchemaInspector):
    """Lists tables of a fake database; captures descriptors from ``catalog``."""

    def __init__(self, session: FakeSession, catalog: dict[str, TableDescriptor], **kwargs):
        super().__init__(session, **kwargs)
        self.catalog = catalog

    async def _all_tables(self) -> list[str]:
        await self._session.connect()
        return sorted(self._session.db.tables)

    async def capture(self, table_name: str) -> TableDescriptor:
        if table_name not in self.catalog:
            raise SchemaInspectionError(f"Cannot capture DDL for table '{table_name}'")
        return self.catalog[table_name]


# ------------------------------------------------------------------
# Sample schema: groups, images, system_config
# ------------------------------------------------------------------


def groups_descriptor() -> TableDescriptor:
    return TableDescriptor(
        name="groups",
        columns=[
            ColumnDef(name="id", data_type="text", not_null=True),
            ColumnDef(name="name", data_type="text", not_null=True),
            ColumnDef(
                name="created_at",
                data_type="timestamp(3) without time zone",
                not_null=True,
                default="CURRENT_TIMESTAMP",
            ),
        ],
        constraints=[
            ConstraintDef(name="groups_pkey", constraint_type="p", definition="PRIMARY KEY (id)"),
        ],
        indexes=[IndexDef(name="groups_name_key", unique=True, body="USING btree (name)")],
        primary_key=["id"],
    )


def images_descriptor() -> TableDescriptor:
    return TableDescriptor(
        name="images",
        columns=[
            ColumnDef(
                name="id",
                data_type="integer",
                not_null=True,
                default="nextval('images_id_seq'::regclass)",
            ),
            ColumnDef(name="group_id", data_type="text", not_null=True),
            ColumnDef(name="url", data_type="text", not_null=True),
            ColumnDef(name="meta", data_type="jsonb"),
            ColumnDef(name="caption", data_type="text"),
        ],
        constraints=[
            ConstraintDef(name="images_pkey", constraint_type="p", definition="PRIMARY KEY (id)"),
            ConstraintDef(
                name="images_group_id_fkey",
                constraint_type="f",
                definition="FOREIGN KEY (group_id) REFERENCES groups(id) ON UPDATE CASCADE ON DELETE RESTRICT",
                referenced_table="groups",
            ),
        ],
        indexes=[IndexDef(name="images_group_id_idx", body="USING btree (group_id)")],
        sequences=[SequenceDef(name="images_id_seq", column="id")],
        primary_key=["id"],
    )


def system_config_descriptor() -> TableDescriptor:
    return TableDescriptor(
        name="system_config",
        columns=[
            ColumnDef(name="id", data_type="text", not_null=True),
            ColumnDef(name="value", data_type="text", not_null=True),
        ],
        constraints=[
            ConstraintDef(
                name="system_config_pkey", constraint_type="p", definition="PRIMARY KEY (id)"
            ),
        ],
        primary_key=["id"],
    )


def status_row(**fields) -> dict:
    """A reserved status row whose payload holds ``fields``."""
    return {"id": "backup_status", "value": json.dumps(fields)}


GROUP_ROWS = [
    {"id": "g1", "name": "Landscapes", "created_at": datetime(2024, 5, 1, 12, 0)},
]

IMAGE_ROWS = [
    {"id": 2, "group_id": "g1", "url": "https://cdn.example.com/b.jpg", "meta": None, "caption": None},
    {"id": 1, "group_id": "g1", "url": "https://cdn.example.com/a.jpg",
     "meta": {"width": 800, "tags": ["sky"]}, "caption": "Dawn"},
]


@pytest.fixture
def catalog() -> dict[str, TableDescriptor]:
    return {
        "groups": groups_descriptor(),
        "images": images_descriptor(),
        "system_config": system_config_descriptor(),
    }


@pytest.fixture
def primary_db(catalog) -> FakeDatabase:
    """Primary with groups (1 row), images (2 rows) and the status table."""
    db = FakeDatabase("primary")
    db.create(catalog["groups"], GROUP_ROWS)
    db.create(catalog["images"], IMAGE_ROWS)
    db.create(
        catalog["system_config"],
        [
            {"id": "site_name", "value": "Gallery"},
            status_row(is_auto_backup_enabled=True, backup_count=4),
        ],
    )
    return db


@pytest.fixture
def backup_db() -> FakeDatabase:
    return FakeDatabase("backup")


@pytest.fixture
def primary(primary_db) -> FakeSession:
    return FakeSession(primary_db)


@pytest.fixture
def backup(backup_db) -> FakeSession:
    return FakeSession(backup_db)


@pytest.fixture
def inspector_factory(catalog):
    return lambda session: FakeInspector(session, catalog)
