"""Pydantic models for captured table structure.

A ``TableDescriptor`` is computed fresh from the catalog on every run and
never persisted.  It renders the statements that recreate the table in
another database, either under its own name or as a staging copy whose
index and constraint names cannot collide with the live table's.
"""

from pydantic import BaseModel, Field

from db_mirror.schema.ddl import quote_ident, staged_object_name


# ============================================================================
# Structure Models
# ============================================================================


class ColumnDef(BaseModel):
    """A table column as reported by ``pg_attribute``.

    Example:
        >>> col = ColumnDef(name="id", data_type="integer", not_null=True, identity="d")
        >>> col.sql()
        '"id" integer GENERATED BY DEFAULT AS IDENTITY NOT NULL'
    """

    name: str
    data_type: str                  # format_type() output, e.g. "character varying(191)"
    not_null: bool = False
    default: str | None = None      # pg_get_expr() of the column default
    identity: str = ""              # "a" = ALWAYS, "d" = BY DEFAULT, "" = none
    generated: str | None = None    # expression of a STORED generated column

    def sql(self) -> str:
        """Render the column definition used inside CREATE TABLE."""
        parts = [quote_ident(self.name), self.data_type]
        if self.generated is not None:
            parts.append(f"GENERATED ALWAYS AS ({self.generated}) STORED")
        elif self.identity == "a":
            parts.append("GENERATED ALWAYS AS IDENTITY")
        elif self.identity == "d":
            parts.append("GENERATED BY DEFAULT AS IDENTITY")
        elif self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        if self.not_null:
            parts.append("NOT NULL")
        return " ".join(parts)


class ConstraintDef(BaseModel):
    """A table constraint as reported by ``pg_constraint``."""

    name: str
    constraint_type: str    # p, u, c, x, f (pg_constraint.contype)
    definition: str         # pg_get_constraintdef() output
    referenced_table: str | None = None     # foreign keys only

    @property
    def is_foreign_key(self) -> bool:
        return self.constraint_type == "f"


class IndexDef(BaseModel):
    """An index that does not back a constraint."""

    name: str
    unique: bool = False
    body: str               # "USING btree (col)" plus an optional WHERE clause


class SequenceDef(BaseModel):
    """A sequence owned by a column (``serial`` style default)."""

    name: str
    column: str


# ============================================================================
# Table Descriptor
# ============================================================================


class TableDescriptor(BaseModel):
    """Everything needed to recreate one table elsewhere.

    Example:
        >>> d = TableDescriptor(
        ...     name="groups",
        ...     columns=[ColumnDef(name="id", data_type="text", not_null=True)],
        ...     constraints=[ConstraintDef(name="groups_pkey", constraint_type="p",
        ...                                definition="PRIMARY KEY (id)")],
        ...     primary_key=["id"],
        ... )
        >>> print(d.ddl)
        CREATE TABLE "groups" (
            "id" text NOT NULL,
            CONSTRAINT "groups_pkey" PRIMARY KEY (id)
        )
    """

    name: str
    columns: list[ColumnDef]
    constraints: list[ConstraintDef] = Field(default_factory=list)
    indexes: list[IndexDef] = Field(default_factory=list)
    sequences: list[SequenceDef] = Field(default_factory=list)
    primary_key: list[str] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Derived column sets
    # ------------------------------------------------------------------

    @property
    def insert_columns(self) -> list[str]:
        """Columns that accept inserted values (stored generated columns excluded)."""
        return [c.name for c in self.columns if c.generated is None]

    @property
    def json_columns(self) -> frozenset[str]:
        """Columns whose values must be sent back to the driver as JSON text."""
        return frozenset(
            c.name for c in self.columns if c.data_type in ("json", "jsonb")
        )

    @property
    def needs_override(self) -> bool:
        """Whether inserts need ``OVERRIDING SYSTEM VALUE`` (GENERATED ALWAYS identity)."""
        return any(c.identity == "a" for c in self.columns)

    @property
    def sequence_columns(self) -> list[str]:
        """Columns backed by a sequence that must be resynced after a bulk load."""
        owned = [s.column for s in self.sequences]
        identity = [c.name for c in self.columns if c.identity and c.name not in owned]
        return owned + identity

    @property
    def order_by(self) -> list[str]:
        """Deterministic extraction order: primary key columns when there is one."""
        return list(self.primary_key)

    @property
    def foreign_keys(self) -> list[ConstraintDef]:
        return [c for c in self.constraints if c.is_foreign_key]

    def referencing(self, tables: set[str]) -> "TableDescriptor":
        """Copy that keeps only the foreign keys pointing at ``tables``."""
        return self.model_copy(update={
            "constraints": [fk for fk in self.foreign_keys if fk.referenced_table in tables],
        })

    @property
    def table_constraints(self) -> list[ConstraintDef]:
        """Constraints rendered inline in CREATE TABLE (everything but foreign keys)."""
        return [c for c in self.constraints if not c.is_foreign_key]

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @property
    def ddl(self) -> str:
        """CREATE TABLE statement for the table under its own name."""
        return self.render_table()

    def render_table(self, name: str | None = None, staged: bool = False) -> str:
        """Render CREATE TABLE.

        Args:
            name: Table name to create (defaults to the descriptor's name).
            staged: Suffix constraint names so they do not clash with the
                live table's constraints and their indexes.
        """
        lines = [c.sql() for c in self.columns]
        for constraint in self.table_constraints:
            cname = staged_object_name(constraint.name) if staged else constraint.name
            lines.append(f"CONSTRAINT {quote_ident(cname)} {constraint.definition}")
        body = ",\n    ".join(lines)
        return f"CREATE TABLE {quote_ident(name or self.name)} (\n    {body}\n)"

    def create_statements(self, name: str | None = None, staged: bool = False) -> list[str]:
        """All statements that create the table structure (no foreign keys).

        Owned sequences are created first (the column defaults reference
        them).  A staged copy does not take sequence ownership; the swap
        hands ownership over once the copy is live.
        """
        target = name or self.name
        statements = [
            f"CREATE SEQUENCE IF NOT EXISTS {quote_ident(s.name)}" for s in self.sequences
        ]
        statements.append(self.render_table(target, staged=staged))
        for index in self.indexes:
            iname = staged_object_name(index.name) if staged else index.name
            unique = "UNIQUE " if index.unique else ""
            statements.append(
                f"CREATE {unique}INDEX {quote_ident(iname)} "
                f"ON {quote_ident(target)} {index.body}"
            )
        if not staged:
            statements.extend(self.sequence_ownership_statements(target))
        return statements

    def sequence_ownership_statements(self, name: str | None = None) -> list[str]:
        """Attach owned sequences to their columns of table ``name``."""
        target = quote_ident(name or self.name)
        return [
            f"ALTER SEQUENCE {quote_ident(s.name)} OWNED BY {target}.{quote_ident(s.column)}"
            for s in self.sequences
        ]

    def foreign_key_statements(self, name: str | None = None) -> list[str]:
        """ALTER TABLE statements adding the table's foreign keys."""
        target = quote_ident(name or self.name)
        return [
            f"ALTER TABLE {target} ADD CONSTRAINT {quote_ident(fk.name)} {fk.definition}"
            for fk in self.foreign_keys
        ]

    def unstage_statements(self, name: str | None = None) -> list[str]:
        """Rename suffixed constraint and index names back after a swap."""
        target = quote_ident(name or self.name)
        statements = [
            f"ALTER TABLE {target} RENAME CONSTRAINT "
            f"{quote_ident(staged_object_name(c.name))} TO {quote_ident(c.name)}"
            for c in self.table_constraints
        ]
        statements.extend(
            f"ALTER INDEX {quote_ident(staged_object_name(i.name))} "
            f"RENAME TO {quote_ident(i.name)}"
            for i in self.indexes
        )
        return statements
