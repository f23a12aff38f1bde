"""Runtime schema discovery and DDL rendering.

Provides ``SchemaInspector`` (table listing and structure capture) and the
``TableDescriptor`` model that renders the statements recreating a table
under its own or a staging name.

Usage:
    from db_mirror.schema import SchemaInspector, TableDescriptor
"""

from db_mirror.schema.ddl import quote_ident, retired_name, staging_name
from db_mirror.schema.inspector import DEFAULT_EXCLUDED_TABLES, SchemaInspector
from db_mirror.schema.models import (
    ColumnDef,
    ConstraintDef,
    IndexDef,
    SequenceDef,
    TableDescriptor,
)

__all__ = [
    "SchemaInspector",
    "DEFAULT_EXCLUDED_TABLES",
    "TableDescriptor",
    "ColumnDef",
    "ConstraintDef",
    "IndexDef",
    "SequenceDef",
    "quote_ident",
    "staging_name",
    "retired_name",
]
