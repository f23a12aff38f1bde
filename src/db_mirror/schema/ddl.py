"""Identifier helpers shared by DDL rendering and the replicator."""

import hashlib

MAX_IDENTIFIER_LENGTH = 63  # PostgreSQL NAMEDATALEN - 1, in bytes

STAGING_SUFFIX = "__tmp_restore"
RETIRED_SUFFIX = "__old_restore"
STAGED_OBJECT_SUFFIX = "__staged"

# Marker appended to truncated names: "_" + 8 hex digits of the full name's hash
_HASH_LENGTH = 8


def quote_ident(name: str) -> str:
    """Quote an identifier for PostgreSQL.

    Example:
        >>> quote_ident('groupId')
        '"groupId"'
        >>> quote_ident('we"ird')
        '"we""ird"'
    """
    return '"' + name.replace('"', '""') + '"'


def with_suffix(name: str, suffix: str) -> str:
    """Append ``suffix`` so the result fits in 63 bytes.

    A name too long to take the suffix whole is truncated and tagged with a
    short hash of the full name, so two long names sharing a prefix still
    map to different results.
    """
    raw = name.encode("utf-8")
    limit = MAX_IDENTIFIER_LENGTH - len(suffix.encode("utf-8"))
    if len(raw) <= limit:
        return name + suffix
    digest = hashlib.sha1(raw).hexdigest()[:_HASH_LENGTH]
    base = raw[:limit - _HASH_LENGTH - 1].decode("utf-8", errors="ignore")
    return f"{base}_{digest}{suffix}"


def staging_name(table: str) -> str:
    """Name of the table a restore loads before swapping it live."""
    return with_suffix(table, STAGING_SUFFIX)


def retired_name(table: str) -> str:
    """Name the live table is moved to during a swap, right before it is dropped."""
    return with_suffix(table, RETIRED_SUFFIX)


def staged_object_name(name: str) -> str:
    """Name of a constraint or index while it belongs to a staging table."""
    return with_suffix(name, STAGED_OBJECT_SUFFIX)
