"""Exception hierarchy for db-mirror.

Every error raised by the engine derives from ``MirrorError`` so callers
(HTTP handlers, the CLI, schedulers) can catch a single type.

Usage:
    from db_mirror.errors import MirrorError, ReplicationError

    try:
        await replicator.replicate(source, dest, descriptor)
    except ReplicationError as e:
        print(e.table, e)
"""


class MirrorError(Exception):
    """Base class for all db-mirror errors."""

    pass


class ConfigurationError(MirrorError):
    """Raised when required configuration (connection URLs, settings) is missing or invalid."""

    pass


class ConnectivityError(MirrorError):
    """Raised when a database cannot be reached or the connection was lost."""

    pass


class SchemaInspectionError(MirrorError):
    """Raised when tables cannot be enumerated or a table's DDL cannot be captured."""

    pass


class ReplicationError(MirrorError):
    """Raised when recreating or loading a table fails.

    Args:
        table: Name of the table being replicated.
        message: Human-readable description of the failure.
    """

    def __init__(self, table: str, message: str):
        self.table = table
        super().__init__(f"Table '{table}': {message}")


class RestoreError(MirrorError):
    """Raised when a restore cannot proceed (e.g., empty backup database)."""

    pass


class StatusStoreError(MirrorError):
    """Raised when the status record cannot be read or written."""

    pass
