"""Table replication: drop, recreate, bulk copy, staged swap."""

from db_mirror.replication.replicator import (
    RowExclusion,
    TableReplicator,
    referential_checks_suspended,
)

__all__ = [
    "TableReplicator",
    "RowExclusion",
    "referential_checks_suspended",
]
