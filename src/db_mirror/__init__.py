"""db-mirror: schema-agnostic PostgreSQL backup and restore.

Replicates every table of a live primary database into a separate backup
database, and rebuilds the primary from that backup one table at a time
through staged, atomically swapped copies.

Usage:
    from db_mirror import BackupEngine, load_mirror_config

    async with BackupEngine(load_mirror_config()) as engine:
        result = await engine.backup()
"""

__version__ = "0.1.0"

# Engine
from db_mirror.engine import BackupEngine, create_engine_from_env

# Connections
from db_mirror.adapters.base import DatabaseSession
from db_mirror.adapters.postgres import PostgresSession
from db_mirror.connections import ConnectionPair

# Config
from db_mirror.config.loader import load_mirror_config
from db_mirror.config.models import HistorySettings, MirrorConfig, StatusSettings

# Models
from db_mirror.backup.models import BackupStatus, HistoryEntry, OperationResult, TableReport
from db_mirror.schema.models import TableDescriptor

# Errors
from db_mirror.errors import (
    ConfigurationError,
    ConnectivityError,
    MirrorError,
    ReplicationError,
    RestoreError,
    SchemaInspectionError,
    StatusStoreError,
)

__all__ = [
    # Engine
    "BackupEngine",
    "create_engine_from_env",
    # Connections
    "DatabaseSession",
    "PostgresSession",
    "ConnectionPair",
    # Config
    "load_mirror_config",
    "MirrorConfig",
    "StatusSettings",
    "HistorySettings",
    # Models
    "BackupStatus",
    "HistoryEntry",
    "OperationResult",
    "TableReport",
    "TableDescriptor",
    # Errors
    "MirrorError",
    "ConfigurationError",
    "ConnectivityError",
    "SchemaInspectionError",
    "ReplicationError",
    "RestoreError",
    "StatusStoreError",
]
