"""Engine facade: the operations invoked by HTTP handlers and schedulers.

Usage:
    from db_mirror.engine import create_engine_from_env

    async with create_engine_from_env() as engine:
        result = await engine.backup()
        status = await engine.get_status()

The engine holds no lock.  Callers must ensure at most one backup, restore,
or initialize is in flight at a time.
"""

import logging
from pathlib import Path

from db_mirror.backup.history import HistoryStore
from db_mirror.backup.models import BackupStatus, HistoryEntry, OperationResult
from db_mirror.backup.orchestrator import (
    BackupOrchestrator,
    InitializeOrchestrator,
    InspectorFactory,
    RestoreOrchestrator,
)
from db_mirror.backup.status import StatusStore
from db_mirror.config.loader import load_mirror_config
from db_mirror.config.models import MirrorConfig
from db_mirror.connections import ConnectionPair
from db_mirror.replication.replicator import TableReplicator

logger = logging.getLogger(__name__)


class BackupEngine:
    """Backup, restore, initialize, and status over one connection pair.

    Args:
        config: Engine configuration.
        pair: Pre-built connection pair (default: built from the config URLs).
        inspector_factory: Builds the schema inspector for a session.
    """

    def __init__(
        self,
        config: MirrorConfig,
        pair: ConnectionPair | None = None,
        inspector_factory: InspectorFactory | None = None,
    ):
        self.config = config
        self.pair = pair or ConnectionPair(
            config.primary_url,
            config.backup_url,
            schema=config.schema_name,
        )
        self.replicator = TableReplicator(batch_size=config.batch_size)
        self.status_store = StatusStore(self.pair.primary, config.status)
        self.history_store = HistoryStore(self.pair.primary, config.history)
        self._inspector_factory = inspector_factory

    async def __aenter__(self) -> "BackupEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _wire(self, orchestrator_cls):
        return orchestrator_cls(
            self.pair.primary,
            self.pair.backup,
            self.config,
            replicator=self.replicator,
            status_store=self.status_store,
            inspector_factory=self._inspector_factory,
            history_store=self.history_store,
        )

    async def backup(self) -> OperationResult:
        """Replicate every primary table into the backup database."""
        return await self._wire(BackupOrchestrator).run()

    async def restore(self) -> OperationResult:
        """Rebuild primary tables from the backup database."""
        return await self._wire(RestoreOrchestrator).run()

    async def initialize_backup_database(self) -> OperationResult:
        """Create missing backup tables from the primary structure (no data)."""
        return await self._wire(InitializeOrchestrator).run()

    async def get_status(self) -> BackupStatus:
        """Current status record; defaults ("never backed up") when absent."""
        return await self.status_store.read() or BackupStatus()

    async def set_auto_backup_enabled(self, enabled: bool) -> BackupStatus:
        """Turn scheduled automatic backups on or off."""
        status = await self.status_store.upsert(is_auto_backup_enabled=enabled)
        logger.info(f"Auto-backup {'enabled' if enabled else 'disabled'}")
        return status

    async def get_history(self, limit: int = 20, page: int = 1) -> list[HistoryEntry]:
        """Recorded backup and restore runs, newest first."""
        return await self.history_store.recent(limit=limit, page=page)

    async def check_health(self) -> dict[str, bool]:
        """Reachability of both databases, without raising."""
        return await self.pair.check_health()

    async def close(self) -> None:
        await self.pair.close()


def create_engine_from_env(config_path: Path | None = None) -> BackupEngine:
    """Build a ``BackupEngine`` from db-mirror.toml and the environment.

    Raises:
        ConfigurationError: If a database URL is missing.
    """
    return BackupEngine(load_mirror_config(config_path))
