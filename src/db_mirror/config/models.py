"""Pydantic models for engine configuration."""

from typing import Any

from pydantic import BaseModel, Field

from db_mirror.schema.inspector import DEFAULT_EXCLUDED_TABLES


# ============================================================================
# Configuration Models
# ============================================================================


class StatusSettings(BaseModel):
    """Where the status record lives in the primary database.

    The record is one row of ``table``, found by ``key_column = key``, whose
    ``payload_column`` holds the JSON-encoded ``BackupStatus``.
    """

    table: str = "system_config"
    key_column: str = "id"
    key: str = "backup_status"
    payload_column: str = "value"
    updated_at_column: str | None = None
    insert_defaults: dict[str, Any] = Field(default_factory=dict)  # other NOT NULL columns
    create_table: bool = True  # create a minimal table when it is missing


class HistorySettings(BaseModel):
    """Append-only log of backup and restore runs in the primary database.

    The table is created on first use and is never replicated, so a
    restore does not rewind it.
    """

    enabled: bool = True
    table: str = "backup_history"


class MirrorConfig(BaseModel):
    """Complete engine configuration from db-mirror.toml and the environment."""

    primary_url: str
    backup_url: str
    schema_name: str = "public"
    batch_size: int = Field(default=1000, ge=1)
    excluded_tables: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDED_TABLES))
    suspend_referential_checks: bool = True
    prune_stale_tables: bool = True
    status: StatusSettings = Field(default_factory=StatusSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
