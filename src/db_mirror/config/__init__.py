"""Configuration management: TOML/environment loading and config models.

Usage:
    >>> from db_mirror.config import load_mirror_config, MirrorConfig, StatusSettings
"""

from db_mirror.config.loader import load_mirror_config
from db_mirror.config.models import HistorySettings, MirrorConfig, StatusSettings

__all__ = ["load_mirror_config", "MirrorConfig", "StatusSettings", "HistorySettings"]
