"""Database adapters package.

Provides the ``DatabaseSession`` Protocol and the ``PostgresSession``
implementation (SQLAlchemy async engine + asyncpg).

Usage:
    from db_mirror.adapters import DatabaseSession, PostgresSession
"""

from db_mirror.adapters.base import DatabaseSession
from db_mirror.adapters.postgres import PostgresSession, normalize_url

__all__ = [
    "DatabaseSession",
    "PostgresSession",
    "normalize_url",
]
