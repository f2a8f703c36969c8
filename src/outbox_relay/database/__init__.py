"""
Database access for the relay.

Usage:
    from outbox_relay.database import DatabaseAdapter, DatabaseConfig

    db = DatabaseAdapter(DatabaseConfig(dsn))
    await db.connect()
    rows = await db.fetch("SELECT * FROM outbox_relay.relay_state")
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseConfig,
)

__all__ = [
    "DatabaseAdapter",
    "DatabaseConfig",
]
