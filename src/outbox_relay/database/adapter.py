"""
Database Adapter

Thin wrapper around an asyncpg connection pool shared by the poller, the
publisher, the dead-letter sink and the health checks.

Features:
- Connection pooling for PostgreSQL
- JSON/JSONB codecs so payloads round-trip as Python structures
- Transaction context manager handing out a single connection
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

logger = logging.getLogger(__name__)


class DatabaseConfig:
    """Connection pool settings."""

    def __init__(
        self,
        dsn: str,
        min_size: int = 2,
        max_size: int = 20,
        command_timeout: float = 60,
        connect_timeout: float = 5
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.connect_timeout = connect_timeout

    def __repr__(self) -> str:
        # Never log credentials
        target = self.dsn.split("@", 1)[1] if "@" in self.dsn else self.dsn
        return f"DatabaseConfig(target={target}, pool={self.min_size}-{self.max_size})"


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Register JSON codecs on every new pooled connection."""
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


class DatabaseAdapter:
    """
    Async PostgreSQL adapter.

    Usage:
        db = DatabaseAdapter(DatabaseConfig(dsn))
        await db.connect()

        rows = await db.fetch("SELECT * FROM outbox_relay.relay_state")

        async with db.transaction() as conn:
            await conn.fetch("SELECT ... FOR UPDATE SKIP LOCKED")
            await conn.execute("UPDATE ...")

        await db.disconnect()

    A pre-built pool may be passed in instead of a config (used by tests).
    """

    def __init__(self, config: Optional[DatabaseConfig] = None, pool: Any = None):
        self.config = config
        self._pool = pool
        self._connected = pool is not None

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Create the connection pool and verify connectivity."""
        if self._connected:
            return
        if self.config is None:
            raise RuntimeError("DatabaseAdapter has neither a config nor a pool")

        logger.info(f"Connecting to database: {self.config}")

        self._pool = await asyncpg.create_pool(
            self.config.dsn,
            min_size=self.config.min_size,
            max_size=self.config.max_size,
            command_timeout=self.config.command_timeout,
            timeout=self.config.connect_timeout,
            init=_init_connection,
        )

        # Test connection
        async with self._pool.acquire() as conn:
            await conn.fetchval("SELECT 1")

        self._connected = True
        logger.info("PostgreSQL connection pool initialized")

    async def disconnect(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Disconnected from PostgreSQL")
        self._connected = False

    def _require_pool(self):
        if self._pool is None:
            raise RuntimeError("Database is not connected")
        return self._pool

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        """
        Fetch multiple rows.

        Args:
            query: SQL query with $1, $2, etc. placeholders
            *args: Query parameters

        Returns:
            List of dictionaries representing rows
        """
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        """Fetch a single row."""
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow(query, *args)
            return dict(row) if row is not None else None

    async def fetchval(self, query: str, *args) -> Any:
        """Fetch a single value from the first column of the first row."""
        async with self._require_pool().acquire() as conn:
            return await conn.fetchval(query, *args)

    async def execute(self, query: str, *args) -> str:
        """Execute a statement; returns the status string (e.g. "UPDATE 1")."""
        async with self._require_pool().acquire() as conn:
            return await conn.execute(query, *args)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """
        Context manager for transactions.

        Usage:
            async with db.transaction() as conn:
                await conn.execute("INSERT ...")
                await conn.execute("UPDATE ...")
        """
        async with self._require_pool().acquire() as conn:
            async with conn.transaction():
                yield conn

    async def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        return await self.fetchval("SELECT 1") == 1
