"""
Relay State Reader

Read-only view of outbox_relay.relay_state for readiness checks and
operator endpoints.
"""

from datetime import datetime
from typing import Dict, List, Optional

from ..database.adapter import DatabaseAdapter
from .models import RelayState


class RelayStateReader:
    """Reads per-schema polling cursors and published counters."""

    def __init__(self, db: DatabaseAdapter):
        self._db = db

    async def get_states(self) -> List[RelayState]:
        rows = await self._db.fetch(
            """
            SELECT schema_name, table_name, last_poll_time,
                   last_published_event_id, total_events_published,
                   created_at, updated_at
            FROM outbox_relay.relay_state
            ORDER BY schema_name
            """
        )
        return [RelayState.from_row(row) for row in rows]

    async def get_state(self, schema: str) -> Optional[RelayState]:
        row = await self._db.fetchrow(
            """
            SELECT schema_name, table_name, last_poll_time,
                   last_published_event_id, total_events_published,
                   created_at, updated_at
            FROM outbox_relay.relay_state
            WHERE schema_name = $1
            """,
            schema
        )
        return RelayState.from_row(row) if row else None

    async def last_poll_times(self) -> Dict[str, Optional[datetime]]:
        """Time of last poll per schema."""
        return {s.schema_name: s.last_poll_time for s in await self.get_states()}

    async def published_counts(self) -> Dict[str, int]:
        """Cumulative published count per schema."""
        return {s.schema_name: s.total_events_published for s in await self.get_states()}

    async def latest_poll_time(self) -> Optional[datetime]:
        """Most recent poll across all schemas, or None before the first poll."""
        return await self._db.fetchval(
            "SELECT MAX(last_poll_time) FROM outbox_relay.relay_state"
        )
