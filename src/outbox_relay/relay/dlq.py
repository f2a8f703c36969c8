"""
Dead Letter Queue (DLQ)

Moves events that exhausted their retries into outbox_relay.failed_events.

The source row's marker column is left untouched, so a dead-lettered record
is still unpublished as far as the source table is concerned and will be
selected again by a later poll (starting over from attempt 1).
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..database.adapter import DatabaseAdapter
from ..exceptions import DeadLetterError
from .models import FailedEvent, OutboxRecord

logger = logging.getLogger(__name__)

_INSERT_FAILED_EVENT = """
    INSERT INTO outbox_relay.failed_events (
        original_event_id, source_schema, source_table, event_type,
        payload, failure_reason, failure_count,
        first_failed_at, last_failed_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, now(), now())
    RETURNING id
"""


class DeadLetterSink:
    """
    Writes poisoned records to the failed_events table.

    Responsibilities:
    - Persist the record with its provenance and failure context
    - Query DLQ entries for operators
    - Summarise DLQ contents
    """

    def __init__(self, db: DatabaseAdapter):
        self._db = db

    async def move_to_dlq(
        self,
        record: OutboxRecord,
        source_schema: str,
        source_table: str,
        failure_reason: str,
        failure_count: int
    ) -> UUID:
        """
        Insert a FailedEvent for the record.

        Args:
            record: The record that exhausted its retries
            source_schema: Schema the record came from
            source_table: Table the record came from
            failure_reason: Last error message
            failure_count: Number of failed publish attempts

        Returns:
            Id of the new failed_events row

        Raises:
            DeadLetterError: if the insert fails
        """
        logger.warning(
            "Moving event to DLQ",
            extra={
                "event_id": record.event_id,
                "event_type": record.event_type,
                "source_schema": source_schema,
                "source_table": source_table,
                "failure_reason": failure_reason,
                "failure_count": failure_count,
            },
        )

        try:
            dlq_id = await self._db.fetchval(
                _INSERT_FAILED_EVENT,
                record.event_id,
                source_schema,
                source_table,
                record.event_type,
                record.payload,
                failure_reason,
                failure_count,
            )
        except Exception as e:
            logger.error(
                "Failed to move event to DLQ",
                extra={
                    "event_id": record.event_id,
                    "event_type": record.event_type,
                    "error": str(e),
                },
            )
            raise DeadLetterError(record.event_id, e, schema=source_schema) from e

        logger.info(
            "Event moved to DLQ",
            extra={
                "dlq_id": str(dlq_id),
                "event_id": record.event_id,
                "event_type": record.event_type,
            },
        )
        return dlq_id

    async def list_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        source_schema: Optional[str] = None
    ) -> List[FailedEvent]:
        """Get DLQ entries, newest first."""
        if source_schema:
            rows = await self._db.fetch(
                """
                SELECT * FROM outbox_relay.failed_events
                WHERE source_schema = $1
                ORDER BY first_failed_at DESC
                LIMIT $2 OFFSET $3
                """,
                source_schema, limit, offset
            )
        else:
            rows = await self._db.fetch(
                """
                SELECT * FROM outbox_relay.failed_events
                ORDER BY first_failed_at DESC
                LIMIT $1 OFFSET $2
                """,
                limit, offset
            )
        return [FailedEvent.from_row(row) for row in rows]

    async def count(self, source_schema: Optional[str] = None) -> int:
        """Get total DLQ entry count."""
        if source_schema:
            result = await self._db.fetchval(
                "SELECT COUNT(*) FROM outbox_relay.failed_events WHERE source_schema = $1",
                source_schema
            )
        else:
            result = await self._db.fetchval(
                "SELECT COUNT(*) FROM outbox_relay.failed_events"
            )
        return result or 0

    async def stats(self) -> Dict[str, Any]:
        """Get DLQ statistics."""
        total = await self.count()

        by_type = await self._db.fetch(
            """
            SELECT event_type, COUNT(*) AS count
            FROM outbox_relay.failed_events
            GROUP BY event_type
            ORDER BY count DESC
            """
        )

        oldest = await self._db.fetchval(
            "SELECT MIN(first_failed_at) FROM outbox_relay.failed_events"
        )

        return {
            "total_count": total,
            "by_event_type": {row["event_type"]: row["count"] for row in by_type},
            "oldest_entry": oldest.isoformat() if oldest else None,
        }
