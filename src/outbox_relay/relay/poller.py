"""
Outbox Poller

Selects unpublished events from service outbox tables.

Key Features:
- Row-level locks (FOR UPDATE SKIP LOCKED) so several relay instances can
  poll the same table without processing a row twice
- Locks are held until the batch has been published (see claim())
- Handles table name variations (outbox vs outbox_events)
- Handles marker column variations (published_at vs processed_at)
- Upserts relay_state in the same transaction as the selection
- A malformed row is logged and skipped; the rest of the batch is kept
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional

from pydantic import ValidationError

from ..database.adapter import DatabaseAdapter
from ..exceptions import PollError, RelayError
from .models import OutboxRecord
from .registry import validate_identifier

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

_SELECT_UNPUBLISHED = """
    SELECT *
    FROM "{schema}"."{table}"
    WHERE "{column}" IS NULL
    ORDER BY created_at ASC
    LIMIT $1
    FOR UPDATE SKIP LOCKED
"""

_UPSERT_RELAY_STATE = """
    INSERT INTO outbox_relay.relay_state (
        schema_name, table_name, last_poll_time,
        last_published_event_id, total_events_published
    ) VALUES ($1, $2, now(), $3, 0)
    ON CONFLICT (schema_name) DO UPDATE
    SET table_name = EXCLUDED.table_name,
        last_poll_time = now(),
        last_published_event_id = COALESCE(
            EXCLUDED.last_published_event_id,
            outbox_relay.relay_state.last_published_event_id
        ),
        updated_at = now()
"""

_ENSURE_RELAY_STATE = """
    INSERT INTO outbox_relay.relay_state (
        schema_name, table_name, last_poll_time, total_events_published
    ) VALUES ($1, $2, now(), 0)
    ON CONFLICT (schema_name) DO NOTHING
    RETURNING schema_name
"""


@dataclass
class ClaimedBatch:
    """Records selected by one poll, with the connection holding their locks."""
    conn: Any
    records: List[OutboxRecord] = field(default_factory=list)
    skipped: int = 0


class OutboxPoller:
    """
    Polls unpublished events from configured service schemas.

    Usage:
        poller = OutboxPoller(db, batch_size=100)

        async with poller.claim("journey_matcher", "outbox", "processed_at") as batch:
            for record in batch.records:
                await publisher.publish(record, ..., conn=batch.conn)
    """

    def __init__(self, db: DatabaseAdapter, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._db = db
        self.batch_size = batch_size

    @asynccontextmanager
    async def claim(
        self,
        schema: str,
        table: str,
        column: str = "published_at"
    ) -> AsyncIterator[ClaimedBatch]:
        """
        Select and lock up to batch_size unpublished records, oldest first.

        The selecting transaction stays open for the body of the `async with`
        so other relay instances skip these rows until the batch is done.
        The relay_state row for the schema is upserted in the same
        transaction.

        Raises:
            PollError: if the selection or the relay_state upsert fails
        """
        query = _SELECT_UNPUBLISHED.format(
            schema=validate_identifier(schema, "schema"),
            table=validate_identifier(table, "table"),
            column=validate_identifier(column, "column"),
        )

        async with self._db.transaction() as conn:
            try:
                batch = await self._select(conn, query, schema, table)
            except Exception as e:
                logger.error(
                    "Failed to poll outbox table",
                    extra={"schema": schema, "table": table, "error": str(e)},
                )
                raise PollError(schema, table, e) from e

            yield batch

    async def poll(
        self,
        schema: str,
        table: str,
        column: str = "published_at"
    ) -> List[OutboxRecord]:
        """
        Select unpublished records and release their locks straight away.

        Raises:
            PollError: on any database failure for this schema
        """
        try:
            async with self.claim(schema, table, column) as batch:
                return batch.records
        except RelayError:
            raise
        except Exception as e:
            raise PollError(schema, table, e) from e

    async def _select(self, conn: Any, query: str, schema: str, table: str) -> ClaimedBatch:
        rows = await conn.fetch(query, self.batch_size)

        batch = ClaimedBatch(conn=conn)
        for row in rows:
            try:
                batch.records.append(OutboxRecord.from_row(row))
            except ValidationError as e:
                batch.skipped += 1
                logger.error(
                    "Skipping malformed outbox row",
                    extra={
                        "schema": schema,
                        "table": table,
                        "row_id": str(row.get("id")),
                        "error": str(e),
                    },
                )

        last_id: Optional[str] = batch.records[-1].event_id if batch.records else None
        await conn.execute(_UPSERT_RELAY_STATE, schema, table, last_id)

        # Idle polls are logged at debug to keep log volume down
        log = logger.info if rows else logger.debug
        log(
            "Polled events from outbox",
            extra={
                "schema": schema,
                "table": table,
                "event_count": len(batch.records),
                "skipped_count": batch.skipped,
            },
        )
        return batch

    async def ensure_relay_state(self, schema: str, table: str) -> bool:
        """
        Insert the relay_state row for a schema if it does not exist yet.

        Returns:
            True if a row was created
        """
        row = await self._db.fetchrow(_ENSURE_RELAY_STATE, schema, table)
        if row is not None:
            logger.info(
                "Initialized relay_state for new schema",
                extra={"schema": schema, "table": table},
            )
            return True
        logger.debug("relay_state already exists", extra={"schema": schema, "table": table})
        return False
