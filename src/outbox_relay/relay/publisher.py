"""
Event Publisher

Publishes outbox records to Kafka and marks them published.

Flow:
1. Send the message (topic = event_type, key = aggregate_id) and wait for
   the broker acknowledgement
2. Only then, in one transaction: set the row's marker column to now() and
   increment relay_state.total_events_published
3. If the send fails the database is not touched; the record stays
   unpublished and is selected again by a later poll

Delivery is at-least-once: a crash between 1 and 2 re-publishes the record.
Consumers deduplicate on the event_id header.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Protocol, Tuple

from ..database.adapter import DatabaseAdapter
from ..exceptions import PublishError
from ..observability.tracing import create_span, trace_headers
from .models import OutboxRecord
from .registry import validate_identifier

logger = logging.getLogger(__name__)

_MARK_PUBLISHED = """
    UPDATE "{schema}"."{table}"
    SET "{column}" = now()
    WHERE id = $1 AND "{column}" IS NULL
"""

_INCREMENT_PUBLISHED = """
    UPDATE outbox_relay.relay_state
    SET total_events_published = total_events_published + 1,
        updated_at = now()
    WHERE schema_name = $1
"""


class Producer(Protocol):
    """The part of AIOKafkaProducer the publisher relies on."""

    async def send_and_wait(
        self,
        topic: str,
        value: Optional[bytes] = None,
        key: Optional[bytes] = None,
        partition: Optional[int] = None,
        timestamp_ms: Optional[int] = None,
        headers: Optional[List[Tuple[str, bytes]]] = None,
    ) -> Any:
        ...


def _rows_affected(status: str) -> int:
    """Row count from a command status such as "UPDATE 1"."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def _isoformat(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@dataclass
class OutboxMessage:
    """A Kafka message built from an outbox record."""
    topic: str
    key: bytes
    value: bytes
    headers: List[Tuple[str, bytes]] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: OutboxRecord) -> "OutboxMessage":
        headers = [
            ("event_id", record.event_id.encode("utf-8")),
            ("created_at", _isoformat(record.created_at).encode("utf-8")),
        ]
        if record.correlation_id:
            headers.append(("correlation_id", record.correlation_id.encode("utf-8")))

        return cls(
            topic=record.event_type,
            key=record.aggregate_id.encode("utf-8"),
            value=json.dumps(record.payload).encode("utf-8"),
            headers=headers,
        )

    def header(self, name: str) -> Optional[str]:
        for key, value in self.headers:
            if key == name:
                return value.decode("utf-8")
        return None


class EventPublisher:
    """
    Publishes events to Kafka and marks them as published in the database.
    """

    def __init__(self, producer: Producer, db: DatabaseAdapter):
        self._producer = producer
        self._db = db

    async def publish(
        self,
        record: OutboxRecord,
        schema: str,
        table: str,
        column: str = "published_at",
        conn: Any = None
    ) -> None:
        """
        Publish one record, then mark it published.

        Args:
            conn: Connection whose open transaction holds the record's row
                lock (from OutboxPoller.claim). The bookkeeping then runs in
                a savepoint on it. Without one a short transaction is used.

        Raises:
            PublishError: if the send or the bookkeeping fails
        """
        mark_query = _MARK_PUBLISHED.format(
            schema=validate_identifier(schema, "schema"),
            table=validate_identifier(table, "table"),
            column=validate_identifier(column, "column"),
        )

        attributes = {
            "messaging.system": "kafka",
            "messaging.destination.name": record.event_type,
            "outbox.event_id": record.event_id,
            "outbox.schema": schema,
        }

        with create_span("outbox.publish", attributes):
            message = OutboxMessage.from_record(record)
            message.headers.extend(trace_headers())

            logger.debug(
                "Publishing event to Kafka",
                extra={
                    "event_id": record.event_id,
                    "event_type": record.event_type,
                    "aggregate_id": record.aggregate_id,
                    "correlation_id": record.correlation_id,
                },
            )

            try:
                await self._producer.send_and_wait(
                    message.topic,
                    value=message.value,
                    key=message.key,
                    headers=message.headers,
                )
            except Exception as e:
                logger.error(
                    "Failed to publish event to Kafka",
                    extra={
                        "event_id": record.event_id,
                        "event_type": record.event_type,
                        "error": str(e),
                    },
                )
                raise PublishError(record.event_id, e, schema=schema) from e

            logger.info(
                "Event published to Kafka",
                extra={
                    "event_id": record.event_id,
                    "topic": message.topic,
                    "aggregate_id": record.aggregate_id,
                },
            )

            try:
                marked = await self._mark_published(mark_query, record, schema, conn)
            except Exception as e:
                # The broker has the message; the row will be re-published
                logger.error(
                    "Event acknowledged by Kafka but not marked published",
                    extra={
                        "event_id": record.event_id,
                        "schema": schema,
                        "table": table,
                        "error": str(e),
                    },
                )
                raise PublishError(record.event_id, e, schema=schema, acknowledged=True) from e

            if marked:
                logger.debug(
                    "Event marked as published in database",
                    extra={"event_id": record.event_id, "schema": schema, "table": table},
                )
            else:
                logger.info(
                    "Event was already marked published, counter left unchanged",
                    extra={"event_id": record.event_id, "schema": schema, "table": table},
                )

    async def _mark_published(
        self,
        mark_query: str,
        record: OutboxRecord,
        schema: str,
        conn: Any = None
    ) -> bool:
        """Set the marker and bump the counter atomically; False if already marked."""
        if conn is None:
            async with self._db.transaction() as tx:
                return await self._apply_mark(tx, mark_query, record, schema)
        async with conn.transaction():
            return await self._apply_mark(conn, mark_query, record, schema)

    @staticmethod
    async def _apply_mark(conn: Any, mark_query: str, record: OutboxRecord, schema: str) -> bool:
        status = await conn.execute(mark_query, record.id)
        if _rows_affected(status) == 0:
            return False
        await conn.execute(_INCREMENT_PUBLISHED, schema)
        return True
