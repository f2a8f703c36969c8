"""
Relay Models

Records read from source outbox tables and the relay's own bookkeeping rows.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

RecordId = Union[UUID, int, str]


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class OutboxRecord(BaseModel):
    """
    A row of a source service's outbox table.

    The publication marker column (published_at / processed_at) is not part
    of the model: the poller only ever returns rows where it is NULL.
    """

    id: RecordId
    aggregate_id: str
    aggregate_type: str = ""
    event_type: str
    payload: Any = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OutboxRecord":
        """
        Build a record from a database row, tolerating schema variations.

        The payload is taken as decoded by the connection's JSON codec.

        Raises:
            pydantic.ValidationError: if a required column is NULL
        """
        aggregate_id = row.get("aggregate_id")
        correlation_id = row.get("correlation_id")

        return cls(
            id=row["id"],
            aggregate_id=str(aggregate_id) if aggregate_id is not None else None,
            aggregate_type=row.get("aggregate_type") or "",
            event_type=row["event_type"],
            payload=row.get("payload"),
            correlation_id=str(correlation_id) if correlation_id is not None else None,
            created_at=row["created_at"],
        )

    @property
    def event_id(self) -> str:
        """Record identifier as a string (Kafka header / DLQ reference)."""
        return str(self.id)


@dataclass(frozen=True)
class SchemaSource:
    """One configured upstream service outbox."""

    schema: str
    table: str
    timestamp_column: str

    @property
    def qualified_table(self) -> str:
        return f"{self.schema}.{self.table}"


class RelayState(BaseModel):
    """Per-schema polling cursor and published counter."""

    schema_name: str
    table_name: str
    last_poll_time: Optional[datetime] = None
    last_published_event_id: Optional[str] = None
    total_events_published: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RelayState":
        last_id = row.get("last_published_event_id")
        return cls(
            schema_name=row["schema_name"],
            table_name=row["table_name"],
            last_poll_time=row.get("last_poll_time"),
            last_published_event_id=str(last_id) if last_id is not None else None,
            total_events_published=row.get("total_events_published") or 0,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class FailedEvent:
    """A dead-letter queue entry."""
    id: UUID
    original_event_id: str
    source_schema: str
    source_table: str
    event_type: str
    payload: Any
    failure_reason: str
    failure_count: int
    first_failed_at: datetime
    last_failed_at: datetime
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FailedEvent":
        return cls(
            id=row["id"],
            original_event_id=str(row["original_event_id"]),
            source_schema=row["source_schema"],
            source_table=row["source_table"],
            event_type=row["event_type"],
            payload=row["payload"],
            failure_reason=row["failure_reason"],
            failure_count=row["failure_count"],
            first_failed_at=row["first_failed_at"],
            last_failed_at=row["last_failed_at"],
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "original_event_id": self.original_event_id,
            "source_schema": self.source_schema,
            "source_table": self.source_table,
            "event_type": self.event_type,
            "payload": self.payload,
            "failure_reason": self.failure_reason,
            "failure_count": self.failure_count,
            "first_failed_at": self.first_failed_at.isoformat() if self.first_failed_at else None,
            "last_failed_at": self.last_failed_at.isoformat() if self.last_failed_at else None,
        }


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of RetryPolicy.should_retry()."""
    retry: bool
    delay_ms: int
    reason: Optional[str] = None
