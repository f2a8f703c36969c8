"""
Relay Engine

Polls service outbox tables and relays their events to Kafka.

Usage:
    from outbox_relay.relay import (
        SchemaRegistry, OutboxPoller, EventPublisher,
        DeadLetterSink, PollScheduler,
    )

    sources = SchemaRegistry().resolve(["journey_matcher", "whatsapp_handler"])
    scheduler = PollScheduler(
        sources,
        poller=OutboxPoller(db),
        publisher=EventPublisher(producer, db),
        dead_letters=DeadLetterSink(db),
    )
    scheduler.start()
    ...
    await scheduler.stop()
"""

from .models import OutboxRecord, SchemaSource, RelayState, FailedEvent, RetryDecision
from .registry import SchemaRegistry, SCHEMA_TABLE_MAP, DEFAULT_TABLE, DEFAULT_TIMESTAMP_COLUMN
from .poller import OutboxPoller
from .publisher import EventPublisher, OutboxMessage
from .retry import RetryPolicy, RetryTracker
from .dlq import DeadLetterSink
from .state import RelayStateReader
from .scheduler import PollScheduler, SchedulerState

__all__ = [
    "OutboxRecord",
    "SchemaSource",
    "RelayState",
    "FailedEvent",
    "RetryDecision",
    "SchemaRegistry",
    "SCHEMA_TABLE_MAP",
    "DEFAULT_TABLE",
    "DEFAULT_TIMESTAMP_COLUMN",
    "OutboxPoller",
    "EventPublisher",
    "OutboxMessage",
    "RetryPolicy",
    "RetryTracker",
    "DeadLetterSink",
    "RelayStateReader",
    "PollScheduler",
    "SchedulerState",
]
