"""
Unit Test Fixtures

In-memory stand-ins for PostgreSQL and Kafka. The fake connection
understands exactly the statements the relay issues, so the real
DatabaseAdapter, poller, publisher and sink run unchanged on top of it.
"""

import asyncio
import copy
import json
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import pytest

from outbox_relay.database import DatabaseAdapter

T0 = datetime(2026, 1, 10, 12, 0, 0, tzinfo=timezone.utc)

_SELECT_OUTBOX = re.compile(
    r'SELECT \* FROM "(\w+)"\."(\w+)" WHERE "(\w+)" IS NULL ORDER BY created_at ASC LIMIT \$1 FOR UPDATE SKIP LOCKED'
)
_MARK_PUBLISHED = re.compile(r'UPDATE "(\w+)"\."(\w+)" SET "(\w+)" = now\(\) WHERE id = \$1')


def _normalize(query: str) -> str:
    return " ".join(query.split())


def make_row(
    aggregate_id: str,
    event_type: str = "order.created",
    payload: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
    correlation_id: Optional[str] = None,
    marker: str = "published_at",
    **extra
) -> Dict[str, Any]:
    """Build a source outbox row."""
    row = {
        "id": uuid4(),
        "aggregate_id": aggregate_id,
        "aggregate_type": "order",
        "event_type": event_type,
        "payload": payload if payload is not None else {"aggregate": aggregate_id},
        "correlation_id": correlation_id,
        "created_at": created_at or T0,
        marker: None,
    }
    row.update(extra)
    return row


class FakeStore:
    """Tables shared by every fake connection."""

    def __init__(self):
        self.tables: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.relay_state: Dict[str, Dict[str, Any]] = {}
        self.failed_events: List[Dict[str, Any]] = []
        self.queries: List[str] = []
        self._errors: Dict[str, Exception] = {}
        self.clock = T0

    def now(self) -> datetime:
        self.clock += timedelta(milliseconds=1)
        return self.clock

    def add_table(self, schema: str, table: str, rows: List[Dict[str, Any]] = None):
        self.tables[(schema, table)] = list(rows or [])

    def rows(self, schema: str, table: str) -> List[Dict[str, Any]]:
        return self.tables[(schema, table)]

    def raise_on(self, operation: str, error: Exception) -> None:
        """
        Make an operation fail. Operations: "select:<schema>",
        "mark:<schema>", "relay_state", "dlq_insert", "any".
        """
        self._errors[operation] = error

    def clear_errors(self) -> None:
        self._errors.clear()

    def _check(self, operation: str) -> None:
        if "any" in self._errors:
            raise self._errors["any"]
        if operation in self._errors:
            raise self._errors[operation]

    def snapshot(self):
        return copy.deepcopy((self.tables, self.relay_state, self.failed_events))

    def restore(self, snapshot) -> None:
        self.tables, self.relay_state, self.failed_events = snapshot

    # Statement interpreter

    def run(self, query: str, args: tuple) -> Tuple[str, Any]:
        q = _normalize(query)
        self.queries.append(q)

        match = _SELECT_OUTBOX.search(q)
        if match:
            schema, table, column = match.groups()
            self._check(f"select:{schema}")
            if (schema, table) not in self.tables:
                raise RuntimeError(f'relation "{schema}.{table}" does not exist')
            rows = [r for r in self.tables[(schema, table)] if r.get(column) is None]
            rows.sort(key=lambda r: r["created_at"])
            return "rows", [dict(r) for r in rows[: args[0]]]

        match = _MARK_PUBLISHED.search(q)
        if match:
            schema, table, column = match.groups()
            self._check(f"mark:{schema}")
            updated = 0
            for row in self.tables[(schema, table)]:
                if row["id"] == args[0] and row.get(column) is None:
                    row[column] = self.now()
                    updated += 1
            return "status", f"UPDATE {updated}"

        if q.startswith("INSERT INTO outbox_relay.relay_state") and "DO UPDATE" in q:
            self._check("relay_state")
            schema, table, last_id = args
            now = self.now()
            state = self.relay_state.get(schema)
            if state is None:
                self.relay_state[schema] = {
                    "schema_name": schema,
                    "table_name": table,
                    "last_poll_time": now,
                    "last_published_event_id": last_id,
                    "total_events_published": 0,
                    "created_at": now,
                    "updated_at": now,
                }
            else:
                state["table_name"] = table
                state["last_poll_time"] = now
                if last_id is not None:
                    state["last_published_event_id"] = last_id
                state["updated_at"] = now
            return "status", "INSERT 0 1"

        if q.startswith("INSERT INTO outbox_relay.relay_state") and "DO NOTHING" in q:
            self._check("relay_state")
            schema, table = args
            if schema in self.relay_state:
                return "rows", []
            now = self.now()
            self.relay_state[schema] = {
                "schema_name": schema,
                "table_name": table,
                "last_poll_time": now,
                "last_published_event_id": None,
                "total_events_published": 0,
                "created_at": now,
                "updated_at": now,
            }
            return "rows", [{"schema_name": schema}]

        if q.startswith("UPDATE outbox_relay.relay_state SET total_events_published"):
            self._check("relay_state")
            state = self.relay_state.get(args[0])
            if state is None:
                return "status", "UPDATE 0"
            state["total_events_published"] += 1
            state["updated_at"] = self.now()
            return "status", "UPDATE 1"

        if q.startswith("INSERT INTO outbox_relay.failed_events"):
            self._check("dlq_insert")
            now = self.now()
            row = {
                "id": uuid4(),
                "original_event_id": args[0],
                "source_schema": args[1],
                "source_table": args[2],
                "event_type": args[3],
                # JSONB codec round trip (json.dumps on write, json.loads on read)
                "payload": json.loads(json.dumps(args[4])),
                "failure_reason": args[5],
                "failure_count": args[6],
                "first_failed_at": now,
                "last_failed_at": now,
                "created_at": now,
            }
            self.failed_events.append(row)
            return "rows", [{"id": row["id"]}]

        if q.startswith("SELECT MAX(last_poll_time)"):
            self._check("relay_state")
            times = [s["last_poll_time"] for s in self.relay_state.values()]
            return "rows", [{"max": max(times) if times else None}]

        if q.startswith("SELECT schema_name, table_name, last_poll_time"):
            self._check("relay_state")
            states = sorted(self.relay_state.values(), key=lambda s: s["schema_name"])
            if "WHERE schema_name = $1" in q:
                states = [s for s in states if s["schema_name"] == args[0]]
            return "rows", [dict(s) for s in states]

        if q.startswith("SELECT COUNT(*) FROM outbox_relay.failed_events"):
            rows = self.failed_events
            if args:
                rows = [r for r in rows if r["source_schema"] == args[0]]
            return "rows", [{"count": len(rows)}]

        if q.startswith("SELECT event_type, COUNT(*) AS count"):
            counts: Dict[str, int] = {}
            for r in self.failed_events:
                counts[r["event_type"]] = counts.get(r["event_type"], 0) + 1
            ordered = sorted(counts.items(), key=lambda kv: -kv[1])
            return "rows", [{"event_type": k, "count": v} for k, v in ordered]

        if q.startswith("SELECT MIN(first_failed_at)"):
            times = [r["first_failed_at"] for r in self.failed_events]
            return "rows", [{"min": min(times) if times else None}]

        if q.startswith("SELECT * FROM outbox_relay.failed_events"):
            rows = sorted(self.failed_events, key=lambda r: r["first_failed_at"], reverse=True)
            if "WHERE source_schema = $1" in q:
                rows = [r for r in rows if r["source_schema"] == args[0]]
                limit, offset = args[1], args[2]
            else:
                limit, offset = args[0], args[1]
            return "rows", [dict(r) for r in rows[offset:offset + limit]]

        if q == "SELECT 1":
            self._check("ping")
            return "rows", [{"?column?": 1}]

        raise AssertionError(f"Unexpected query: {q}")


class FakeConnection:
    """Mimics the asyncpg.Connection methods the relay uses."""

    def __init__(self, store: FakeStore):
        self._store = store

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        kind, result = self._store.run(query, args)
        return result if kind == "rows" else []

    async def fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        rows = await self.fetch(query, *args)
        return rows[0] if rows else None

    async def fetchval(self, query: str, *args) -> Any:
        row = await self.fetchrow(query, *args)
        return next(iter(row.values())) if row else None

    async def execute(self, query: str, *args) -> str:
        kind, result = self._store.run(query, args)
        return result if kind == "status" else "SELECT"

    @asynccontextmanager
    async def transaction(self):
        snapshot = self._store.snapshot()
        try:
            yield
        except BaseException:
            self._store.restore(snapshot)
            raise


class FakePool:
    """Mimics asyncpg.Pool.acquire()/close()."""

    def __init__(self, store: FakeStore):
        self.store = store
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield FakeConnection(self.store)

    async def close(self) -> None:
        self.closed = True


class FakeProducer:
    """
    Records sends like AIOKafkaProducer.send_and_wait().

    fail_times: number of upcoming sends that raise `error`; -1 fails forever.
    """

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.attempts: List[Dict[str, Any]] = []
        self.fail_times = 0
        self.fail_topics: set = set()
        self.error: Exception = ConnectionError("broker unavailable")
        self.delay = 0.0
        self.stopped = False

    async def send_and_wait(self, topic, value=None, key=None, partition=None,
                            timestamp_ms=None, headers=None):
        message = {"topic": topic, "key": key, "value": value, "headers": list(headers or [])}
        self.attempts.append(message)
        if self.delay:
            await asyncio.sleep(self.delay)
        if topic in self.fail_topics:
            raise self.error
        if self.fail_times:
            if self.fail_times > 0:
                self.fail_times -= 1
            raise self.error
        self.sent.append(message)
        return message

    async def stop(self) -> None:
        self.stopped = True


class FakeClock:
    """Manually advanced monotonic clock for RetryTracker."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def db(store: FakeStore) -> DatabaseAdapter:
    return DatabaseAdapter(pool=FakePool(store))


@pytest.fixture
def producer() -> FakeProducer:
    return FakeProducer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
