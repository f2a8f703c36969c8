"""
Tests for the health, state and dead letter endpoints.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from outbox_relay.api import create_app
from outbox_relay.relay.dlq import DeadLetterSink
from outbox_relay.relay.models import OutboxRecord
from outbox_relay.relay.state import RelayStateReader

from .conftest import make_row


def _state_row(schema, last_poll_time, published=0):
    return {
        "schema_name": schema,
        "table_name": "outbox_events",
        "last_poll_time": last_poll_time,
        "last_published_event_id": None,
        "total_events_published": published,
        "created_at": last_poll_time,
        "updated_at": last_poll_time,
    }


@pytest.fixture
def app(db):
    return create_app(RelayStateReader(db), max_poll_age_seconds=30)


async def _get(app, path):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.get(path)


class TestLiveness:

    @pytest.mark.asyncio
    async def test_live_without_database(self, store, app):
        store.raise_on("any", ConnectionError("database down"))

        response = await _get(app, "/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestReadiness:

    @pytest.mark.asyncio
    async def test_ready_after_recent_poll(self, store, app):
        now = datetime.now(timezone.utc)
        store.relay_state["orders"] = _state_row("orders", now - timedelta(seconds=5))

        response = await _get(app, "/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"] == {"database": "ok", "polling": "ok"}
        assert 0 <= body["seconds_since_last_poll"] < 30

    @pytest.mark.asyncio
    async def test_most_recent_schema_counts(self, store, app):
        now = datetime.now(timezone.utc)
        store.relay_state["old"] = _state_row("old", now - timedelta(hours=2))
        store.relay_state["fresh"] = _state_row("fresh", now - timedelta(seconds=1))

        response = await _get(app, "/health/ready")

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_stale_poll_not_ready(self, store, app):
        now = datetime.now(timezone.utc)
        store.relay_state["orders"] = _state_row("orders", now - timedelta(seconds=31))

        response = await _get(app, "/health/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unavailable"
        assert body["checks"]["polling"] == "stale"
        assert body["seconds_since_last_poll"] > 30

    @pytest.mark.asyncio
    async def test_no_state_not_ready(self, app):
        response = await _get(app, "/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"] == {"database": "ok", "polling": "stale"}

    @pytest.mark.asyncio
    async def test_database_error_not_ready(self, store, app):
        store.relay_state["orders"] = _state_row("orders", datetime.now(timezone.utc))
        store.raise_on("any", ConnectionError("database down"))

        response = await _get(app, "/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["database"] == "error"

    @pytest.mark.asyncio
    async def test_threshold_is_configurable(self, store, db):
        app = create_app(RelayStateReader(db), max_poll_age_seconds=120)
        store.relay_state["orders"] = _state_row(
            "orders", datetime.now(timezone.utc) - timedelta(seconds=60)
        )

        response = await _get(app, "/health/ready")

        assert response.status_code == 200


class TestRelayStateEndpoint:

    @pytest.mark.asyncio
    async def test_lists_schemas(self, store, app):
        polled = datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)
        store.relay_state["orders"] = _state_row("orders", polled, published=12)
        store.relay_state["billing"] = _state_row("billing", polled, published=3)

        response = await _get(app, "/relay/state")

        assert response.status_code == 200
        body = response.json()
        assert [s["schema_name"] for s in body["schemas"]] == ["billing", "orders"]
        assert body["schemas"][1]["total_events_published"] == 12
        assert body["schemas"][1]["last_poll_time"].startswith("2026-03-01T08:30:00")
        assert body["scheduler"] is None


class TestRelayStateReader:

    @pytest.mark.asyncio
    async def test_per_schema_views(self, store, db):
        polled = datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)
        store.relay_state["orders"] = _state_row("orders", polled, published=12)
        store.relay_state["billing"] = _state_row("billing", polled + timedelta(minutes=1), published=3)
        reader = RelayStateReader(db)

        assert await reader.published_counts() == {"billing": 3, "orders": 12}
        assert await reader.last_poll_times() == {
            "billing": polled + timedelta(minutes=1),
            "orders": polled,
        }
        assert await reader.latest_poll_time() == polled + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_single_schema(self, store, db):
        store.relay_state["orders"] = _state_row("orders", datetime.now(timezone.utc), published=2)
        reader = RelayStateReader(db)

        state = await reader.get_state("orders")

        assert state.schema_name == "orders"
        assert state.total_events_published == 2
        assert await reader.get_state("missing") is None


class TestDeadLetterEndpoints:

    @pytest.fixture
    def dlq_app(self, db):
        return create_app(RelayStateReader(db), dead_letters=DeadLetterSink(db))

    async def _dead_letter(self, db, aggregate, schema="orders", event_type="order.created"):
        record = OutboxRecord.from_row(make_row(aggregate, event_type=event_type, payload="raw"))
        await DeadLetterSink(db).move_to_dlq(record, schema, "outbox_events", "broker down", 10)
        return record

    @pytest.mark.asyncio
    async def test_lists_entries(self, db, dlq_app):
        first = await self._dead_letter(db, "A1")
        second = await self._dead_letter(db, "B1", schema="billing")

        response = await _get(dlq_app, "/relay/dlq")

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert (body["limit"], body["offset"]) == (100, 0)
        assert [e["original_event_id"] for e in body["entries"]] == [
            second.event_id, first.event_id
        ]
        assert body["entries"][0]["payload"] == "raw"
        assert body["entries"][0]["failure_count"] == 10

    @pytest.mark.asyncio
    async def test_filters_by_schema_and_pages(self, db, dlq_app):
        await self._dead_letter(db, "A1")
        await self._dead_letter(db, "A2")
        await self._dead_letter(db, "B1", schema="billing")

        response = await _get(dlq_app, "/relay/dlq?source_schema=orders&limit=1&offset=1")

        body = response.json()
        assert body["total"] == 2
        assert len(body["entries"]) == 1
        assert body["entries"][0]["source_schema"] == "orders"

    @pytest.mark.asyncio
    async def test_rejects_bad_limit(self, dlq_app):
        response = await _get(dlq_app, "/relay/dlq?limit=0")

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_stats(self, db, dlq_app):
        await self._dead_letter(db, "A1", event_type="poison.event")
        await self._dead_letter(db, "A2", event_type="poison.event")
        await self._dead_letter(db, "A3", event_type="order.created")

        response = await _get(dlq_app, "/relay/dlq/stats")

        assert response.status_code == 200
        body = response.json()
        assert body["total_count"] == 3
        assert body["by_event_type"] == {"poison.event": 2, "order.created": 1}
        assert body["oldest_entry"] is not None

    @pytest.mark.asyncio
    async def test_unavailable_without_sink(self, app):
        response = await _get(app, "/relay/dlq/stats")

        assert response.status_code == 503
