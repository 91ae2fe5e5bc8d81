"""Tests for the PostgreSQL delivery store against a mocked asyncpg pool."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fakes import TEST_SECRET, make_webhook

from courier.exceptions import ConfigurationError, ConflictError, NotFoundError, StorageError
from courier.models import DeliveryStatus, DeliveryUpdate, WebhookEvent
from courier.storage import DeliveryStore, PostgresDeliveryStore
from courier.storage.postgres import SCHEMA

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


def webhook_row(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": "whk_1",
        "business_id": "biz_1",
        "url": "https://receiver.example.com/hooks",
        "secret": TEST_SECRET,
        "events": ["appointment.created"],
        "enabled": True,
        "description": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def delivery_row(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": "dlv_1",
        "webhook_id": "whk_1",
        "business_id": "biz_1",
        "event_id": "evt_1",
        "event_type": "appointment.created",
        "payload": {"appointment_id": "apt_1"},
        "occurred_at": NOW,
        "status": "pending",
        "attempt_count": 0,
        "manual_retry_count": 0,
        "last_error": None,
        "response_code": None,
        "response_body": None,
        "next_retry_at": None,
        "created_at": NOW,
        "last_attempted_at": None,
        "delivered_at": None,
    }
    row.update(overrides)
    return row


@pytest.fixture
def conn() -> AsyncMock:
    """Mock asyncpg connection."""
    conn = AsyncMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock(return_value=0)
    conn.execute = AsyncMock(return_value="OK")
    return conn


@pytest.fixture
def pool(conn: AsyncMock) -> MagicMock:
    """Mock asyncpg pool whose acquire() yields the mock connection."""
    pool = MagicMock()
    acquired = MagicMock()
    acquired.__aenter__ = AsyncMock(return_value=conn)
    acquired.__aexit__ = AsyncMock(return_value=None)
    pool.acquire.return_value = acquired
    pool.close = AsyncMock()
    return pool


@pytest.fixture
def pg_store(pool: MagicMock) -> PostgresDeliveryStore:
    return PostgresDeliveryStore(pool=pool)


class TestLifecycle:
    """Tests for construction, initialize() and close()."""

    def test_requires_dsn_or_pool(self) -> None:
        with pytest.raises(ConfigurationError):
            PostgresDeliveryStore()

    def test_satisfies_protocol(self, pg_store: PostgresDeliveryStore) -> None:
        assert isinstance(pg_store, DeliveryStore)

    def test_pool_before_initialize(self) -> None:
        store = PostgresDeliveryStore("postgresql://localhost/courier")

        with pytest.raises(StorageError, match="not initialized"):
            _ = store.pool

    @pytest.mark.asyncio
    async def test_initialize_creates_schema(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        await pg_store.initialize()

        conn.execute.assert_awaited_once_with(SCHEMA)

    @pytest.mark.asyncio
    async def test_initialize_from_dsn(self, pool: MagicMock, conn: AsyncMock) -> None:
        store = PostgresDeliveryStore("postgresql://localhost/courier", max_size=4)

        with patch(
            "courier.storage.postgres.asyncpg.create_pool", AsyncMock(return_value=pool)
        ) as create_pool:
            await store.initialize()
            await store.close()

        create_pool.assert_awaited_once_with(
            dsn="postgresql://localhost/courier", min_size=1, max_size=4
        )
        pool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connection_failure(self) -> None:
        store = PostgresDeliveryStore("postgresql://localhost/courier")

        with patch(
            "courier.storage.postgres.asyncpg.create_pool",
            AsyncMock(side_effect=OSError("connection refused")),
        ):
            with pytest.raises(StorageError, match="connection refused"):
                await store.initialize()

    @pytest.mark.asyncio
    async def test_borrowed_pool_not_closed(
        self, pg_store: PostgresDeliveryStore, pool: MagicMock
    ) -> None:
        await pg_store.close()

        pool.close.assert_not_awaited()


class TestWebhookQueries:
    """Tests for webhook SQL and row conversion."""

    @pytest.mark.asyncio
    async def test_create_stores_raw_secret(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        webhook = make_webhook()
        conn.fetchrow.return_value = webhook_row(id=webhook.id)

        created = await pg_store.create_webhook(webhook)

        args = conn.fetchrow.await_args.args
        assert "INSERT INTO webhooks" in args[0]
        assert args[4] == TEST_SECRET
        assert args[5] == ["appointment.created"]
        assert created.id == webhook.id
        assert created.secret.get_secret_value() == TEST_SECRET

    @pytest.mark.asyncio
    async def test_get_missing(self, pg_store: PostgresDeliveryStore, conn: AsyncMock) -> None:
        assert await pg_store.get_webhook("whk_missing") is None

    @pytest.mark.asyncio
    async def test_list_uses_window_count(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        conn.fetch.return_value = [webhook_row(total_count=7)]

        webhooks, total = await pg_store.list_webhooks("biz_1", limit=1, offset=3)

        assert total == 7
        assert [w.id for w in webhooks] == ["whk_1"]
        args = conn.fetch.await_args.args
        assert "COUNT(*) OVER()" in args[0]
        assert args[1:] == ("biz_1", 1, 3)
        conn.fetchval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_list_past_end_counts(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        """An empty page still reports the total."""
        conn.fetchval.return_value = 4

        webhooks, total = await pg_store.list_webhooks("biz_1", offset=50)

        assert webhooks == []
        assert total == 4

    @pytest.mark.asyncio
    async def test_update_builds_set_clause(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        conn.fetchrow.return_value = webhook_row(enabled=False)

        updated = await pg_store.update_webhook("whk_1", enabled=False, url="https://x.example")

        query, *values = conn.fetchrow.await_args.args
        assert "updated_at = $2" in query
        assert "enabled = $3" in query
        assert "url = $4" in query
        assert values[0] == "whk_1"
        assert values[2:] == [False, "https://x.example"]
        assert updated is not None and updated.enabled is False

    @pytest.mark.asyncio
    async def test_update_rejects_secret(self, pg_store: PostgresDeliveryStore) -> None:
        with pytest.raises(ValueError, match="secret"):
            await pg_store.update_webhook("whk_1", secret="whsec_other")

    @pytest.mark.asyncio
    async def test_delete(self, pg_store: PostgresDeliveryStore, conn: AsyncMock) -> None:
        conn.execute.return_value = "DELETE 1"
        assert await pg_store.delete_webhook("whk_1") is True

        conn.execute.return_value = "DELETE 0"
        assert await pg_store.delete_webhook("whk_1") is False

    @pytest.mark.asyncio
    async def test_list_enabled_filters_in_sql(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        conn.fetch.return_value = [webhook_row()]

        webhooks = await pg_store.list_enabled_webhooks("biz_1", "appointment.created")

        query, business_id, event_type = conn.fetch.await_args.args
        assert "enabled" in query
        assert "ANY(events)" in query
        assert (business_id, event_type) == ("biz_1", "appointment.created")
        assert len(webhooks) == 1

    @pytest.mark.asyncio
    async def test_read_retried_on_connection_error(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        conn.fetchrow.side_effect = [ConnectionError("reset by peer"), webhook_row()]

        webhook = await pg_store.get_webhook("whk_1")

        assert webhook is not None
        assert conn.fetchrow.await_count == 2


class TestDeliveryQueries:
    """Tests for delivery SQL and the conditional-update transition."""

    @pytest.mark.asyncio
    async def test_create_delivery(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        webhook = make_webhook()
        event = WebhookEvent.for_appointment_created("biz_1", appointment_id="apt_1")
        conn.fetchrow.side_effect = lambda query, *args: delivery_row(
            id=args[0], webhook_id=args[1], event_id=args[3], payload=args[5]
        )

        delivery = await pg_store.create_delivery(webhook, event)

        args = conn.fetchrow.await_args.args
        assert json.loads(args[6]) == event.payload
        assert args[7] == event.occurred_at
        assert args[8] == "pending"
        assert delivery.event_id == event.id
        assert delivery.payload == event.payload

    @pytest.mark.asyncio
    async def test_transition_conditional_update(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        conn.fetchrow.return_value = delivery_row(
            status="delivering", attempt_count=1, last_attempted_at=NOW
        )

        delivery = await pg_store.transition(
            "dlv_1",
            DeliveryStatus.PENDING,
            DeliveryStatus.DELIVERING,
            DeliveryUpdate(increment_attempts=True, last_attempted_at=NOW),
        )

        query, *values = conn.fetchrow.await_args.args
        assert "WHERE id = $1 AND status = $2" in query
        assert "attempt_count = attempt_count + 1" in query
        assert "manual_retry_count" not in query
        assert "last_attempted_at = $4" in query
        assert "next_retry_at = $5" in query
        assert values == ["dlv_1", "pending", "delivering", NOW, None]
        assert delivery.status is DeliveryStatus.DELIVERING
        assert delivery.attempt_count == 1

    @pytest.mark.asyncio
    async def test_transition_conflict(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        conn.fetchrow.side_effect = [None, {"status": "succeeded"}]

        with pytest.raises(ConflictError) as exc_info:
            await pg_store.transition("dlv_1", DeliveryStatus.PENDING, DeliveryStatus.DELIVERING)

        assert exc_info.value.actual_status == "succeeded"
        assert exc_info.value.expected_status == "pending"

    @pytest.mark.asyncio
    async def test_transition_missing(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        conn.fetchrow.side_effect = [None, None]

        with pytest.raises(NotFoundError):
            await pg_store.transition("dlv_1", DeliveryStatus.PENDING, DeliveryStatus.DELIVERING)

    @pytest.mark.asyncio
    async def test_transition_guards_attempt_count(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        conn.fetchrow.return_value = delivery_row(status="delivering", attempt_count=3)

        await pg_store.transition(
            "dlv_1",
            DeliveryStatus.RETRYING,
            DeliveryStatus.DELIVERING,
            DeliveryUpdate(increment_attempts=True, last_attempted_at=NOW),
            expected_attempts=2,
        )

        query, *values = conn.fetchrow.await_args.args
        assert "WHERE id = $1 AND status = $2 AND attempt_count = $6" in query
        assert values[-1] == 2

    @pytest.mark.asyncio
    async def test_transition_attempt_count_mismatch(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        """Same status but a newer attempt count is still a conflict."""
        conn.fetchrow.side_effect = [None, {"status": "retrying", "attempt_count": 3}]

        with pytest.raises(ConflictError) as exc_info:
            await pg_store.transition(
                "dlv_1",
                DeliveryStatus.RETRYING,
                DeliveryStatus.DELIVERING,
                expected_attempts=2,
            )

        assert exc_info.value.actual_status == "retrying after 3 attempts"
        assert exc_info.value.expected_status == "retrying after 2 attempts"

    @pytest.mark.asyncio
    async def test_transition_to_retrying_needs_time(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        with pytest.raises(ValueError, match="next_retry_at"):
            await pg_store.transition("dlv_1", DeliveryStatus.DELIVERING, DeliveryStatus.RETRYING)

        conn.fetchrow.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_due_for_retry_pages_by_keyset(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        due = NOW - timedelta(minutes=1)
        rows = [
            delivery_row(id=f"dlv_{i}", status="retrying", next_retry_at=due) for i in range(3)
        ]
        conn.fetch.side_effect = [rows[:2], rows[2:]]

        found = [d.id async for d in pg_store.due_for_retry(NOW, batch_size=2)]

        assert found == ["dlv_0", "dlv_1", "dlv_2"]
        first_call, second_call = conn.fetch.await_args_list
        assert first_call.args[1:] == (NOW, 2)
        assert second_call.args[1:] == (NOW, due, "dlv_1", 2)

    @pytest.mark.asyncio
    async def test_json_payload_decoded(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        """JSONB columns read back as text without a codec are decoded."""
        conn.fetchrow.return_value = delivery_row(payload='{"call_id": "call_9"}')

        delivery = await pg_store.get_delivery("dlv_1")

        assert delivery is not None
        assert delivery.payload == {"call_id": "call_9"}

    @pytest.mark.asyncio
    async def test_list_deliveries_status_filter(
        self, pg_store: PostgresDeliveryStore, conn: AsyncMock
    ) -> None:
        conn.fetch.return_value = [delivery_row(status="failed", total_count=1)]

        deliveries, total = await pg_store.list_deliveries(
            "whk_1", status=DeliveryStatus.FAILED, limit=10
        )

        assert total == 1
        assert deliveries[0].status is DeliveryStatus.FAILED
        assert conn.fetch.await_args.args[1:] == ("whk_1", "failed", 10, 0)

    @pytest.mark.asyncio
    async def test_stats(self, pg_store: PostgresDeliveryStore, conn: AsyncMock) -> None:
        conn.fetchrow.return_value = {"total": 10, "succeeded": 6, "failed": 2, "in_progress": 2}

        stats = await pg_store.delivery_stats("whk_1")

        assert stats.total == 10
        assert stats.success_rate == 75.0
