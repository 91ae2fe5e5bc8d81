"""PostgreSQL delivery store using asyncpg.

Status changes are single conditional UPDATE statements
(``WHERE id = $1 AND status = $2``), so the compare-and-swap holds across
any number of processes sharing the database.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from datetime import datetime
from typing import Any

import asyncpg

from courier.exceptions import ConfigurationError, ConflictError, NotFoundError, StorageError
from courier.logging import get_logger
from courier.models import (
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    DeliveryUpdate,
    Webhook,
    WebhookEvent,
    utc_now,
)

from .base import UPDATABLE_WEBHOOK_FIELDS, resolve_transition_fields
from .retry import db_read_retry

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS webhooks (
    id TEXT PRIMARY KEY,
    business_id TEXT NOT NULL,
    url TEXT NOT NULL,
    secret TEXT NOT NULL,
    events TEXT[] NOT NULL,
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    description TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_webhooks_business
    ON webhooks (business_id, created_at DESC);

CREATE TABLE IF NOT EXISTS webhook_deliveries (
    id TEXT PRIMARY KEY,
    webhook_id TEXT NOT NULL,
    business_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload JSONB NOT NULL,
    occurred_at TIMESTAMPTZ NOT NULL,
    status TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    manual_retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    response_code INTEGER,
    response_body TEXT,
    next_retry_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    last_attempted_at TIMESTAMPTZ,
    delivered_at TIMESTAMPTZ,
    CONSTRAINT webhook_deliveries_status_check CHECK (
        status IN ('pending', 'delivering', 'succeeded', 'retrying', 'failed')
    ),
    CONSTRAINT webhook_deliveries_next_retry_check CHECK (
        (status = 'retrying') = (next_retry_at IS NOT NULL)
    )
);

CREATE INDEX IF NOT EXISTS idx_webhook_deliveries_webhook
    ON webhook_deliveries (webhook_id, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_webhook_deliveries_due
    ON webhook_deliveries (next_retry_at, id)
    WHERE status = 'retrying';

CREATE INDEX IF NOT EXISTS idx_webhook_deliveries_delivering
    ON webhook_deliveries (last_attempted_at)
    WHERE status = 'delivering';

CREATE INDEX IF NOT EXISTS idx_webhook_deliveries_pending
    ON webhook_deliveries (created_at)
    WHERE status = 'pending';
"""


def _webhook_from_row(row: Mapping[str, Any]) -> Webhook:
    data = dict(row)
    data["events"] = list(data["events"])
    return Webhook.model_validate(data)


def _delivery_from_row(row: Mapping[str, Any]) -> Delivery:
    data = dict(row)
    payload = data.get("payload")
    if isinstance(payload, str):
        data["payload"] = json.loads(payload)
    return Delivery.model_validate(data)


class PostgresDeliveryStore:
    """DeliveryStore backed by PostgreSQL.

    Either pass an existing pool or a DSN; with a DSN the pool is created
    in ``initialize`` and closed in ``close``.
    """

    def __init__(
        self,
        dsn: str | None = None,
        *,
        pool: asyncpg.Pool | None = None,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        if dsn is None and pool is None:
            raise ConfigurationError("PostgresDeliveryStore needs a dsn or a pool")
        self._dsn = dsn
        self._pool = pool
        self._owns_pool = pool is None
        self._min_size = min_size
        self._max_size = max_size

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StorageError("Store not initialized. Call initialize() first.")
        return self._pool

    async def initialize(self) -> None:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self._dsn,
                    min_size=self._min_size,
                    max_size=self._max_size,
                )
            except (OSError, asyncpg.PostgresError) as e:
                raise StorageError(f"Could not connect to database: {e}") from e
        await self._execute(SCHEMA)
        logger.info("PostgreSQL delivery store ready")

    async def close(self) -> None:
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
            self._pool = None

    # Query helpers

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        async with self.pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _execute(self, query: str, *args: Any) -> str:
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    # Webhooks

    async def create_webhook(self, webhook: Webhook) -> Webhook:
        row = await self._fetchrow(
            """
            INSERT INTO webhooks (
                id, business_id, url, secret, events, enabled,
                description, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
            """,
            webhook.id,
            webhook.business_id,
            webhook.url,
            webhook.secret.get_secret_value(),
            list(webhook.events),
            webhook.enabled,
            webhook.description,
            webhook.created_at,
            webhook.updated_at,
        )
        assert row is not None
        return _webhook_from_row(row)

    @db_read_retry
    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        row = await self._fetchrow("SELECT * FROM webhooks WHERE id = $1", webhook_id)
        return _webhook_from_row(row) if row else None

    @db_read_retry
    async def list_webhooks(
        self, business_id: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[Webhook], int]:
        rows = await self._fetch(
            """
            SELECT *, COUNT(*) OVER() AS total_count
            FROM webhooks
            WHERE business_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2 OFFSET $3
            """,
            business_id,
            limit,
            offset,
        )
        if not rows:
            total = await self._count(
                "SELECT COUNT(*) FROM webhooks WHERE business_id = $1", business_id
            )
            return [], total
        total = rows[0]["total_count"]
        webhooks = []
        for row in rows:
            data = dict(row)
            data.pop("total_count", None)
            webhooks.append(_webhook_from_row(data))
        return webhooks, total

    async def update_webhook(self, webhook_id: str, **updates: Any) -> Webhook | None:
        unknown = set(updates) - UPDATABLE_WEBHOOK_FIELDS
        if unknown:
            raise ValueError(f"Cannot update webhook fields: {sorted(unknown)}")
        if "events" in updates:
            updates["events"] = list(updates["events"])

        assignments = ["updated_at = $2"]
        values: list[Any] = [webhook_id, utc_now()]
        for column in sorted(updates):
            values.append(updates[column])
            assignments.append(f"{column} = ${len(values)}")

        row = await self._fetchrow(
            f"UPDATE webhooks SET {', '.join(assignments)} WHERE id = $1 RETURNING *",
            *values,
        )
        return _webhook_from_row(row) if row else None

    async def delete_webhook(self, webhook_id: str) -> bool:
        result = await self._execute("DELETE FROM webhooks WHERE id = $1", webhook_id)
        return result.endswith(" 1")

    @db_read_retry
    async def list_enabled_webhooks(self, business_id: str, event_type: str) -> list[Webhook]:
        rows = await self._fetch(
            """
            SELECT * FROM webhooks
            WHERE business_id = $1 AND enabled AND $2 = ANY(events)
            ORDER BY created_at, id
            """,
            business_id,
            event_type,
        )
        return [_webhook_from_row(row) for row in rows]

    # Deliveries

    async def create_delivery(self, webhook: Webhook, event: WebhookEvent) -> Delivery:
        delivery = Delivery(
            webhook_id=webhook.id,
            business_id=webhook.business_id,
            event_id=event.id,
            event_type=event.event_type,
            payload=event.payload,
            occurred_at=event.occurred_at,
        )
        row = await self._fetchrow(
            """
            INSERT INTO webhook_deliveries (
                id, webhook_id, business_id, event_id, event_type,
                payload, occurred_at, status, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9)
            RETURNING *
            """,
            delivery.id,
            delivery.webhook_id,
            delivery.business_id,
            delivery.event_id,
            delivery.event_type,
            json.dumps(delivery.payload, default=str),
            delivery.occurred_at,
            delivery.status.value,
            delivery.created_at,
        )
        assert row is not None
        return _delivery_from_row(row)

    async def transition(
        self,
        delivery_id: str,
        expected_status: DeliveryStatus,
        new_status: DeliveryStatus,
        update: DeliveryUpdate | None = None,
        *,
        expected_attempts: int | None = None,
    ) -> Delivery:
        update = update or DeliveryUpdate()
        fields = resolve_transition_fields(new_status, update)

        assignments = ["status = $3"]
        values: list[Any] = [delivery_id, expected_status.value, new_status.value]
        for column in sorted(fields):
            values.append(fields[column])
            assignments.append(f"{column} = ${len(values)}")
        if update.increment_attempts:
            assignments.append("attempt_count = attempt_count + 1")
        if update.increment_manual_retries:
            assignments.append("manual_retry_count = manual_retry_count + 1")

        conditions = ["id = $1", "status = $2"]
        if expected_attempts is not None:
            values.append(expected_attempts)
            conditions.append(f"attempt_count = ${len(values)}")

        row = await self._fetchrow(
            f"""
            UPDATE webhook_deliveries
            SET {', '.join(assignments)}
            WHERE {' AND '.join(conditions)}
            RETURNING *
            """,
            *values,
        )
        if row is not None:
            return _delivery_from_row(row)

        current = await self._fetchrow(
            "SELECT status, attempt_count FROM webhook_deliveries WHERE id = $1", delivery_id
        )
        if current is None:
            raise NotFoundError("delivery", delivery_id)
        if expected_attempts is not None and current["status"] == expected_status.value:
            raise ConflictError(
                delivery_id,
                f"{expected_status.value} after {expected_attempts} attempts",
                f"{current['status']} after {current['attempt_count']} attempts",
            )
        raise ConflictError(delivery_id, expected_status.value, current["status"])

    async def due_for_retry(
        self, now: datetime, *, batch_size: int = 100
    ) -> AsyncIterator[Delivery]:
        cursor: tuple[datetime, str] | None = None
        while True:
            rows = await self._due_page(now, cursor, batch_size)
            for row in rows:
                yield _delivery_from_row(row)
            if len(rows) < batch_size:
                return
            last = rows[-1]
            cursor = (last["next_retry_at"], last["id"])

    @db_read_retry
    async def _due_page(
        self, now: datetime, cursor: tuple[datetime, str] | None, batch_size: int
    ) -> list[asyncpg.Record]:
        if cursor is None:
            return await self._fetch(
                """
                SELECT * FROM webhook_deliveries
                WHERE status = 'retrying' AND next_retry_at <= $1
                ORDER BY next_retry_at, id
                LIMIT $2
                """,
                now,
                batch_size,
            )
        return await self._fetch(
            """
            SELECT * FROM webhook_deliveries
            WHERE status = 'retrying' AND next_retry_at <= $1
              AND (next_retry_at, id) > ($2, $3)
            ORDER BY next_retry_at, id
            LIMIT $4
            """,
            now,
            cursor[0],
            cursor[1],
            batch_size,
        )

    @db_read_retry
    async def stuck_deliveries(
        self, before: datetime, *, limit: int = 100
    ) -> list[Delivery]:
        rows = await self._fetch(
            """
            SELECT * FROM webhook_deliveries
            WHERE (status = 'delivering' AND last_attempted_at < $1)
               OR (status = 'pending' AND created_at < $1)
            ORDER BY CASE WHEN status = 'delivering' THEN last_attempted_at ELSE created_at END
            LIMIT $2
            """,
            before,
            limit,
        )
        return [_delivery_from_row(row) for row in rows]

    @db_read_retry
    async def get_delivery(self, delivery_id: str) -> Delivery | None:
        row = await self._fetchrow("SELECT * FROM webhook_deliveries WHERE id = $1", delivery_id)
        return _delivery_from_row(row) if row else None

    @db_read_retry
    async def list_deliveries(
        self,
        webhook_id: str,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Delivery], int]:
        status_value = status.value if status else None
        rows = await self._fetch(
            """
            SELECT *, COUNT(*) OVER() AS total_count
            FROM webhook_deliveries
            WHERE webhook_id = $1 AND ($2::text IS NULL OR status = $2)
            ORDER BY created_at DESC, id DESC
            LIMIT $3 OFFSET $4
            """,
            webhook_id,
            status_value,
            limit,
            offset,
        )
        if not rows:
            total = await self._count(
                """
                SELECT COUNT(*) FROM webhook_deliveries
                WHERE webhook_id = $1 AND ($2::text IS NULL OR status = $2)
                """,
                webhook_id,
                status_value,
            )
            return [], total
        total = rows[0]["total_count"]
        deliveries = []
        for row in rows:
            data = dict(row)
            data.pop("total_count", None)
            deliveries.append(_delivery_from_row(data))
        return deliveries, total

    @db_read_retry
    async def delivery_stats(self, webhook_id: str) -> DeliveryStats:
        row = await self._fetchrow(
            """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE status = 'succeeded') AS succeeded,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                COUNT(*) FILTER (
                    WHERE status IN ('pending', 'delivering', 'retrying')
                ) AS in_progress
            FROM webhook_deliveries
            WHERE webhook_id = $1
            """,
            webhook_id,
        )
        if row is None:
            return DeliveryStats()
        return DeliveryStats(**dict(row))

    async def _count(self, query: str, *args: Any) -> int:
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(query, *args)
        return int(value or 0)
