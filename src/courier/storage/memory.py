"""In-process delivery store.

Used when no database is configured (development, tests, single-process
deployments). Rows are held as validated pydantic models and copied on the
way in and out so callers never share mutable state with the store.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

from courier.exceptions import ConflictError, NotFoundError
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

logger = get_logger(__name__)


def _stalled_since(delivery: Delivery) -> datetime:
    """When a pending or delivering row last made progress (datetime.max otherwise)."""
    if delivery.status is DeliveryStatus.DELIVERING and delivery.last_attempted_at is not None:
        return delivery.last_attempted_at
    if delivery.status is DeliveryStatus.PENDING:
        return delivery.created_at
    return datetime.max.replace(tzinfo=UTC)


class InMemoryDeliveryStore:
    """DeliveryStore backed by dictionaries.

    A single asyncio.Lock guards every mutation; ``transition`` checks and
    swaps the status inside it, so exactly one of several concurrent callers
    targeting the same delivery wins.
    """

    def __init__(self) -> None:
        self._webhooks: dict[str, Webhook] = {}
        self._deliveries: dict[str, Delivery] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        logger.debug("In-memory delivery store ready")

    async def close(self) -> None:
        return None

    # Webhooks

    async def create_webhook(self, webhook: Webhook) -> Webhook:
        async with self._lock:
            self._webhooks[webhook.id] = webhook.model_copy(deep=True)
        return webhook.model_copy(deep=True)

    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        webhook = self._webhooks.get(webhook_id)
        return webhook.model_copy(deep=True) if webhook else None

    async def list_webhooks(
        self, business_id: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[Webhook], int]:
        owned = sorted(
            (w for w in self._webhooks.values() if w.business_id == business_id),
            key=lambda w: w.created_at,
            reverse=True,
        )
        page = owned[offset : offset + limit]
        return [w.model_copy(deep=True) for w in page], len(owned)

    async def update_webhook(self, webhook_id: str, **updates: Any) -> Webhook | None:
        unknown = set(updates) - UPDATABLE_WEBHOOK_FIELDS
        if unknown:
            raise ValueError(f"Cannot update webhook fields: {sorted(unknown)}")

        async with self._lock:
            current = self._webhooks.get(webhook_id)
            if current is None:
                return None
            updated = Webhook.model_validate(
                {**current.model_dump(), **updates, "updated_at": utc_now()}
            )
            self._webhooks[webhook_id] = updated
        return updated.model_copy(deep=True)

    async def delete_webhook(self, webhook_id: str) -> bool:
        async with self._lock:
            return self._webhooks.pop(webhook_id, None) is not None

    async def list_enabled_webhooks(self, business_id: str, event_type: str) -> list[Webhook]:
        return [
            w.model_copy(deep=True)
            for w in sorted(self._webhooks.values(), key=lambda w: w.created_at)
            if w.business_id == business_id and w.subscribes_to(event_type)
        ]

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
        async with self._lock:
            self._deliveries[delivery.id] = delivery
        return delivery.model_copy(deep=True)

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

        async with self._lock:
            current = self._deliveries.get(delivery_id)
            if current is None:
                raise NotFoundError("delivery", delivery_id)
            if current.status is not expected_status:
                raise ConflictError(delivery_id, expected_status.value, current.status.value)
            if expected_attempts is not None and current.attempt_count != expected_attempts:
                raise ConflictError(
                    delivery_id,
                    f"{expected_status.value} after {expected_attempts} attempts",
                    f"{current.status.value} after {current.attempt_count} attempts",
                )

            fields["status"] = new_status
            if update.increment_attempts:
                fields["attempt_count"] = current.attempt_count + 1
            if update.increment_manual_retries:
                fields["manual_retry_count"] = current.manual_retry_count + 1

            swapped = current.model_copy(update=fields)
            self._deliveries[delivery_id] = swapped
        return swapped.model_copy(deep=True)

    async def due_for_retry(
        self, now: datetime, *, batch_size: int = 100
    ) -> AsyncIterator[Delivery]:
        due = sorted(
            (
                d
                for d in self._deliveries.values()
                if d.status is DeliveryStatus.RETRYING
                and d.next_retry_at is not None
                and d.next_retry_at <= now
            ),
            key=lambda d: (d.next_retry_at, d.id),
        )
        for index, delivery in enumerate(due):
            yield delivery.model_copy(deep=True)
            if (index + 1) % batch_size == 0:
                await asyncio.sleep(0)

    async def stuck_deliveries(
        self, before: datetime, *, limit: int = 100
    ) -> list[Delivery]:
        stuck = [d for d in self._deliveries.values() if _stalled_since(d) < before]
        stuck.sort(key=_stalled_since)
        return [d.model_copy(deep=True) for d in stuck[:limit]]

    async def get_delivery(self, delivery_id: str) -> Delivery | None:
        delivery = self._deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def list_deliveries(
        self,
        webhook_id: str,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Delivery], int]:
        matching = sorted(
            (
                d
                for d in self._deliveries.values()
                if d.webhook_id == webhook_id and (status is None or d.status is status)
            ),
            key=lambda d: d.created_at,
            reverse=True,
        )
        page = matching[offset : offset + limit]
        return [d.model_copy(deep=True) for d in page], len(matching)

    async def delivery_stats(self, webhook_id: str) -> DeliveryStats:
        stats = DeliveryStats()
        for delivery in self._deliveries.values():
            if delivery.webhook_id != webhook_id:
                continue
            stats.total += 1
            if delivery.status is DeliveryStatus.SUCCEEDED:
                stats.succeeded += 1
            elif delivery.status is DeliveryStatus.FAILED:
                stats.failed += 1
            else:
                stats.in_progress += 1
        return stats
