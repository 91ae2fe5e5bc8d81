"""Delivery store protocol and shared transition rules.

The store is the single source of truth for webhooks and deliveries and the
only shared mutable resource. Every status change goes through
``transition``, a compare-and-swap on the current status.
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from courier.models import (
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    DeliveryUpdate,
    Webhook,
    WebhookEvent,
)

# Webhook fields a tenant may change after creation (secret is immutable)
UPDATABLE_WEBHOOK_FIELDS = frozenset({"url", "events", "enabled", "description"})


def resolve_transition_fields(
    new_status: DeliveryStatus,
    update: DeliveryUpdate,
) -> dict[str, Any]:
    """Compute the column values a transition writes, besides status and counters.

    Enforces the next_retry_at invariant: it is required when entering
    ``retrying`` and cleared when entering any other status.

    Raises:
        ValueError: If entering ``retrying`` without a next_retry_at.
    """
    fields = update.explicit_fields()
    if new_status is DeliveryStatus.RETRYING:
        if fields.get("next_retry_at") is None:
            raise ValueError("next_retry_at is required when entering 'retrying'")
    else:
        fields["next_retry_at"] = None
    return fields


@runtime_checkable
class DeliveryStore(Protocol):
    """Persistence for webhooks and deliveries."""

    async def initialize(self) -> None:
        """Prepare the backend (connect, create tables)."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...

    # Webhooks

    @abstractmethod
    async def create_webhook(self, webhook: Webhook) -> Webhook: ...

    @abstractmethod
    async def get_webhook(self, webhook_id: str) -> Webhook | None: ...

    @abstractmethod
    async def list_webhooks(
        self, business_id: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[Webhook], int]: ...

    @abstractmethod
    async def update_webhook(self, webhook_id: str, **updates: Any) -> Webhook | None:
        """Apply changes to UPDATABLE_WEBHOOK_FIELDS; returns None if missing."""
        ...

    @abstractmethod
    async def delete_webhook(self, webhook_id: str) -> bool:
        """Delete a webhook. Its deliveries are kept for audit."""
        ...

    @abstractmethod
    async def list_enabled_webhooks(self, business_id: str, event_type: str) -> list[Webhook]:
        """Enabled webhooks of the business subscribed to event_type.

        Disabled or unsubscribed webhooks are silently excluded.
        """
        ...

    # Deliveries

    @abstractmethod
    async def create_delivery(self, webhook: Webhook, event: WebhookEvent) -> Delivery:
        """Insert a new delivery in ``pending`` with zero attempts."""
        ...

    @abstractmethod
    async def transition(
        self,
        delivery_id: str,
        expected_status: DeliveryStatus,
        new_status: DeliveryStatus,
        update: DeliveryUpdate | None = None,
        *,
        expected_attempts: int | None = None,
    ) -> Delivery:
        """Atomically move a delivery from expected_status to new_status.

        When expected_attempts is given the swap also requires the stored
        attempt_count to match, so a snapshot taken before another caller
        attempted and rescheduled the delivery cannot claim it.

        Raises:
            ConflictError: The delivery is not in expected_status, or has a
                different attempt_count than expected_attempts.
            NotFoundError: No delivery has this id.
        """
        ...

    @abstractmethod
    def due_for_retry(self, now: datetime, *, batch_size: int = 100) -> AsyncIterator[Delivery]:
        """Lazily yield ``retrying`` deliveries with next_retry_at <= now.

        Covers all tenants. Each call is a fresh, finite scan.
        """
        ...

    @abstractmethod
    async def stuck_deliveries(self, before: datetime, *, limit: int = 100) -> list[Delivery]:
        """Deliveries abandoned mid-flight before the cutoff.

        Covers ``delivering`` rows whose attempt started before the cutoff and
        ``pending`` rows created before it (lost from a worker queue).
        """
        ...

    @abstractmethod
    async def get_delivery(self, delivery_id: str) -> Delivery | None: ...

    @abstractmethod
    async def list_deliveries(
        self,
        webhook_id: str,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Delivery], int]:
        """Deliveries for a webhook, newest first, with the total count."""
        ...

    @abstractmethod
    async def delivery_stats(self, webhook_id: str) -> DeliveryStats: ...
