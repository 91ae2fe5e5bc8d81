"""Tenant-facing webhook service.

Wires the store, dispatcher, retry scheduler and manual retry handler
together and exposes the operations the API layer needs. Every read and
write is scoped to a business; resources owned by another business are
reported as not found.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import SecretStr

from courier.config import Settings
from courier.exceptions import NotFoundError, ValidationError
from courier.logging import get_logger
from courier.models import (
    SUBSCRIBABLE_EVENT_TYPES,
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    Webhook,
    WebhookEvent,
)
from courier.storage import UPDATABLE_WEBHOOK_FIELDS, DeliveryStore, create_store

from .dispatcher import WebhookDispatcher
from .manual import ManualRetryHandler, ManualRetryResult
from .scheduler import RetryScheduler
from .signing import generate_secret
from .transport import HttpTransport, HttpxTransport
from .urls import validate_webhook_url

logger = get_logger(__name__)


def normalize_events(events: list[str]) -> list[str]:
    """Validate and de-duplicate subscribed event types, keeping order.

    Raises:
        ValidationError: If the list is empty or names an unknown event type.
    """
    unknown = [event for event in events if event not in SUBSCRIBABLE_EVENT_TYPES]
    if unknown:
        raise ValidationError("events", f"Unknown event types: {', '.join(sorted(set(unknown)))}")
    normalized = list(dict.fromkeys(events))
    if not normalized:
        raise ValidationError("events", "At least one event type is required")
    return normalized


@dataclass
class WebhookService:
    """High-level webhook service.

    Example:
        ```python
        async with WebhookService.create() as service:
            webhook = await service.create_webhook(
                "biz_123", "https://example.com/hooks", ["appointment.created"]
            )
            await service.publish(
                WebhookEvent.for_appointment_created("biz_123", "apt_1")
            )
        ```

    Attributes:
        store: Delivery store.
        dispatcher: Dispatcher owning the attempt primitive.
        scheduler: Background retry scheduler.
        settings: Configuration settings.
        transport: Outbound HTTP transport (closed with the service).
    """

    store: DeliveryStore
    dispatcher: WebhookDispatcher
    scheduler: RetryScheduler
    settings: Settings
    transport: HttpTransport
    retries: ManualRetryHandler = field(init=False)

    def __post_init__(self) -> None:
        self.retries = ManualRetryHandler(self.dispatcher)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        store: DeliveryStore | None = None,
        transport: HttpTransport | None = None,
    ) -> WebhookService:
        """Create a WebhookService with default dependencies.

        Args:
            settings: Optional settings. Uses defaults if None.
            store: Override the store selected by settings.
            transport: Override the httpx transport.
        """
        if settings is None:
            settings = Settings()

        store = store or create_store(settings)
        transport = transport or HttpxTransport()
        dispatcher = WebhookDispatcher(
            store,
            transport,
            settings.delivery,
            queue_size=settings.dispatch_queue_size,
            workers=settings.dispatch_workers,
        )
        scheduler = RetryScheduler(
            dispatcher,
            poll_interval=settings.retry_poll_interval_seconds,
            concurrency=settings.retry_concurrency,
            batch_size=settings.retry_batch_size,
            stuck_after_seconds=settings.stuck_after_seconds,
        )
        return cls(
            store=store,
            dispatcher=dispatcher,
            scheduler=scheduler,
            settings=settings,
            transport=transport,
        )

    async def initialize(self, *, start_background: bool = True) -> None:
        """Initialize storage and optionally start dispatch workers and the scheduler."""
        await self.store.initialize()
        if start_background:
            await self.dispatcher.start()
            await self.scheduler.start()

    async def close(self) -> None:
        """Stop background work and release resources."""
        await self.scheduler.stop()
        await self.dispatcher.stop()
        await self.transport.aclose()
        await self.store.close()

    async def __aenter__(self) -> WebhookService:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Webhooks

    async def create_webhook(
        self,
        business_id: str,
        url: str,
        events: list[str],
        *,
        description: str | None = None,
        enabled: bool = True,
    ) -> Webhook:
        """Register a webhook with a freshly generated secret.

        The returned model is the only time the secret is handed out.

        Raises:
            ValidationError: If the URL or event list is rejected.
        """
        webhook = Webhook(
            business_id=business_id,
            url=self._validate_url(url),
            secret=SecretStr(generate_secret()),
            events=normalize_events(events),
            enabled=enabled,
            description=description,
        )
        created = await self.store.create_webhook(webhook)
        logger.info(
            "Webhook created",
            webhook_id=created.id,
            business_id=business_id,
            events=created.events,
        )
        return created

    async def get_webhook(self, business_id: str, webhook_id: str) -> Webhook:
        """Get a webhook owned by the business.

        Raises:
            NotFoundError: If missing or owned by another business.
        """
        webhook = await self.store.get_webhook(webhook_id)
        if webhook is None or webhook.business_id != business_id:
            raise NotFoundError("webhook", webhook_id)
        return webhook

    async def list_webhooks(
        self, business_id: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[Webhook], int]:
        return await self.store.list_webhooks(business_id, limit=limit, offset=offset)

    async def update_webhook(
        self,
        business_id: str,
        webhook_id: str,
        **changes: Any,
    ) -> Webhook:
        """Change a webhook's URL, events, enabled flag or description.

        Only the fields passed are changed. ``description=None`` clears the
        description; ``None`` for the other fields leaves them unchanged.
        Disabling a webhook leaves its existing deliveries untouched; it only
        stops matching new events.

        Raises:
            ValidationError: Unknown field, invalid URL or unknown event type.
        """
        unknown = set(changes) - UPDATABLE_WEBHOOK_FIELDS
        if unknown:
            field_name = sorted(unknown)[0]
            raise ValidationError(field_name, "Field cannot be updated")
        await self.get_webhook(business_id, webhook_id)

        updates: dict[str, Any] = {}
        if changes.get("url") is not None:
            updates["url"] = self._validate_url(changes["url"])
        if changes.get("events") is not None:
            updates["events"] = normalize_events(changes["events"])
        if changes.get("enabled") is not None:
            updates["enabled"] = changes["enabled"]
        if "description" in changes:
            updates["description"] = changes["description"]

        updated = await self.store.update_webhook(webhook_id, **updates)
        if updated is None:
            raise NotFoundError("webhook", webhook_id)
        logger.info("Webhook updated", webhook_id=webhook_id, fields=sorted(updates))
        return updated

    async def delete_webhook(self, business_id: str, webhook_id: str) -> None:
        """Delete a webhook. Its delivery history is kept."""
        await self.get_webhook(business_id, webhook_id)
        if not await self.store.delete_webhook(webhook_id):
            raise NotFoundError("webhook", webhook_id)
        logger.info("Webhook deleted", webhook_id=webhook_id, business_id=business_id)

    # Deliveries

    async def list_deliveries(
        self,
        business_id: str,
        webhook_id: str,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Delivery], int]:
        await self.get_webhook(business_id, webhook_id)
        return await self.store.list_deliveries(
            webhook_id, status=status, limit=limit, offset=offset
        )

    async def get_delivery(self, business_id: str, webhook_id: str, delivery_id: str) -> Delivery:
        await self.get_webhook(business_id, webhook_id)
        delivery = await self.store.get_delivery(delivery_id)
        if delivery is None or delivery.webhook_id != webhook_id:
            raise NotFoundError("delivery", delivery_id)
        return delivery

    async def get_stats(self, business_id: str, webhook_id: str) -> DeliveryStats:
        await self.get_webhook(business_id, webhook_id)
        return await self.store.delivery_stats(webhook_id)

    async def retry_delivery(
        self, business_id: str, webhook_id: str, delivery_id: str
    ) -> ManualRetryResult:
        """Manually retry a delivery (see ManualRetryHandler)."""
        return await self.retries.retry(business_id, webhook_id, delivery_id)

    async def send_test(self, business_id: str, webhook_id: str) -> Delivery:
        """Send a ``webhook.test`` event to one webhook and wait for the first attempt.

        Raises:
            NotFoundError: If the webhook is missing or foreign.
            ValidationError: If the webhook is disabled.
        """
        webhook = await self.get_webhook(business_id, webhook_id)
        if not webhook.enabled:
            raise ValidationError("enabled", "Cannot send a test to a disabled webhook")
        return await self.dispatcher.send_to(webhook, WebhookEvent.for_test(business_id))

    async def publish(self, event: WebhookEvent) -> list[Delivery]:
        """Dispatch a domain event to the business's subscribed webhooks."""
        return await self.dispatcher.dispatch(event)

    def _validate_url(self, url: str) -> str:
        return validate_webhook_url(
            url,
            require_https=self.settings.is_https_required,
            allow_private_hosts=self.settings.allow_private_hosts,
        )


__all__ = ["WebhookService", "normalize_events"]
