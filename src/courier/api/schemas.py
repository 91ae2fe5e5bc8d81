"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from courier.models import Delivery, DeliveryStats, DeliveryStatus, EventType, Webhook


class WebhookCreateRequest(BaseModel):
    """Request body for registering a webhook.

    Attributes:
        url: Endpoint that will receive events.
        events: Event types to subscribe to (at least one).
        description: Optional description.
        enabled: Whether the webhook starts enabled.
    """

    model_config = ConfigDict(extra="forbid")

    url: str = Field(description="Destination URL")
    events: list[str] = Field(description="Event types to subscribe to")
    description: str | None = Field(default=None, max_length=500)
    enabled: bool = True


class WebhookUpdateRequest(BaseModel):
    """Request body for updating a webhook.

    Omitted fields are unchanged. An explicit ``null`` description clears it.
    """

    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    events: list[str] | None = None
    enabled: bool | None = None
    description: str | None = Field(default=None, max_length=500)


class WebhookResponse(BaseModel):
    """A webhook as returned to its owner (secret omitted)."""

    model_config = ConfigDict(extra="forbid")

    id: str
    business_id: str
    url: str
    events: list[str]
    enabled: bool
    description: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_webhook(cls, webhook: Webhook) -> WebhookResponse:
        return cls(
            id=webhook.id,
            business_id=webhook.business_id,
            url=webhook.url,
            events=list(webhook.events),
            enabled=webhook.enabled,
            description=webhook.description,
            created_at=webhook.created_at,
            updated_at=webhook.updated_at,
        )


class WebhookCreatedResponse(WebhookResponse):
    """Response for webhook creation; the only response carrying the secret.

    Attributes:
        secret: Signing secret. Store it now; it is never shown again.
    """

    secret: str

    @classmethod
    def from_webhook(cls, webhook: Webhook) -> WebhookCreatedResponse:
        base = WebhookResponse.from_webhook(webhook)
        return cls(**base.model_dump(), secret=webhook.secret.get_secret_value())


class WebhookListResponse(BaseModel):
    """Paginated list of webhooks."""

    model_config = ConfigDict(extra="forbid")

    webhooks: list[WebhookResponse]
    total: int
    limit: int
    offset: int


class DeliveryResponse(BaseModel):
    """A delivery with its current state."""

    model_config = ConfigDict(extra="forbid")

    id: str
    webhook_id: str
    event_id: str
    event_type: str
    payload: dict[str, Any]
    occurred_at: datetime
    status: DeliveryStatus
    attempt_count: int
    manual_retry_count: int
    last_error: str | None
    response_code: int | None
    response_body: str | None
    next_retry_at: datetime | None
    created_at: datetime
    last_attempted_at: datetime | None
    delivered_at: datetime | None

    @classmethod
    def from_delivery(cls, delivery: Delivery) -> DeliveryResponse:
        return cls(**delivery.model_dump(exclude={"business_id"}))


class DeliveryListResponse(BaseModel):
    """Paginated list of deliveries, newest first."""

    model_config = ConfigDict(extra="forbid")

    deliveries: list[DeliveryResponse]
    total: int
    limit: int
    offset: int


class RetryResponse(BaseModel):
    """Result of a manual retry.

    Attributes:
        delivery: Delivery after the retry.
        attempted: False if the delivery was already being handled elsewhere.
    """

    model_config = ConfigDict(extra="forbid")

    delivery: DeliveryResponse
    attempted: bool


class WebhookStatsResponse(BaseModel):
    """Delivery statistics for one webhook."""

    model_config = ConfigDict(extra="forbid")

    webhook_id: str
    total: int
    succeeded: int
    failed: int
    in_progress: int
    success_rate: float = Field(description="Percent of finished deliveries that succeeded")

    @classmethod
    def from_stats(cls, webhook_id: str, stats: DeliveryStats) -> WebhookStatsResponse:
        return cls(
            webhook_id=webhook_id,
            total=stats.total,
            succeeded=stats.succeeded,
            failed=stats.failed,
            in_progress=stats.in_progress,
            success_rate=stats.success_rate,
        )


class PublishEventRequest(BaseModel):
    """Request body for publishing a domain event.

    Attributes:
        event_type: Event type tag.
        payload: Event-specific data.
        event_id: Optional producer-assigned event ID.
        occurred_at: Optional time the event happened.
    """

    model_config = ConfigDict(extra="forbid")

    event_type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    event_id: str | None = Field(default=None, min_length=1)
    occurred_at: datetime | None = None


class PublishEventResponse(BaseModel):
    """Deliveries created for a published event."""

    model_config = ConfigDict(extra="forbid")

    event_id: str
    delivery_ids: list[str]


class HealthResponse(BaseModel):
    """Response for health check endpoint.

    Attributes:
        status: Service status (healthy, unhealthy).
        version: API version.
        storage_connected: Whether the store is available.
        dispatcher_running: Whether dispatch workers are running.
        scheduler_running: Whether the retry scheduler is running.
    """

    model_config = ConfigDict(extra="forbid")

    status: Literal["healthy", "degraded", "unhealthy"]
    version: str
    storage_connected: bool
    dispatcher_running: bool = False
    scheduler_running: bool = False
