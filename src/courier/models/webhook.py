"""Webhook subscription and event models.

A Webhook is a tenant-owned endpoint subscribed to a set of event types.
A WebhookEvent is the transient notification a producer hands to the
dispatcher; it is never persisted on its own.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from .base import generate_id, utc_now

# Event types producers may emit
EventType = Literal[
    "call.started",
    "call.ended",
    "appointment.created",
    "appointment.updated",
    "appointment.cancelled",
    "message.taken",
    "lead.captured",
    "payment.collected",
    "webhook.test",
]

# Event types a tenant may subscribe to ("webhook.test" is sent on demand only)
SUBSCRIBABLE_EVENT_TYPES: list[EventType] = [
    "call.started",
    "call.ended",
    "appointment.created",
    "appointment.updated",
    "appointment.cancelled",
    "message.taken",
    "lead.captured",
    "payment.collected",
]


class Webhook(BaseModel):
    """A registered webhook endpoint.

    The secret is generated once at creation and never changes. It is held
    as a SecretStr so it stays masked in reprs, logs and JSON dumps; only the
    signer and the store read the raw value.

    Attributes:
        id: Unique identifier for this webhook.
        business_id: Business (tenant) that owns the webhook.
        url: Endpoint receiving POSTed events.
        secret: Shared HMAC secret.
        events: Subscribed event types.
        enabled: Whether new events are delivered.
        description: Optional human-readable description.
        created_at: When the webhook was registered.
        updated_at: When the webhook was last modified.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    business_id: str = Field(min_length=1, description="Owning business")
    url: str = Field(min_length=1, description="Destination URL")
    secret: SecretStr = Field(description="Shared secret for HMAC-SHA256 signatures")
    events: list[EventType] = Field(min_length=1, description="Subscribed event types")
    enabled: bool = Field(default=True, description="Whether webhook is active")
    description: str | None = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this webhook is enabled and subscribed to the event type."""
        return self.enabled and event_type in self.events


class WebhookEvent(BaseModel):
    """A domain event supplied by a producer.

    Attributes:
        id: Unique identifier for this event, repeated in every delivery.
        business_id: Business the event belongs to.
        event_type: Event type tag.
        payload: Event-specific data.
        occurred_at: When the event happened.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("evt"))
    business_id: str = Field(min_length=1)
    event_type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def for_appointment_created(
        cls,
        business_id: str,
        appointment_id: str,
        scheduled_at: str | None = None,
        **details: Any,
    ) -> "WebhookEvent":
        """Create event for a newly booked appointment."""
        return cls(
            business_id=business_id,
            event_type="appointment.created",
            payload={"appointment_id": appointment_id, "scheduled_at": scheduled_at, **details},
        )

    @classmethod
    def for_appointment_updated(
        cls,
        business_id: str,
        appointment_id: str,
        changes: list[str] | dict[str, Any] | None = None,
        **details: Any,
    ) -> "WebhookEvent":
        """Create event for a rescheduled or edited appointment."""
        return cls(
            business_id=business_id,
            event_type="appointment.updated",
            payload={"appointment_id": appointment_id, "changes": changes, **details},
        )

    @classmethod
    def for_appointment_cancelled(
        cls,
        business_id: str,
        appointment_id: str,
        reason: str | None = None,
        **details: Any,
    ) -> "WebhookEvent":
        return cls(
            business_id=business_id,
            event_type="appointment.cancelled",
            payload={"appointment_id": appointment_id, "reason": reason, **details},
        )

    @classmethod
    def for_call_started(
        cls,
        business_id: str,
        call_id: str,
        caller_number: str | None = None,
        started_at: str | None = None,
        **details: Any,
    ) -> "WebhookEvent":
        """Create event for an inbound call that was just answered."""
        return cls(
            business_id=business_id,
            event_type="call.started",
            payload={
                "call_id": call_id,
                "caller_number": caller_number,
                "started_at": started_at,
                **details,
            },
        )

    @classmethod
    def for_call_ended(
        cls,
        business_id: str,
        call_id: str,
        duration_seconds: int | None = None,
        outcome: str | None = None,
        **details: Any,
    ) -> "WebhookEvent":
        """Create event for a completed call."""
        return cls(
            business_id=business_id,
            event_type="call.ended",
            payload={
                "call_id": call_id,
                "duration_seconds": duration_seconds,
                "outcome": outcome,
                **details,
            },
        )

    @classmethod
    def for_message_taken(
        cls,
        business_id: str,
        caller_phone: str,
        message: str,
        urgency: Literal["low", "medium", "high"] = "medium",
        **details: Any,
    ) -> "WebhookEvent":
        """Create event for a message left by a caller."""
        return cls(
            business_id=business_id,
            event_type="message.taken",
            payload={
                "caller_phone": caller_phone,
                "message": message,
                "urgency": urgency,
                **details,
            },
        )

    @classmethod
    def for_lead_captured(
        cls,
        business_id: str,
        phone: str,
        source: str,
        name: str | None = None,
        **details: Any,
    ) -> "WebhookEvent":
        """Create event for a new sales lead."""
        return cls(
            business_id=business_id,
            event_type="lead.captured",
            payload={"name": name, "phone": phone, "source": source, **details},
        )

    @classmethod
    def for_payment_collected(
        cls,
        business_id: str,
        amount: int,
        currency: str,
        **details: Any,
    ) -> "WebhookEvent":
        """Create event for a settled payment (amount in minor units)."""
        return cls(
            business_id=business_id,
            event_type="payment.collected",
            payload={"amount": amount, "currency": currency, **details},
        )

    @classmethod
    def for_test(cls, business_id: str) -> "WebhookEvent":
        """Create the sample event sent by the "send test" action."""
        return cls(
            business_id=business_id,
            event_type="webhook.test",
            payload={"test": True, "message": "This is a test webhook delivery"},
        )


__all__ = [
    "SUBSCRIBABLE_EVENT_TYPES",
    "EventType",
    "Webhook",
    "WebhookEvent",
]
