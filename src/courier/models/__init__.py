"""Data models for Courier.

Persisted:
    - Webhook: tenant-owned subscription endpoint
    - Delivery: one event delivered to one webhook, with its state

Transient:
    - WebhookEvent: what a producer hands to the dispatcher
    - DeliveryUpdate: field changes that travel with a status transition
"""

from .base import generate_id, utc_now
from .delivery import (
    ATTEMPTABLE_STATUSES,
    MANUALLY_RETRYABLE_STATUSES,
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    DeliveryUpdate,
)
from .webhook import SUBSCRIBABLE_EVENT_TYPES, EventType, Webhook, WebhookEvent

__all__ = [
    "ATTEMPTABLE_STATUSES",
    "MANUALLY_RETRYABLE_STATUSES",
    "SUBSCRIBABLE_EVENT_TYPES",
    "Delivery",
    "DeliveryStats",
    "DeliveryStatus",
    "DeliveryUpdate",
    "EventType",
    "Webhook",
    "WebhookEvent",
    "generate_id",
    "utc_now",
]
