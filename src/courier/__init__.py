"""Courier: webhook delivery for multi-tenant applications.

Notifies endpoints registered by each business about domain events, with
HMAC-signed requests, retries with exponential backoff, per-delivery state
tracking and manual retry.

Quick Start:
    from courier.models import WebhookEvent
    from courier.webhooks import WebhookService

    async with WebhookService.create() as service:
        webhook = await service.create_webhook(
            business_id="biz_123",
            url="https://example.com/hooks/courier",
            events=["appointment.created"],
        )
        await service.publish(
            WebhookEvent.for_appointment_created("biz_123", appointment_id="apt_1")
        )

Delivery lifecycle:
    pending -> delivering -> succeeded | retrying | failed
"""

__version__ = "0.1.0"

# Configuration
from .config import DeliveryPolicy, Settings

# Exceptions
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    CourierError,
    NotFoundError,
    NotRetryableError,
    StorageError,
    ValidationError,
)

# Logging
from .logging import bind_context, clear_context, configure_logging, get_logger, log_context

# Models
from .models import (
    Delivery,
    DeliveryStats,
    DeliveryStatus,
    DeliveryUpdate,
    Webhook,
    WebhookEvent,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "DeliveryPolicy",
    "Settings",
    # Exceptions
    "CourierError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "NotRetryableError",
    "StorageError",
    "ConfigurationError",
    "AuthenticationError",
    # Logging
    "configure_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    "log_context",
    # Models
    "Delivery",
    "DeliveryStats",
    "DeliveryStatus",
    "DeliveryUpdate",
    "Webhook",
    "WebhookEvent",
]
