"""Webhook delivery system for Courier.

Provides HMAC-signed webhook delivery with a compare-and-swap guarded
state machine, exponential backoff with jitter, a background retry
scheduler and tenant-triggered manual retries.

Example:
    ```python
    from courier.webhooks import WebhookService

    async with WebhookService.create() as service:
        await service.publish(event)
    ```
"""

from .dispatcher import WebhookDispatcher, build_envelope, encode_envelope
from .manual import ManualRetryHandler, ManualRetryResult
from .policy import Outcome, backoff_seconds, classify_status
from .scheduler import RetryScheduler, SweepResult
from .service import WebhookService
from .signing import generate_secret, sign, verify
from .transport import HttpTransport, HttpxTransport, TransportError, TransportResponse
from .urls import validate_webhook_url

__all__ = [
    "HttpTransport",
    "HttpxTransport",
    "ManualRetryHandler",
    "ManualRetryResult",
    "Outcome",
    "RetryScheduler",
    "SweepResult",
    "TransportError",
    "TransportResponse",
    "WebhookDispatcher",
    "WebhookService",
    "backoff_seconds",
    "build_envelope",
    "classify_status",
    "encode_envelope",
    "generate_secret",
    "sign",
    "validate_webhook_url",
    "verify",
]
