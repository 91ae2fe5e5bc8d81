"""Delivery records and their state machine vocabulary.

    pending --> delivering --> succeeded
                    |  ^
                    v  |
                 retrying --> (delivering) ... --> failed

Only ``transition`` in the store changes a delivery's status; the models here
describe rows and the field updates that accompany a transition.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utc_now


class DeliveryStatus(str, Enum):
    """Lifecycle status of a delivery."""

    PENDING = "pending"  # Created, not attempted since (re-)entering the machine
    DELIVERING = "delivering"  # HTTP attempt in flight
    SUCCEEDED = "succeeded"  # Terminal
    RETRYING = "retrying"  # Waiting for next_retry_at
    FAILED = "failed"  # Terminal unless manually retried

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.SUCCEEDED, DeliveryStatus.FAILED)


# Statuses the attempt primitive may claim a delivery from
ATTEMPTABLE_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.RETRYING})

# Statuses a tenant may manually retry from
MANUALLY_RETRYABLE_STATUSES = frozenset({DeliveryStatus.FAILED, DeliveryStatus.RETRYING})


class Delivery(BaseModel):
    """One notification of one event to one webhook.

    Attributes:
        id: Unique identifier, sent to receivers for idempotency.
        webhook_id: Webhook the event is delivered to.
        business_id: Owning business (kept after the webhook is deleted).
        event_id: ID of the originating event.
        event_type: Event type tag.
        payload: Event payload.
        occurred_at: When the originating event happened.
        status: Current status.
        attempt_count: HTTP attempts made so far.
        manual_retry_count: Times a tenant re-opened this delivery from failed.
        last_error: Bounded summary of the most recent failure.
        response_code: HTTP status of the most recent response, if any.
        response_body: Truncated body of the most recent response.
        next_retry_at: When the scheduler may retry (only while retrying).
        created_at: When the delivery was created.
        last_attempted_at: When the most recent attempt started.
        delivered_at: When a 2xx response was received.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    webhook_id: str
    business_id: str
    event_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    manual_retry_count: int = Field(default=0, ge=0)
    last_error: str | None = None
    response_code: int | None = None
    response_body: str | None = None
    next_retry_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    last_attempted_at: datetime | None = None
    delivered_at: datetime | None = None


class DeliveryUpdate(BaseModel):
    """Field changes applied together with a status transition.

    Only fields explicitly set are written, so ``DeliveryUpdate(last_error=None)``
    clears the error while ``DeliveryUpdate()`` leaves it untouched.
    ``next_retry_at`` is the exception: the store clears it whenever the new
    status is not ``retrying``.
    """

    model_config = ConfigDict(extra="forbid")

    increment_attempts: bool = False
    increment_manual_retries: bool = False
    last_error: str | None = None
    response_code: int | None = None
    response_body: str | None = None
    next_retry_at: datetime | None = None
    last_attempted_at: datetime | None = None
    delivered_at: datetime | None = None

    def explicit_fields(self) -> dict[str, Any]:
        """Column values the caller explicitly set (counters excluded)."""
        counters = {"increment_attempts", "increment_manual_retries"}
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name not in counters
        }


class DeliveryStats(BaseModel):
    """Aggregate delivery counts for one webhook."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    in_progress: int = Field(default=0, description="pending + delivering + retrying")

    @property
    def success_rate(self) -> float:
        """Percentage of finished deliveries that succeeded (100.0 when none)."""
        finished = self.succeeded + self.failed
        if finished == 0:
            return 100.0
        return round(self.succeeded / finished * 100, 1)


__all__ = [
    "ATTEMPTABLE_STATUSES",
    "MANUALLY_RETRYABLE_STATUSES",
    "Delivery",
    "DeliveryStats",
    "DeliveryStatus",
    "DeliveryUpdate",
]
