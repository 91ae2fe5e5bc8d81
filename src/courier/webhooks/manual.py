"""Tenant-triggered retry of a single delivery."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from courier.exceptions import ConflictError, NotFoundError, NotRetryableError
from courier.logging import get_logger
from courier.models import (
    MANUALLY_RETRYABLE_STATUSES,
    Delivery,
    DeliveryStatus,
    DeliveryUpdate,
    utc_now,
)

from .dispatcher import WebhookDispatcher

logger = get_logger(__name__)


@dataclass(frozen=True)
class ManualRetryResult:
    """Outcome of a manual retry request.

    Attributes:
        delivery: The delivery as stored after the request.
        attempted: False if another caller was already handling the delivery
            and no request was sent on behalf of this one.
    """

    delivery: Delivery
    attempted: bool


class ManualRetryHandler:
    """Re-attempts a ``failed`` or ``retrying`` delivery immediately.

    The attempt goes through the dispatcher's attempt primitive, bypassing
    ``next_retry_at`` but not the max-attempts ceiling: a delivery that has
    already used every attempt is rejected rather than given extra ones.
    A ``failed`` delivery is re-opened as ``retrying`` due now (counted in
    ``manual_retry_count``) before the attempt.
    """

    def __init__(
        self,
        dispatcher: WebhookDispatcher,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._dispatcher = dispatcher
        self._store = dispatcher.store
        self._clock = clock

    async def retry(self, business_id: str, webhook_id: str, delivery_id: str) -> ManualRetryResult:
        """Retry a delivery owned by the business.

        Raises:
            NotFoundError: Webhook or delivery missing or owned by another business.
            NotRetryableError: The delivery's status or attempt count does not allow it.
        """
        webhook = await self._store.get_webhook(webhook_id)
        if webhook is None or webhook.business_id != business_id:
            raise NotFoundError("webhook", webhook_id)

        delivery = await self._store.get_delivery(delivery_id)
        if delivery is None or delivery.webhook_id != webhook_id:
            raise NotFoundError("delivery", delivery_id)

        if delivery.status not in MANUALLY_RETRYABLE_STATUSES:
            raise NotRetryableError(delivery_id, delivery.status.value)

        max_attempts = self._dispatcher.policy.max_attempts
        if delivery.attempt_count >= max_attempts:
            raise NotRetryableError(
                delivery_id,
                delivery.status.value,
                f"delivery {delivery_id} has used all {max_attempts} attempts",
            )
        if not webhook.enabled:
            raise NotRetryableError(
                delivery_id,
                delivery.status.value,
                f"webhook {webhook_id} is disabled",
            )

        if delivery.status is DeliveryStatus.FAILED:
            try:
                delivery = await self._store.transition(
                    delivery_id,
                    DeliveryStatus.FAILED,
                    DeliveryStatus.RETRYING,
                    DeliveryUpdate(increment_manual_retries=True, next_retry_at=self._clock()),
                )
            except ConflictError:
                return await self._not_attempted(delivery)
            logger.info(
                "Failed delivery reopened",
                delivery_id=delivery_id,
                business_id=business_id,
                manual_retry_count=delivery.manual_retry_count,
            )

        outcome = await self._dispatcher.attempt(delivery)
        if outcome is None:
            return await self._not_attempted(delivery)
        return ManualRetryResult(delivery=outcome, attempted=True)

    async def _not_attempted(self, delivery: Delivery) -> ManualRetryResult:
        logger.info("Manual retry skipped, delivery already in progress", delivery_id=delivery.id)
        current = await self._store.get_delivery(delivery.id)
        return ManualRetryResult(delivery=current or delivery, attempted=False)


__all__ = ["ManualRetryHandler", "ManualRetryResult"]
