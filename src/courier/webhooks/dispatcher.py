"""Webhook dispatch and the delivery attempt primitive.

``dispatch`` fans an event out to every enabled, subscribed webhook of the
business, creating one ``pending`` Delivery per webhook and handing each to
a bounded in-process queue drained by worker tasks.

``attempt`` is the single entry point through which every HTTP request is
made, whether the delivery came from the dispatch queue, the retry
scheduler or a manual retry. It claims the delivery with a compare-and-swap
to ``delivering`` (incrementing the attempt count in the same step), sends
one signed request, and records the outcome with a second compare-and-swap:

- 2xx: ``succeeded``
- 4xx other than 408/429: ``failed`` immediately
- anything else, or no response: ``retrying`` with backoff, or ``failed``
  once the policy's max attempts are used

A delivery whose webhook was deleted is failed without a request. One whose
webhook is disabled is held in ``retrying`` without using an attempt.
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from courier.config import DeliveryPolicy
from courier.exceptions import ConflictError
from courier.logging import get_logger, log_context
from courier.models import (
    ATTEMPTABLE_STATUSES,
    Delivery,
    DeliveryStatus,
    DeliveryUpdate,
    Webhook,
    WebhookEvent,
    utc_now,
)
from courier.storage import DeliveryStore

from .policy import Outcome, backoff_seconds, classify_status, truncate
from .signing import sign
from .transport import USER_AGENT, HttpTransport, TransportError, TransportResponse

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Courier-Signature"
TIMESTAMP_HEADER = "X-Courier-Timestamp"
EVENT_HEADER = "X-Courier-Event"
DELIVERY_ID_HEADER = "X-Courier-Delivery-Id"
ATTEMPT_HEADER = "X-Courier-Attempt"

WEBHOOK_DISABLED_ERROR = "webhook disabled"


def build_envelope(delivery: Delivery) -> dict[str, Any]:
    """JSON document POSTed to the receiver.

    Built only from the stored delivery, so every attempt of the same
    delivery sends the same document.
    """
    return {
        "id": delivery.event_id,
        "event": delivery.event_type,
        "business_id": delivery.business_id,
        "occurred_at": delivery.occurred_at.isoformat(),
        "delivery_id": delivery.id,
        "data": delivery.payload,
    }


def encode_envelope(delivery: Delivery) -> bytes:
    """Serialize the envelope to the exact bytes that are signed and sent."""
    return json.dumps(
        build_envelope(delivery),
        separators=(",", ":"),
        sort_keys=True,
        default=str,
    ).encode("utf-8")


class WebhookDispatcher:
    """Fans events out to webhooks and runs delivery attempts.

    Example:
        ```python
        dispatcher = WebhookDispatcher(store, HttpxTransport(), policy)
        await dispatcher.start()

        deliveries = await dispatcher.dispatch(event)

        await dispatcher.stop()
        ```

    Without ``start()`` no workers run and ``dispatch`` attempts each
    delivery inline before returning.
    """

    def __init__(
        self,
        store: DeliveryStore,
        transport: HttpTransport,
        policy: DeliveryPolicy | None = None,
        *,
        queue_size: int = 1000,
        workers: int = 4,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: Delivery store.
            transport: Outbound HTTP transport.
            policy: Retry/backoff/timeout policy.
            queue_size: Capacity of the dispatch queue.
            workers: Number of worker tasks started by ``start()``.
            clock: Returns the current UTC time.
            rng: Random source for backoff jitter.
        """
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._store = store
        self._transport = transport
        self._policy = policy or DeliveryPolicy()
        self._queue_size = queue_size
        self._worker_count = workers
        self._clock = clock
        self._rng = rng or random.Random()
        self._queue: asyncio.Queue[Delivery] | None = None
        self._workers: list[asyncio.Task[None]] = []

    @property
    def policy(self) -> DeliveryPolicy:
        return self._policy

    @property
    def store(self) -> DeliveryStore:
        return self._store

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def queued(self) -> int:
        """Deliveries waiting in the dispatch queue."""
        return self._queue.qsize() if self._queue is not None else 0

    # Lifecycle

    async def start(self) -> None:
        """Start the worker tasks draining the dispatch queue."""
        if self._workers:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._workers = [
            asyncio.create_task(self._work(index), name=f"courier-dispatch-{index}")
            for index in range(self._worker_count)
        ]
        logger.info(
            "Dispatcher started",
            workers=self._worker_count,
            queue_size=self._queue_size,
        )

    async def stop(self, *, drain: bool = True, timeout: float | None = 30.0) -> None:
        """Stop the workers.

        Args:
            drain: Wait for queued deliveries to be attempted first.
            timeout: Maximum seconds to wait for the drain. Deliveries left
                in the queue stay ``pending`` and are reclaimed by the
                scheduler.
        """
        if not self._workers:
            return
        queue = self._queue
        if drain and queue is not None:
            try:
                await asyncio.wait_for(queue.join(), timeout=timeout)
            except TimeoutError:
                logger.warning(
                    "Dispatch queue not drained before shutdown",
                    remaining=queue.qsize(),
                )

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        logger.info("Dispatcher stopped")

    async def _work(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            delivery = await queue.get()
            try:
                await self.attempt(delivery)
            except Exception:
                # Storage failure: the row stays where it was and is reclaimed later
                logger.exception(
                    "Dispatch worker attempt failed",
                    worker=index,
                    delivery_id=delivery.id,
                )
            finally:
                queue.task_done()

    # Dispatch

    async def dispatch(self, event: WebhookEvent) -> list[Delivery]:
        """Create and schedule one delivery per matching webhook.

        Disabled webhooks and webhooks not subscribed to the event type are
        skipped. When workers are running this returns as soon as the
        deliveries are queued; it never waits on receivers.

        Returns:
            The created deliveries (as created, before any attempt).
        """
        webhooks = await self._store.list_enabled_webhooks(event.business_id, event.event_type)
        if not webhooks:
            logger.debug(
                "No webhooks subscribed to event",
                event_type=event.event_type,
                business_id=event.business_id,
            )
            return []

        deliveries = []
        for webhook in webhooks:
            delivery = await self._store.create_delivery(webhook, event)
            deliveries.append(delivery)
            await self._submit(delivery)

        logger.info(
            "Event dispatched",
            event_id=event.id,
            event_type=event.event_type,
            business_id=event.business_id,
            deliveries=len(deliveries),
        )
        return deliveries

    async def send_to(self, webhook: Webhook, event: WebhookEvent) -> Delivery:
        """Deliver an event to one specific webhook, attempting inline.

        Used for test sends, which target a webhook regardless of its
        subscriptions.
        """
        delivery = await self._store.create_delivery(webhook, event)
        result = await self.attempt(delivery)
        if result is not None:
            return result
        current = await self._store.get_delivery(delivery.id)
        return current or delivery

    async def _submit(self, delivery: Delivery) -> None:
        if self._queue is None:
            await self.attempt(delivery)
            return
        try:
            self._queue.put_nowait(delivery)
        except asyncio.QueueFull:
            await self._park(delivery)

    async def _park(self, delivery: Delivery) -> None:
        """Hand a delivery to the retry scheduler when the queue is full."""
        try:
            await self._store.transition(
                delivery.id,
                DeliveryStatus.PENDING,
                DeliveryStatus.RETRYING,
                DeliveryUpdate(next_retry_at=self._clock()),
            )
        except ConflictError:
            return
        logger.warning(
            "Dispatch queue full, delivery parked for scheduler",
            delivery_id=delivery.id,
            webhook_id=delivery.webhook_id,
        )

    # Attempt primitive

    async def attempt(self, delivery: Delivery) -> Delivery | None:
        """Make one delivery attempt.

        Args:
            delivery: Delivery as last read; its status is the expected
                status of the claim.

        Returns:
            The delivery after the attempt's outcome was recorded, or None if
            another caller owns the delivery (nothing was sent).
        """
        if delivery.status not in ATTEMPTABLE_STATUSES:
            logger.debug(
                "Delivery not attemptable",
                delivery_id=delivery.id,
                status=delivery.status.value,
            )
            return None

        webhook = await self._store.get_webhook(delivery.webhook_id)
        if webhook is None:
            return await self._finish(
                delivery,
                delivery.status,
                DeliveryStatus.FAILED,
                DeliveryUpdate(last_error="webhook deleted"),
                expected_attempts=delivery.attempt_count,
            )
        if not webhook.enabled:
            return await self._defer(delivery)

        if delivery.attempt_count >= self._policy.max_attempts:
            return await self._finish(
                delivery,
                delivery.status,
                DeliveryStatus.FAILED,
                DeliveryUpdate(last_error=self._exhausted(delivery.last_error)),
                expected_attempts=delivery.attempt_count,
            )

        try:
            claimed = await self._store.transition(
                delivery.id,
                delivery.status,
                DeliveryStatus.DELIVERING,
                DeliveryUpdate(increment_attempts=True, last_attempted_at=self._clock()),
                expected_attempts=delivery.attempt_count,
            )
        except ConflictError as e:
            logger.debug(
                "Delivery claimed by another caller",
                delivery_id=delivery.id,
                expected=e.expected_status,
                actual=e.actual_status,
            )
            return None

        with log_context(
            delivery_id=claimed.id,
            webhook_id=webhook.id,
            attempt=claimed.attempt_count,
        ):
            return await self._send(webhook, claimed)

    async def _send(self, webhook: Webhook, delivery: Delivery) -> Delivery | None:
        body = encode_envelope(delivery)
        timestamp = int(self._clock().timestamp())
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            SIGNATURE_HEADER: sign(webhook.secret.get_secret_value(), timestamp, body),
            TIMESTAMP_HEADER: str(timestamp),
            EVENT_HEADER: delivery.event_type,
            DELIVERY_ID_HEADER: delivery.id,
            ATTEMPT_HEADER: str(delivery.attempt_count),
        }
        timeout = self._policy.request_timeout_seconds

        response: TransportResponse | None = None
        try:
            response = await asyncio.wait_for(
                self._transport.post(webhook.url, body, headers, timeout),
                timeout=timeout,
            )
        except TimeoutError:
            error = f"Request timeout after {timeout:g}s"
        except TransportError as e:
            error = str(e) or type(e).__name__
        except Exception as e:
            logger.exception("Unexpected transport error", delivery_id=delivery.id)
            error = f"Unexpected error: {e}"

        if response is None:
            return await self._retry_or_fail(delivery, error, None, None)

        response_body = truncate(response.body, self._policy.response_body_max_length) or None
        outcome = classify_status(response.status_code)

        if outcome is Outcome.SUCCESS:
            return await self._finish(
                delivery,
                DeliveryStatus.DELIVERING,
                DeliveryStatus.SUCCEEDED,
                DeliveryUpdate(
                    delivered_at=self._clock(),
                    response_code=response.status_code,
                    response_body=response_body,
                    last_error=None,
                ),
            )

        error = f"HTTP {response.status_code}"
        if response.body:
            error = f"{error}: {response.body[:200]}"

        if outcome is Outcome.PERMANENT:
            return await self._finish(
                delivery,
                DeliveryStatus.DELIVERING,
                DeliveryStatus.FAILED,
                DeliveryUpdate(
                    last_error=truncate(error, self._policy.error_summary_max_length),
                    response_code=response.status_code,
                    response_body=response_body,
                ),
            )

        return await self._retry_or_fail(delivery, error, response.status_code, response_body)

    async def _retry_or_fail(
        self,
        delivery: Delivery,
        error: str,
        response_code: int | None,
        response_body: str | None,
    ) -> Delivery | None:
        if delivery.attempt_count >= self._policy.max_attempts:
            update = DeliveryUpdate(
                last_error=self._exhausted(error),
                response_code=response_code,
                response_body=response_body,
            )
            return await self._finish(
                delivery, DeliveryStatus.DELIVERING, DeliveryStatus.FAILED, update
            )

        delay = backoff_seconds(delivery.attempt_count, self._policy, self._rng)
        update = DeliveryUpdate(
            last_error=truncate(error, self._policy.error_summary_max_length),
            response_code=response_code,
            response_body=response_body,
            next_retry_at=self._clock() + timedelta(seconds=delay),
        )
        return await self._finish(
            delivery, DeliveryStatus.DELIVERING, DeliveryStatus.RETRYING, update
        )

    async def _finish(
        self,
        delivery: Delivery,
        expected: DeliveryStatus,
        new_status: DeliveryStatus,
        update: DeliveryUpdate,
        *,
        expected_attempts: int | None = None,
    ) -> Delivery | None:
        try:
            result = await self._store.transition(
                delivery.id, expected, new_status, update, expected_attempts=expected_attempts
            )
        except ConflictError as e:
            # A reclaimed attempt finishing late; the reclaimer owns the row now
            logger.warning(
                "Delivery outcome discarded",
                delivery_id=delivery.id,
                expected=e.expected_status,
                actual=e.actual_status,
                outcome=new_status.value,
            )
            return None

        log = logger.info if new_status is not DeliveryStatus.FAILED else logger.warning
        log(
            "Delivery attempt recorded",
            delivery_id=result.id,
            webhook_id=result.webhook_id,
            attempt=result.attempt_count,
            status=result.status.value,
            response_code=result.response_code,
            next_retry_at=result.next_retry_at.isoformat() if result.next_retry_at else None,
            error=result.last_error if new_status is not DeliveryStatus.SUCCEEDED else None,
        )
        return result

    async def _defer(self, delivery: Delivery) -> Delivery | None:
        """Hold a delivery of a disabled webhook in ``retrying`` without sending.

        The row keeps its attempt count and is re-checked after the backoff
        cap, so re-enabling the webhook resumes delivery.
        """
        next_retry_at = self._clock() + timedelta(seconds=self._policy.backoff_max_seconds)
        try:
            deferred = await self._store.transition(
                delivery.id,
                delivery.status,
                DeliveryStatus.RETRYING,
                DeliveryUpdate(last_error=WEBHOOK_DISABLED_ERROR, next_retry_at=next_retry_at),
                expected_attempts=delivery.attempt_count,
            )
        except ConflictError:
            return None
        logger.info(
            "Delivery deferred, webhook disabled",
            delivery_id=deferred.id,
            webhook_id=deferred.webhook_id,
            next_retry_at=next_retry_at.isoformat(),
        )
        return deferred

    def _exhausted(self, error: str | None) -> str:
        summary = f"max attempts exhausted (last error: {error or 'unknown'})"
        return truncate(summary, self._policy.error_summary_max_length) or summary


__all__ = [
    "ATTEMPT_HEADER",
    "DELIVERY_ID_HEADER",
    "EVENT_HEADER",
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "WebhookDispatcher",
    "build_envelope",
    "encode_envelope",
]
