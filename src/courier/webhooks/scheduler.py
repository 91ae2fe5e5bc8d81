"""Retry scheduler.

A background loop that periodically sweeps the store for ``retrying``
deliveries whose ``next_retry_at`` has passed and feeds them to the
dispatcher's attempt primitive with bounded concurrency.

Each sweep first reclaims deliveries abandoned mid-flight (a crashed worker
leaves rows in ``delivering``; a lost queue leaves rows in ``pending``) by
moving them to ``retrying`` due immediately, or to ``failed`` when their
attempts are already used up.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from courier.exceptions import ConflictError
from courier.logging import get_logger
from courier.models import Delivery, DeliveryStatus, DeliveryUpdate, utc_now

from .dispatcher import WebhookDispatcher
from .policy import truncate

logger = get_logger(__name__)

INTERRUPTED_ERROR = "attempt interrupted"


@dataclass
class SweepResult:
    """Summary of one scheduler sweep."""

    reclaimed: int = 0
    due: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def attempted(self) -> int:
        return self.succeeded + self.retrying + self.failed


class RetryScheduler:
    """Periodically re-attempts due deliveries.

    Example:
        ```python
        scheduler = RetryScheduler(dispatcher, poll_interval=5.0, concurrency=10)
        await scheduler.start()
        ...
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        dispatcher: WebhookDispatcher,
        *,
        poll_interval: float = 5.0,
        concurrency: int = 10,
        batch_size: int = 100,
        stuck_after_seconds: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if stuck_after_seconds <= dispatcher.policy.request_timeout_seconds:
            raise ValueError("stuck_after_seconds must exceed the request timeout")
        self._dispatcher = dispatcher
        self._store = dispatcher.store
        self._poll_interval = poll_interval
        self._concurrency = concurrency
        self._batch_size = batch_size
        self._stuck_after = timedelta(seconds=stuck_after_seconds)
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep loop as a background task."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="courier-retry-scheduler")

    async def stop(self) -> None:
        """Cancel the sweep loop. In-flight attempts of the current sweep are cancelled too."""
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        logger.info(
            "Retry scheduler started",
            poll_interval=self._poll_interval,
            concurrency=self._concurrency,
        )
        while True:
            try:
                result = await self.run_once()
                if result.reclaimed or result.due:
                    logger.info(
                        "Retry sweep complete",
                        reclaimed=result.reclaimed,
                        due=result.due,
                        succeeded=result.succeeded,
                        retrying=result.retrying,
                        failed=result.failed,
                        skipped=result.skipped,
                        errors=result.errors,
                    )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Retry sweep failed")
            await asyncio.sleep(self._poll_interval)

    async def run_once(self) -> SweepResult:
        """Run a single sweep: reclaim abandoned rows, then attempt due retries."""
        now = self._clock()
        result = SweepResult()
        result.reclaimed = await self._reclaim(now)

        semaphore = asyncio.Semaphore(self._concurrency)
        pending: set[asyncio.Task[None]] = set()

        try:
            async for delivery in self._store.due_for_retry(now, batch_size=self._batch_size):
                result.due += 1
                await semaphore.acquire()
                task = asyncio.create_task(self._attempt(delivery, result))
                pending.add(task)
                task.add_done_callback(pending.discard)
                task.add_done_callback(lambda _: semaphore.release())
        except asyncio.CancelledError:
            for task in pending:
                task.cancel()
            raise
        finally:
            # Attempts already started are awaited even if the scan fails
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return result

    async def _attempt(self, delivery: Delivery, result: SweepResult) -> None:
        try:
            outcome = await self._dispatcher.attempt(delivery)
        except Exception:
            result.errors += 1
            logger.exception("Retry attempt failed", delivery_id=delivery.id)
            return

        if outcome is None:
            result.skipped += 1
        elif outcome.status is DeliveryStatus.SUCCEEDED:
            result.succeeded += 1
        elif outcome.status is DeliveryStatus.RETRYING:
            result.retrying += 1
        else:
            result.failed += 1

    async def _reclaim(self, now: datetime) -> int:
        stuck = await self._store.stuck_deliveries(now - self._stuck_after, limit=self._batch_size)
        policy = self._dispatcher.policy
        reclaimed = 0

        for delivery in stuck:
            if delivery.status is DeliveryStatus.DELIVERING:
                if delivery.attempt_count >= policy.max_attempts:
                    summary = f"max attempts exhausted (last error: {INTERRUPTED_ERROR})"
                    new_status = DeliveryStatus.FAILED
                    update = DeliveryUpdate(
                        last_error=truncate(summary, policy.error_summary_max_length)
                    )
                else:
                    new_status = DeliveryStatus.RETRYING
                    update = DeliveryUpdate(last_error=INTERRUPTED_ERROR, next_retry_at=now)
            else:
                new_status = DeliveryStatus.RETRYING
                update = DeliveryUpdate(next_retry_at=now)

            try:
                await self._store.transition(
                    delivery.id,
                    delivery.status,
                    new_status,
                    update,
                    expected_attempts=delivery.attempt_count,
                )
            except ConflictError:
                continue
            reclaimed += 1
            logger.warning(
                "Reclaimed abandoned delivery",
                delivery_id=delivery.id,
                webhook_id=delivery.webhook_id,
                previous_status=delivery.status.value,
                status=new_status.value,
                attempt=delivery.attempt_count,
            )
        return reclaimed


__all__ = ["RetryScheduler", "SweepResult"]
