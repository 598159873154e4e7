"""Quota-aware delivery queue for LINE pushes."""

import asyncio
import logging
from typing import Optional

from .errors import describe_error, is_transient
from .models import DeliveredCallback, ItemState, QueueItem
from .platforms.base import LineSender
from .quota import QuotaGovernor
from .tasks import BackgroundTasks

logger = logging.getLogger("linecord.queue")


class DeliveryQueue:
    """Bounded priority queue drained one send at a time.

    Items leave in priority order (5 first), FIFO within a priority. A
    drain stops when the quota is spent and only non-important items are
    left; a timer re-runs it after ``quota_backoff`` seconds.

    Usage:
        queue = DeliveryQueue(line_client, quota)
        queue.enqueue("U123", {"type": "text", "text": "hi"}, priority=2)
        await queue.flush()
    """

    def __init__(
        self,
        sender: LineSender,
        quota: QuotaGovernor,
        capacity: int = 50,
        max_attempts: int = 3,
        send_interval: float = 0.1,
        quota_backoff: float = 60,
        auto_drain: bool = True,
        tasks: Optional[BackgroundTasks] = None,
    ):
        self._sender = sender
        self._quota = quota
        self.capacity = capacity
        self.max_attempts = max_attempts
        self.send_interval = send_interval
        self.quota_backoff = quota_backoff
        self.auto_drain = auto_drain
        self._tasks = tasks or BackgroundTasks("queue")

        self._items: list[QueueItem] = []
        # Popped for sending; keeps its slot until the outcome is final.
        self._in_flight: Optional[QueueItem] = None
        self._draining = False
        self._timer: Optional[asyncio.TimerHandle] = None

        self.sent = 0
        self.dropped = 0
        self.retried = 0
        self.rejected = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def draining(self) -> bool:
        return self._draining

    def pending(self) -> list[QueueItem]:
        return list(self._items)

    # ── Enqueue ──────────────────────────────────────────────

    def enqueue(
        self,
        destination: str,
        message: dict,
        priority: int = 3,
        on_delivered: Optional[list[DeliveredCallback]] = None,
    ) -> bool:
        """Add a message for a LINE destination.

        Returns:
            False when the queue is full (nothing is added), True otherwise.
        """
        occupied = len(self._items) + (1 if self._in_flight else 0)
        if occupied >= self.capacity:
            self.rejected += 1
            logger.warning(f"Queue full ({self.capacity}), rejected message for {destination}")
            return False

        item = QueueItem(
            destination=destination,
            payload=message,
            priority=min(5, max(1, int(priority))),
            max_attempts=self.max_attempts,
            on_delivered=list(on_delivered or []),
        )
        self._items.append(item)
        self._items.sort(key=lambda i: i.sort_key)
        logger.debug(
            f"Enqueued #{item.item_id} for {destination} "
            f"(priority {item.priority}, queue size {len(self._items)})"
        )

        if self.auto_drain and not self._draining:
            self._tasks.spawn(self.drain(), label="drain")
        return True

    # ── Drain ────────────────────────────────────────────────

    async def drain(self) -> None:
        """Send queued items until the queue is empty or the quota holds the rest."""
        if self._draining:
            return
        self._draining = True
        self._cancel_timer()
        try:
            while self._items:
                item = self._next_item()
                if item is None:
                    logger.info(
                        f"Quota exhausted, holding {len(self._items)} queued messages; "
                        f"retrying in {self.quota_backoff}s"
                    )
                    self._schedule_retry()
                    break

                admission = self._quota.should_admit(item.payload)
                if not admission.allowed:
                    item.transition(ItemState.DROPPED)
                    self.dropped += 1
                    logger.warning(f"Dropped #{item.item_id} for {item.destination}: {admission.reason}")
                    continue
                if admission.reason:
                    logger.info(f"Sending #{item.item_id} past quota: {admission.reason}")

                item.transition(ItemState.ADMITTED)
                self._in_flight = item
                try:
                    await self._deliver(item)
                finally:
                    self._in_flight = None

                if self.send_interval > 0:
                    await asyncio.sleep(self.send_interval)
        finally:
            self._draining = False

    def _next_item(self) -> Optional[QueueItem]:
        """Pop the next sendable item, or None if the quota holds everything."""
        if self._quota.can_send():
            return self._items.pop(0)
        for idx, item in enumerate(self._items):
            if self._quota.classify(item.payload):
                return self._items.pop(idx)
        return None

    async def _deliver(self, item: QueueItem) -> None:
        item.transition(ItemState.SENDING)
        item.attempt += 1
        try:
            result = await self._sender.push(item.destination, [item.payload])
        except Exception as e:
            item.last_error = describe_error(e)
            if is_transient(e) and item.attempt < item.max_attempts:
                item.transition(ItemState.RETRY)
                self._items.insert(0, item)
                self.retried += 1
                logger.warning(
                    f"Send #{item.item_id} failed ({item.last_error}), "
                    f"retry {item.attempt}/{item.max_attempts}"
                )
            else:
                item.transition(ItemState.DROPPED)
                self.dropped += 1
                logger.error(
                    f"Dropped #{item.item_id} for {item.destination} after "
                    f"{item.attempt} attempt(s): {item.last_error}"
                )
            return

        item.transition(ItemState.SENT)
        self.sent += 1
        self._quota.record_sent()
        logger.info(f"Sent #{item.item_id} to {item.destination}")

        for callback in item.on_delivered:
            try:
                await callback(item, result or {})
            except Exception as e:
                logger.error(f"Delivery callback for #{item.item_id} failed: {e}", exc_info=True)

    # ── Timer ────────────────────────────────────────────────

    def _schedule_retry(self) -> None:
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.quota_backoff, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._tasks.spawn(self.drain(), label="drain-retry")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def retry_scheduled(self) -> bool:
        return self._timer is not None

    # ── Administration ───────────────────────────────────────

    async def flush(self) -> None:
        """Force a drain now, skipping any pending backoff."""
        self._cancel_timer()
        await self.drain()

    def clear(self) -> int:
        """Discard all queued items.

        Returns:
            Number of items discarded.
        """
        count = len(self._items)
        for item in self._items:
            item.transition(ItemState.DROPPED)
        self._items.clear()
        self.dropped += count
        if count:
            logger.warning(f"Cleared {count} queued messages")
        return count

    def close(self) -> None:
        self._cancel_timer()

    def get_status(self) -> dict:
        return {
            "size": len(self._items),
            "in_flight": self._in_flight is not None,
            "capacity": self.capacity,
            "draining": self._draining,
            "retry_scheduled": self.retry_scheduled,
            "sent": self.sent,
            "dropped": self.dropped,
            "retried": self.retried,
            "rejected": self.rejected,
        }
