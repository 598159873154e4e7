"""Merge bursts of text messages into one LINE push.

Each LINE push costs one unit of monthly quota regardless of length, so
text going to the same destination within a short window is joined with
newlines and sent once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .delivery import DeliveryQueue
from .models import DeliveredCallback

logger = logging.getLogger("linecord.batching")

# LINE text message limit.
MAX_TEXT_LENGTH = 5000


@dataclass
class _Batch:
    texts: list[str] = field(default_factory=list)
    priority: int = 1
    callbacks: list[DeliveredCallback] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def length(self) -> int:
        return sum(len(t) for t in self.texts) + max(0, len(self.texts) - 1)


class MessageBatcher:
    """Per-destination text batching in front of the DeliveryQueue."""

    def __init__(self, queue: DeliveryQueue, window_seconds: float = 120, max_batch_size: int = 10):
        self._queue = queue
        self.window = window_seconds
        self.max_batch_size = max_batch_size
        self._batches: dict[str, _Batch] = {}
        self.merged = 0

    def add(
        self,
        destination: str,
        message: dict,
        priority: int = 2,
        on_delivered: Optional[list[DeliveredCallback]] = None,
    ) -> bool:
        """Accept a message for a LINE destination.

        Text is held until the window elapses or the batch is full. Any
        other type flushes the pending batch first and is enqueued at once.

        Returns:
            False if the queue rejected an enqueue made by this call.
        """
        callbacks = list(on_delivered or [])
        if message.get("type") != "text" or self.window <= 0:
            flushed = self.flush(destination)
            return self._queue.enqueue(destination, message, priority, callbacks) and flushed

        text = message.get("text") or ""
        batch = self._batches.get(destination)
        accepted = True
        if batch and batch.length + 1 + len(text) > MAX_TEXT_LENGTH:
            accepted = self.flush(destination)
            batch = None

        if batch is None:
            batch = _Batch()
            self._batches[destination] = batch
            batch.timer = self._start_timer(destination)

        batch.texts.append(text)
        batch.priority = max(batch.priority, priority)
        batch.callbacks.extend(callbacks)
        logger.debug(f"Batched text for {destination} ({len(batch.texts)}/{self.max_batch_size})")

        if len(batch.texts) >= self.max_batch_size:
            accepted = self.flush(destination) and accepted
        return accepted

    def flush(self, destination: str) -> bool:
        """Enqueue the pending batch for a destination, if any.

        Returns:
            False if the queue rejected the merged message.
        """
        batch = self._batches.pop(destination, None)
        if batch is None:
            return True
        if batch.timer is not None:
            batch.timer.cancel()

        merged = {"type": "text", "text": "\n".join(batch.texts)}
        if len(batch.texts) > 1:
            self.merged += len(batch.texts) - 1
            logger.info(f"Merged {len(batch.texts)} messages for {destination} into one")
        accepted = self._queue.enqueue(destination, merged, batch.priority, batch.callbacks)
        if not accepted:
            logger.warning(f"Queue rejected batch of {len(batch.texts)} messages for {destination}")
        return accepted

    def flush_all(self) -> int:
        destinations = list(self._batches)
        for destination in destinations:
            self.flush(destination)
        return len(destinations)

    def _start_timer(self, destination: str) -> Optional[asyncio.TimerHandle]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: batch waits for an explicit flush.
            return None
        return loop.call_later(self.window, self.flush, destination)

    def get_status(self) -> dict:
        return {
            "pending_destinations": len(self._batches),
            "pending_messages": sum(len(b.texts) for b in self._batches.values()),
            "merged": self.merged,
            "window_seconds": self.window,
        }

    def close(self) -> None:
        """Flush everything and stop timers."""
        self.flush_all()
