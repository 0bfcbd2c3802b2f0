"""Delivery queue with bounded retry and dead-lettering."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union
import inspect
import logging

from src.logging_config import DeliveryContext, generate_tick_id, log_performance
from src.notifications.config import NotificationConfig, DEFAULT_NOTIFICATION_CONFIG
from src.notifications.models import DeadLetter, QueuedItem

logger = logging.getLogger(__name__)

DeliverFn = Callable[[QueuedItem], Awaitable[Any]]
DeadLetterSink = Callable[[DeadLetter], Union[None, Awaitable[None]]]


@dataclass
class TickReport:
    """What one queue tick did."""

    processed: int = 0
    delivered: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "delivered": self.delivered,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "skipped": self.skipped,
        }


class DeliveryQueue:
    """In-memory queue of notifications awaiting delivery.

    Each tick takes the due items (highest priority first, then oldest),
    up to batch_size, and hands them to the deliver callable one at a time.
    A delivery that raises counts as a failed attempt; once an item has used
    max_attempts it is removed and passed to the dead-letter sink.
    """

    def __init__(
        self,
        deliver: DeliverFn,
        config: Optional[NotificationConfig] = None,
        dead_letter_sink: Optional[DeadLetterSink] = None,
    ):
        self._deliver = deliver
        self.config = config or DEFAULT_NOTIFICATION_CONFIG
        self._dead_letter_sink = dead_letter_sink
        self._items: dict[str, QueuedItem] = {}
        self._dead_letters: list[DeadLetter] = []
        self._ticking = False
        self._stats = {
            "enqueued": 0,
            "delivered": 0,
            "retried": 0,
            "dead_lettered": 0,
            "ticks": 0,
            "skipped_ticks": 0,
        }

    def enqueue(self, item: QueuedItem) -> str:
        """Add an item. Re-enqueueing an existing id is a no-op."""
        if item.item_id in self._items:
            logger.debug("Item %s already queued", item.item_id)
            return item.item_id
        self._items[item.item_id] = item
        self._stats["enqueued"] += 1
        return item.item_id

    def get(self, item_id: str) -> Optional[QueuedItem]:
        return self._items.get(item_id)

    def remove(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None

    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def clear(self) -> int:
        """Drop all queued items. Returns how many were removed."""
        count = len(self._items)
        self._items.clear()
        if count:
            logger.warning("Cleared %d queued notifications", count)
        return count

    def pending_for_user(self, user_id: str) -> list[QueuedItem]:
        return [item for item in self._items.values() if item.user_id == user_id]

    def due_items(self, now: datetime) -> list[QueuedItem]:
        """Due items, highest priority first, then oldest."""
        due = [item for item in self._items.values() if item.is_due(now)]
        return sorted(due, key=lambda item: (-item.priority.rank, item.created_at))

    @property
    def is_ticking(self) -> bool:
        return self._ticking

    @log_performance()
    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Process one batch of due items. Skipped if a tick is already running."""
        if self._ticking:
            self._stats["skipped_ticks"] += 1
            logger.debug("Queue tick already in progress, skipping")
            return TickReport(skipped=True)

        self._ticking = True
        report = TickReport()
        try:
            now = now or datetime.now(timezone.utc)
            batch = self.due_items(now)[:self.config.batch_size]
            with DeliveryContext(loop="queue", tick_id=generate_tick_id()):
                for item in batch:
                    if item.item_id not in self._items:
                        continue  # removed while an earlier item was delivering
                    report.processed += 1
                    with DeliveryContext(user_id=item.user_id, item_id=item.item_id):
                        await self._process(item, now, report)
        finally:
            self._ticking = False
            self._stats["ticks"] += 1

        if report.processed:
            logger.info(
                "Queue tick processed %d: %d delivered, %d retrying, %d dead-lettered",
                report.processed, report.delivered, report.retried, report.dead_lettered,
            )
        return report

    async def _process(self, item: QueuedItem, now: datetime, report: TickReport) -> None:
        try:
            await self._deliver(item)
        except Exception as e:
            item.record_failure(str(e) or type(e).__name__, now, self.config.retry_backoff_seconds)
            if item.is_exhausted:
                await self._dead_letter(item, now)
                report.dead_lettered += 1
            else:
                report.retried += 1
                self._stats["retried"] += 1
                logger.warning(
                    "Delivery attempt %d/%d failed: %s",
                    item.attempts, item.max_attempts, item.last_error,
                    extra={"attempts": item.attempts},
                )
            return

        self._items.pop(item.item_id, None)
        report.delivered += 1
        self._stats["delivered"] += 1

    async def _dead_letter(self, item: QueuedItem, now: datetime) -> None:
        self._items.pop(item.item_id, None)
        dead = DeadLetter.from_item(item, now)
        self._dead_letters.append(dead)
        self._stats["dead_lettered"] += 1
        logger.error(
            "Dead-lettered notification %s for user %s after %d attempts: %s",
            item.item_id, item.user_id, item.attempts, item.last_error,
            extra={"attempts": item.attempts},
        )
        if self._dead_letter_sink is not None:
            try:
                outcome = self._dead_letter_sink(dead)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Failed to persist dead letter %s", item.item_id)

    def get_dead_letters(self) -> list[DeadLetter]:
        return list(self._dead_letters)

    def get_stats(self) -> dict:
        """Get queue statistics."""
        by_priority: dict[str, int] = {}
        for item in self._items.values():
            by_priority[item.priority.value] = by_priority.get(item.priority.value, 0) + 1

        return {
            "size": len(self._items),
            "by_priority": by_priority,
            "dead_letter_count": len(self._dead_letters),
            "is_processing": self._ticking,
            **self._stats,
        }
