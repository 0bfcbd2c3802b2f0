"""Unread badge counts and read state."""

from datetime import datetime
from typing import Optional
import logging

from src.notifications.config import NotificationCategory
from src.notifications.history import NotificationHistory
from src.notifications.models import BadgeCounts, Notification

logger = logging.getLogger(__name__)


class BadgeTracker:
    """Per-user unread counts derived from history.

    Counts are cached per user. New deliveries increment a cached entry;
    read-state changes invalidate it so the next read recomputes.
    """

    def __init__(self, history: NotificationHistory):
        self.history = history
        self._cache: dict[str, BadgeCounts] = {}

    def on_notification(self, notification: Notification) -> None:
        """Dispatcher observer: count a newly delivered notification."""
        counts = self._cache.get(notification.user_id)
        if counts is not None and not notification.is_read:
            counts.add(notification.category, notification.priority)

    def get_counts(self, user_id: str) -> BadgeCounts:
        counts = self._cache.get(user_id)
        if counts is None:
            counts = BadgeCounts()
            for notification in self.history.unread(user_id):
                counts.add(notification.category, notification.priority)
            self._cache[user_id] = counts
        return BadgeCounts(
            total=counts.total,
            by_category=dict(counts.by_category),
            by_priority=dict(counts.by_priority),
        )

    def total(self, user_id: str) -> int:
        return self.get_counts(user_id).total

    def invalidate(self, user_id: str) -> None:
        self._cache.pop(user_id, None)

    def invalidate_all(self) -> None:
        self._cache.clear()

    def mark_read(self, user_id: str, notification_id: str, now: Optional[datetime] = None) -> bool:
        changed = self.history.mark_read(user_id, notification_id, now)
        if changed:
            self.invalidate(user_id)
        return changed

    def mark_all_read(self, user_id: str, now: Optional[datetime] = None) -> int:
        count = self.history.mark_all_read(user_id, now=now)
        if count:
            self.invalidate(user_id)
        return count

    def clear_category(self, user_id: str, category: NotificationCategory, now: Optional[datetime] = None) -> int:
        """Mark every unread notification in one category as read."""
        count = self.history.mark_all_read(user_id, category=category, now=now)
        if count:
            self.invalidate(user_id)
            logger.debug("Cleared %d %s badges for user %s", count, category.value, user_id)
        return count
