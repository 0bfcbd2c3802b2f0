"""Notification history (the user's inbox)."""

from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from src.notifications.config import NotificationCategory
from src.notifications.models import Notification
from src.notifications.store import NotificationStore, InMemoryStore, NOTIFICATIONS

logger = logging.getLogger(__name__)


class NotificationHistory:
    """Append-only record of delivered notifications with read state."""

    def __init__(self, store: Optional[NotificationStore] = None):
        self.store = store or InMemoryStore()

    def append(self, notification: Notification) -> Notification:
        self.store.put(
            NOTIFICATIONS,
            notification.notification_id,
            notification.to_dict(),
            user_id=notification.user_id,
        )
        return notification

    def get(self, user_id: str, notification_id: str) -> Optional[Notification]:
        """Get a notification if it belongs to user_id."""
        doc = self.store.get(NOTIFICATIONS, notification_id)
        if not doc or doc["user_id"] != user_id:
            return None
        return Notification.from_dict(doc)

    def all_for_user(self, user_id: str) -> list[Notification]:
        """All notifications for a user, newest first."""
        notifications = [Notification.from_dict(d) for d in self.store.query_by_user(NOTIFICATIONS, user_id)]
        return sorted(notifications, key=lambda n: n.created_at, reverse=True)

    def unread(self, user_id: str, category: Optional[NotificationCategory] = None) -> list[Notification]:
        items = [n for n in self.all_for_user(user_id) if not n.is_read]
        if category is not None:
            items = [n for n in items if n.category == category]
        return items

    def list(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
        category: Optional[NotificationCategory] = None,
    ):
        """Page through a user's history, newest first."""
        if unread_only:
            items = self.unread(user_id, category)
        else:
            items = self.all_for_user(user_id)
            if category is not None:
                items = [n for n in items if n.category == category]
        return items[offset:offset + limit]

    def mark_read(self, user_id: str, notification_id: str, now: Optional[datetime] = None) -> bool:
        """Mark one notification read. Returns False if unknown or already read."""
        notification = self.get(user_id, notification_id)
        if notification is None or not notification.mark_read(now):
            return False
        self.append(notification)
        return True

    def mark_all_read(
        self,
        user_id: str,
        category: Optional[NotificationCategory] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Mark all unread notifications read. Returns how many changed."""
        now = now or datetime.now(timezone.utc)
        count = 0
        for notification in self.unread(user_id, category):
            notification.mark_read(now)
            self.append(notification)
            count += 1
        return count

    def delete(self, user_id: str, notification_id: str) -> bool:
        if self.get(user_id, notification_id) is None:
            return False
        return self.store.delete(NOTIFICATIONS, notification_id)

    def cleanup_older_than(self, days: int, now: Optional[datetime] = None) -> int:
        """Delete notifications created more than `days` ago."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        stale = self.store.query(NOTIFICATIONS, lambda d: datetime.fromisoformat(d["created_at"]) < cutoff)
        for doc in stale:
            self.store.delete(NOTIFICATIONS, doc["notification_id"])
        if stale:
            logger.info("Removed %d notifications older than %d days", len(stale), days)
        return len(stale)

    def is_template_referenced(self, template_id: str) -> bool:
        return bool(self.store.query(NOTIFICATIONS, lambda d: d.get("template_id") == template_id))
