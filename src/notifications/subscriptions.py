"""Subscription registration and lifecycle."""

from datetime import datetime, timedelta, timezone
from typing import Optional
import hashlib
import logging

from src.notifications.config import Platform, NotificationConfig, DEFAULT_NOTIFICATION_CONFIG
from src.notifications.errors import ValidationError, NotFoundError
from src.notifications.models import Subscription
from src.notifications.store import NotificationStore, InMemoryStore, SUBSCRIPTIONS

logger = logging.getLogger(__name__)

# Checked in order; first substring match wins
_DEVICE_PATTERNS = (
    ("iPhone", "iPhone"),
    ("iPad", "iPad"),
    ("Android", "Android"),
    ("Mac", "Mac"),
    ("Windows", "Windows"),
    ("Linux", "Linux"),
)


def detect_device_name(user_agent: Optional[str]) -> str:
    """Derive a human-readable device name from a user agent string."""
    if not user_agent:
        return "Unknown Device"
    for needle, name in _DEVICE_PATTERNS:
        if needle in user_agent:
            return name
    return "Unknown Device"


def subscription_id_for(endpoint_or_token: str) -> str:
    """Stable id derived from the endpoint or token, so re-registration finds the same record."""
    return hashlib.sha256(endpoint_or_token.encode("utf-8")).hexdigest()[:24]


class SubscriptionRegistry:
    """Registers browser endpoints and mobile tokens for users.

    Subscriptions are soft-deactivated, never physically removed.
    """

    def __init__(
        self,
        store: Optional[NotificationStore] = None,
        config: Optional[NotificationConfig] = None,
    ):
        self.store = store or InMemoryStore()
        self.config = config or DEFAULT_NOTIFICATION_CONFIG

    def _save(self, subscription: Subscription) -> None:
        self.store.put(
            SUBSCRIPTIONS,
            subscription.subscription_id,
            subscription.to_dict(),
            user_id=subscription.user_id,
        )

    def register(
        self,
        user_id: str,
        platform: Platform,
        endpoint_or_token: str,
        keys: Optional[dict] = None,
        device_info: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Register a subscription or update the existing one for the same endpoint/token."""
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        if not endpoint_or_token:
            raise ValidationError("endpoint_or_token is required", field="endpoint_or_token")
        if isinstance(platform, str):
            try:
                platform = Platform(platform)
            except ValueError:
                raise ValidationError(f"Unknown platform: {platform}", field="platform")
        if platform == Platform.BROWSER and not (keys and keys.get("p256dh") and keys.get("auth")):
            raise ValidationError("Browser subscriptions require p256dh and auth keys", field="keys")

        now = now or datetime.now(timezone.utc)
        subscription_id = subscription_id_for(endpoint_or_token)
        existing = self.get(subscription_id)

        if existing:
            previous_owner = existing.user_id
            existing.user_id = user_id
            existing.platform = platform
            existing.keys = keys or existing.keys
            existing.device_info = device_info or existing.device_info
            if device_info:
                existing.device_name = self._device_name(platform, device_info)
            existing.is_active = True
            existing.mark_used(now)
            if previous_owner != user_id:
                logger.info("Subscription %s moved from user %s to %s", subscription_id, previous_owner, user_id)
            self._save(existing)
            return existing

        subscription = Subscription(
            subscription_id=subscription_id,
            user_id=user_id,
            platform=platform,
            endpoint_or_token=endpoint_or_token,
            keys=keys,
            device_info=device_info,
            device_name=self._device_name(platform, device_info),
            created_at=now,
            last_used_at=now,
        )
        self._save(subscription)
        logger.info("User %s registered %s subscription %s", user_id, platform.value, subscription_id)
        return subscription

    def _device_name(self, platform: Platform, device_info: Optional[dict]) -> str:
        info = device_info or {}
        if info.get("device_name"):
            return info["device_name"]
        if platform == Platform.BROWSER:
            return detect_device_name(info.get("user_agent"))
        return info.get("device_model") or platform.value

    def unregister(self, user_id: str, endpoint_or_token: str) -> bool:
        """Deactivate the user's subscription for an endpoint/token."""
        subscription = self.get(subscription_id_for(endpoint_or_token))
        if not subscription or subscription.user_id != user_id or not subscription.is_active:
            return False
        subscription.deactivate()
        self._save(subscription)
        logger.info("User %s unregistered subscription %s", user_id, subscription.subscription_id)
        return True

    def get(self, subscription_id: str) -> Optional[Subscription]:
        """Get subscription by ID."""
        doc = self.store.get(SUBSCRIPTIONS, subscription_id)
        return Subscription.from_dict(doc) if doc else None

    def get_by_endpoint(self, endpoint_or_token: str) -> Optional[Subscription]:
        return self.get(subscription_id_for(endpoint_or_token))

    def get_user_subscriptions(self, user_id: str, active_only: bool = False) -> list[Subscription]:
        """All subscriptions owned by a user, oldest first."""
        subs = [Subscription.from_dict(d) for d in self.store.query_by_user(SUBSCRIPTIONS, user_id)]
        if active_only:
            subs = [s for s in subs if s.is_active]
        return sorted(subs, key=lambda s: s.created_at)

    def get_active(self, user_id: str, platform: Optional[Platform] = None) -> list[Subscription]:
        """Active subscriptions for a user, optionally filtered by platform."""
        subs = self.get_user_subscriptions(user_id, active_only=True)
        if platform is not None:
            subs = [s for s in subs if s.platform == platform]
        return subs

    def deactivate(self, subscription_id: str) -> bool:
        """Deactivate a subscription. Returns False if unknown or already inactive."""
        subscription = self.get(subscription_id)
        if not subscription or not subscription.is_active:
            return False
        subscription.deactivate()
        self._save(subscription)
        logger.info("Deactivated subscription %s for user %s", subscription_id, subscription.user_id)
        return True

    def mark_used(self, subscription_id: str, now: Optional[datetime] = None) -> None:
        subscription = self.get(subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        subscription.mark_used(now)
        self._save(subscription)

    def get_stale(self, days: Optional[int] = None, now: Optional[datetime] = None) -> list[Subscription]:
        """Active subscriptions not used within the given number of days."""
        days = days if days is not None else self.config.stale_subscription_days
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        active = [Subscription.from_dict(d) for d in self.store.query(SUBSCRIPTIONS, lambda d: d["is_active"])]
        return [s for s in active if s.last_used_at < cutoff]

    def get_stats(self) -> dict:
        """Get subscription statistics."""
        subs = [Subscription.from_dict(d) for d in self.store.query(SUBSCRIPTIONS)]
        active = [s for s in subs if s.is_active]

        by_platform = {}
        for platform in Platform:
            by_platform[platform.value] = sum(1 for s in active if s.platform == platform)

        return {
            "total_subscriptions": len(subs),
            "active_subscriptions": len(active),
            "inactive_subscriptions": len(subs) - len(active),
            "unique_users": len({s.user_id for s in active}),
            "by_platform": by_platform,
        }
