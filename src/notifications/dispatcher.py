"""Multi-channel fan-out of a single notification."""

from datetime import datetime, timezone
from typing import Callable, Optional
import asyncio
import logging

from src.notifications.config import (
    CATEGORY_CONFIGS,
    Channel,
    GatewayOutcome,
    NotificationCategory,
    NotificationConfig,
    NotificationPriority,
    Platform,
    DEFAULT_NOTIFICATION_CONFIG,
)
from src.notifications.errors import InvalidEndpoint, TransientDeliveryFailure
from src.notifications.gateways import BrowserPushGateway, MobilePushGateway
from src.notifications.history import NotificationHistory
from src.notifications.models import DeliveryResult, Notification, Subscription, _new_id
from src.notifications.store import run_store_io
from src.notifications.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)

NotificationObserver = Callable[[Notification], None]


def build_browser_payload(notification: Notification) -> dict:
    """Web Push payload consumed by the service worker."""
    category_config = CATEGORY_CONFIGS.get(notification.category, {})
    return {
        "title": notification.title,
        "body": notification.body,
        "icon": notification.data.get("icon") or category_config.get("icon"),
        "badge": "/icons/badge.png",
        "tag": notification.category.value,
        "requireInteraction": notification.priority == NotificationPriority.CRITICAL,
        "data": {
            **notification.data,
            "notification_id": notification.notification_id,
            "category": notification.category.value,
            "priority": notification.priority.value,
            "timestamp": notification.created_at.isoformat(),
            "url": notification.data.get("url", "/"),
        },
    }


def build_mobile_payload(notification: Notification, platform: Platform, badge: int) -> dict:
    """FCM message body, shaped by the subscription's recorded platform."""
    category_config = CATEGORY_CONFIGS.get(notification.category, {})
    urgent = notification.priority.rank >= NotificationPriority.HIGH.rank
    sound = category_config.get("sound") or "default"

    payload = {
        "notification": {"title": notification.title, "body": notification.body},
        # FCM data values must be strings
        "data": {
            **{k: str(v) for k, v in notification.data.items()},
            "notification_id": notification.notification_id,
            "category": notification.category.value,
            "priority": notification.priority.value,
        },
    }

    if platform == Platform.ANDROID:
        payload["android"] = {
            "priority": "high" if urgent else "normal",
            "ttl": f"{category_config.get('ttl_seconds', 3600)}s",
            "notification": {
                "channel_id": notification.category.value,
                "sound": sound,
                "icon": category_config.get("icon", "notification_icon"),
                "color": category_config.get("color", "#2196F3"),
            },
        }
    elif platform == Platform.IOS:
        payload["apns"] = {
            "headers": {"apns-priority": "10" if urgent else "5"},
            "payload": {
                "aps": {
                    "badge": badge,
                    "sound": sound,
                    "content-available": 1,
                },
            },
        }

    return payload


class ChannelDispatcher:
    """Delivers one notification to every active subscription of a user.

    Gateway calls run concurrently, bounded by max_concurrent_sends, and each
    is limited to send_timeout_seconds. Endpoints the gateway reports as gone
    or invalid are deactivated. If every attempted call fails transiently the
    dispatch raises TransientDeliveryFailure so the caller can retry.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRegistry,
        history: NotificationHistory,
        browser_gateway: BrowserPushGateway,
        mobile_gateway: MobilePushGateway,
        config: Optional[NotificationConfig] = None,
        badge_count: Optional[Callable[[str], int]] = None,
    ):
        self.subscriptions = subscriptions
        self.history = history
        self.browser_gateway = browser_gateway
        self.mobile_gateway = mobile_gateway
        self.config = config or DEFAULT_NOTIFICATION_CONFIG
        self._badge_count = badge_count or (lambda user_id: 0)
        self._observers: list[NotificationObserver] = []
        self._semaphore: Optional[asyncio.Semaphore] = None

    def _get_semaphore(self) -> asyncio.Semaphore:
        """Lazy-initialize the semaphore (must be in async context)."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrent_sends)
        return self._semaphore

    def add_observer(self, observer: NotificationObserver) -> None:
        self._observers.append(observer)

    async def dispatch(
        self,
        user_id: str,
        title: str,
        body: str,
        category: NotificationCategory,
        priority: NotificationPriority,
        data: Optional[dict] = None,
        push_enabled: bool = True,
        notification_id: Optional[str] = None,
        template_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DeliveryResult:
        now = now or datetime.now(timezone.utc)
        notification = Notification(
            notification_id=notification_id or _new_id(),
            user_id=user_id,
            title=title,
            body=body,
            category=category,
            priority=priority,
            data=dict(data or {}),
            template_id=template_id,
            created_at=now,
        )
        result = DeliveryResult(notification_id=notification.notification_id)

        store = self.subscriptions.store
        subs = await run_store_io(store, self.subscriptions.get_active, user_id) if push_enabled else []
        if subs:
            badge = await run_store_io(store, self._badge_count, user_id) + 1
            payloads = [self._payload_for(notification, sub, badge) for sub in subs]
            outcomes = await asyncio.gather(
                *[self._attempt(sub, payload) for sub, payload in zip(subs, payloads)]
            )
            await run_store_io(store, self._record_all, result, subs, outcomes, now)

        if result.transient_failures and result.total_sent == 0:
            raise TransientDeliveryFailure(
                f"All {result.transient_failures} delivery attempts for user {user_id} failed",
                result=result,
            )

        notification.sent_at = now
        notification.channels_attempted = sorted({self._channel(sub).value for sub in subs})
        await run_store_io(store, self.history.append, notification)
        for observer in self._observers:
            try:
                observer(notification)
            except Exception:
                logger.exception("Notification observer failed for %s", notification.notification_id)

        logger.info(
            "Dispatched %s to user %s: browser %d/%d, mobile %d/%d, deactivated %d",
            notification.notification_id,
            user_id,
            result.browser_sent,
            result.browser_sent + result.browser_failed,
            result.mobile_sent,
            result.mobile_sent + result.mobile_failed,
            result.deactivated,
        )
        return result

    @staticmethod
    def _channel(sub: Subscription) -> Channel:
        return Channel.MOBILE_PUSH if sub.platform.is_mobile else Channel.BROWSER_PUSH

    def _payload_for(self, notification: Notification, sub: Subscription, badge: int) -> dict:
        if sub.platform.is_mobile:
            return build_mobile_payload(notification, sub.platform, badge)
        return build_browser_payload(notification)

    async def _attempt(self, sub: Subscription, payload: dict) -> GatewayOutcome:
        gateway = self.mobile_gateway if sub.platform.is_mobile else self.browser_gateway
        async with self._get_semaphore():
            try:
                return await asyncio.wait_for(
                    gateway.send(sub, payload),
                    timeout=self.config.send_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("Send to %s timed out after %.1fs", sub.subscription_id, self.config.send_timeout_seconds)
                return GatewayOutcome.TRANSIENT
            except InvalidEndpoint as e:
                logger.info("Endpoint %s rejected: %s", sub.subscription_id, e.message)
                return GatewayOutcome.INVALID if sub.platform.is_mobile else GatewayOutcome.GONE
            except TransientDeliveryFailure as e:
                logger.warning("Transient failure sending to %s: %s", sub.subscription_id, e.message)
                return GatewayOutcome.TRANSIENT
            except Exception as e:
                logger.warning("Gateway error sending to %s: %s", sub.subscription_id, e, exc_info=True)
                return GatewayOutcome.TRANSIENT

    def _record_all(self, result: DeliveryResult, subs: list, outcomes: list, now: datetime) -> None:
        for sub, outcome in zip(subs, outcomes):
            self._record(result, sub, outcome, now)

    def _record(self, result: DeliveryResult, sub: Subscription, outcome: GatewayOutcome, now: datetime) -> None:
        mobile = sub.platform.is_mobile

        if outcome == GatewayOutcome.DELIVERED:
            if mobile:
                result.mobile_sent += 1
            else:
                result.browser_sent += 1
            self.subscriptions.mark_used(sub.subscription_id, now)
            return

        if mobile:
            result.mobile_failed += 1
        else:
            result.browser_failed += 1

        if outcome in (GatewayOutcome.GONE, GatewayOutcome.INVALID):
            if self.subscriptions.deactivate(sub.subscription_id):
                result.deactivated += 1
        else:
            result.transient_failures += 1
