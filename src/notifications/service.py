"""NotificationService: the engine's public entry point."""

from datetime import datetime, timezone
from typing import Optional, Union
import asyncio
import logging

from src.notifications.badges import BadgeTracker
from src.notifications.config import (
    NotificationCategory,
    NotificationConfig,
    NotificationPriority,
    Platform,
    DEFAULT_NOTIFICATION_CONFIG,
)
from src.notifications.dispatcher import ChannelDispatcher
from src.notifications.errors import TransientDeliveryFailure, ValidationError
from src.notifications.gateways import (
    BrowserPushGateway,
    FCMGateway,
    MobilePushGateway,
    SimulatedBrowserGateway,
    SimulatedMobileGateway,
    WebPushGateway,
)
from src.notifications.history import NotificationHistory
from src.notifications.models import (
    BadgeCounts,
    DeadLetter,
    DeliveryResult,
    DeliveryStats,
    Notification,
    NotificationTemplate,
    QueuedItem,
    RateCounters,
    RecurrenceRule,
    ScheduledNotification,
    Subscription,
    UserPreferences,
)
from src.notifications.partition import owns
from src.notifications.preferences import PolicyGate, PreferenceManager
from src.notifications.queue import DeliveryQueue, TickReport
from src.notifications.scheduler import Scheduler, SchedulerTickReport
from src.notifications.store import NotificationStore, InMemoryStore, DEAD_LETTERS, run_store_io
from src.notifications.subscriptions import SubscriptionRegistry
from src.notifications.templates import TemplateRegistry, render
from src.notifications.ticker import PeriodicTask

logger = logging.getLogger(__name__)


def _coerce(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}", field=field_name)


class NotificationService:
    """Wires the engine components together and runs the periodic loops.

    Example:
        async with NotificationService.from_settings() as service:
            service.register_subscription("user_1", Platform.ANDROID, token)
            service.queue("user_1", "AAPL filled", "Bought 10 AAPL", NotificationCategory.TRADE)
    """

    def __init__(
        self,
        config: Optional[NotificationConfig] = None,
        store: Optional[NotificationStore] = None,
        browser_gateway: Optional[BrowserPushGateway] = None,
        mobile_gateway: Optional[MobilePushGateway] = None,
    ):
        self.config = config or DEFAULT_NOTIFICATION_CONFIG
        self.store = store or InMemoryStore()

        self.history = NotificationHistory(self.store)
        self.templates = TemplateRegistry(self.store, is_referenced=self.history.is_template_referenced)
        self.subscriptions = SubscriptionRegistry(self.store, self.config)
        self.preferences = PreferenceManager(self.store, self.config)
        self.gate = PolicyGate(self.preferences)
        self.badges = BadgeTracker(self.history)

        self.dispatcher = ChannelDispatcher(
            subscriptions=self.subscriptions,
            history=self.history,
            browser_gateway=browser_gateway or SimulatedBrowserGateway(),
            mobile_gateway=mobile_gateway or SimulatedMobileGateway(),
            config=self.config,
            badge_count=self.badges.total,
        )
        self.dispatcher.add_observer(self.badges.on_notification)

        self.delivery_queue = DeliveryQueue(
            deliver=self._deliver_item,
            config=self.config,
            dead_letter_sink=self._persist_dead_letter,
        )
        self.scheduler = Scheduler(
            templates=self.templates,
            enqueue=self.delivery_queue.enqueue,
            store=self.store,
            config=self.config,
            owns=self.owns,
        )

        self.stats = DeliveryStats()
        self._queue_task = PeriodicTask("queue", self.process_queue, self.config.queue_interval_seconds)
        self._scheduler_task = PeriodicTask("scheduler", self.process_scheduled, self.config.scheduler_interval_seconds)

    @classmethod
    def from_settings(cls, settings=None) -> "NotificationService":
        """Build a service from environment settings."""
        from src.settings import get_settings

        settings = settings or get_settings()
        config = NotificationConfig.from_settings(settings)

        if settings.use_database:
            from src.db.engine import get_sync_session_factory
            from src.notifications.sql_store import SQLAlchemyStore

            store = SQLAlchemyStore(get_sync_session_factory(settings.database_url))
        else:
            store = InMemoryStore()

        if config.vapid_private_key:
            browser_gateway = WebPushGateway(
                config.vapid_private_key,
                config.vapid_subject,
                timeout=config.send_timeout_seconds,
            )
        else:
            logger.warning("No VAPID key configured; browser push is simulated")
            browser_gateway = SimulatedBrowserGateway()

        if config.fcm_project_id:
            mobile_gateway = FCMGateway(
                config.fcm_project_id,
                config.fcm_access_token or "",
                timeout=config.send_timeout_seconds,
            )
        else:
            logger.warning("No FCM project configured; mobile push is simulated")
            mobile_gateway = SimulatedMobileGateway()

        return cls(config, store, browser_gateway, mobile_gateway)

    # ── Lifecycle ────────────────────────────────────────────────────

    def owns(self, user_id: str) -> bool:
        """Whether this worker handles user_id."""
        return owns(user_id, self.config.worker_index, self.config.worker_count)

    @property
    def running(self) -> bool:
        return self._queue_task.running or self._scheduler_task.running

    async def start(self) -> None:
        await self._queue_task.start()
        await self._scheduler_task.start()
        logger.info(
            "Notification service started (worker %d/%d)",
            self.config.worker_index, self.config.worker_count,
        )

    async def stop(self) -> None:
        """Stop both loops, waiting for in-flight ticks. Idempotent."""
        await self._scheduler_task.stop()
        await self._queue_task.stop()

    async def aclose(self) -> None:
        await self.stop()
        await self.dispatcher.browser_gateway.aclose()
        await self.dispatcher.mobile_gateway.aclose()

    async def __aenter__(self) -> "NotificationService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def process_queue(self, now: Optional[datetime] = None) -> TickReport:
        report = await self.delivery_queue.tick(now)
        self.stats.retried += report.retried
        return report

    async def process_scheduled(self, now: Optional[datetime] = None) -> SchedulerTickReport:
        return await self.scheduler.tick(now)

    async def run_once(self, now: Optional[datetime] = None) -> dict:
        """One scheduler tick followed by one queue tick."""
        scheduled = await self.process_scheduled(now)
        queued = await self.process_queue(now)
        return {"scheduler": scheduled.to_dict(), "queue": queued.to_dict()}

    # ── Subscriptions ────────────────────────────────────────────────

    def register_subscription(
        self,
        user_id: str,
        platform: Union[Platform, str],
        endpoint_or_token: str,
        keys: Optional[dict] = None,
        device_info: Optional[dict] = None,
    ) -> Subscription:
        return self.subscriptions.register(user_id, platform, endpoint_or_token, keys, device_info)

    def unregister_subscription(self, user_id: str, endpoint_or_token: str) -> bool:
        return self.subscriptions.unregister(user_id, endpoint_or_token)

    def get_subscriptions(self, user_id: str, active_only: bool = True) -> list[Subscription]:
        return self.subscriptions.get_user_subscriptions(user_id, active_only=active_only)

    # ── Sending ──────────────────────────────────────────────────────

    def _validate_message(self, user_id, title, body, category, priority):
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        if not title:
            raise ValidationError("title is required", field="title")
        if not body:
            raise ValidationError("body is required", field="body")
        return (
            _coerce(NotificationCategory, category, "category"),
            _coerce(NotificationPriority, priority, "priority"),
        )

    async def send(
        self,
        user_id: str,
        title: str,
        body: str,
        category: Union[NotificationCategory, str],
        priority: Union[NotificationPriority, str] = NotificationPriority.MEDIUM,
        data: Optional[dict] = None,
        bypass_policy: bool = False,
        template_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DeliveryResult:
        """Deliver immediately, without retry.

        Subject to the policy gate unless bypass_policy is set. A blocked
        notification returns a result with blocked_reason set.
        """
        category, priority = self._validate_message(user_id, title, body, category, priority)
        now = now or datetime.now(timezone.utc)

        prefs = await run_store_io(self.store, self.preferences.get, user_id)
        if not bypass_policy:
            decision = self.gate.admit(user_id, category, priority, now, prefs=prefs)
            if not decision:
                self.stats.record_blocked(decision.reason)
                return DeliveryResult(blocked_reason=decision.reason)

        try:
            result = await self.dispatcher.dispatch(
                user_id, title, body, category, priority,
                data=data,
                push_enabled=prefs.delivery_methods.push,
                template_id=template_id,
                now=now,
            )
            self.stats.delivered += 1
        except TransientDeliveryFailure as e:
            logger.warning("Immediate send to user %s failed: %s", user_id, e.message)
            result = e.result or DeliveryResult()
        self.stats.record_result(result)
        return result

    def queue(
        self,
        user_id: str,
        title: str,
        body: str,
        category: Union[NotificationCategory, str],
        priority: Union[NotificationPriority, str] = NotificationPriority.MEDIUM,
        data: Optional[dict] = None,
        scheduled_for: Optional[datetime] = None,
        template_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Queue for delivery with retry. Returns the item id, or None if blocked."""
        category, priority = self._validate_message(user_id, title, body, category, priority)
        if scheduled_for is not None and scheduled_for.tzinfo is None:
            raise ValidationError("scheduled_for must be timezone-aware", field="scheduled_for")

        decision = self.gate.admit(user_id, category, priority, now)
        if not decision:
            self.stats.record_blocked(decision.reason)
            return None

        item = QueuedItem(
            user_id=user_id,
            title=title,
            body=body,
            category=category,
            priority=priority,
            data=dict(data or {}),
            scheduled_for=scheduled_for,
            template_id=template_id,
            max_attempts=self.config.max_attempts,
        )
        self.delivery_queue.enqueue(item)
        self.stats.queued += 1
        return item.item_id

    async def _deliver_item(self, item: QueuedItem) -> DeliveryResult:
        prefs = await run_store_io(self.store, self.preferences.get, item.user_id)
        try:
            result = await self.dispatcher.dispatch(
                item.user_id, item.title, item.body, item.category, item.priority,
                data=item.data,
                push_enabled=prefs.delivery_methods.push,
                notification_id=item.item_id,
                template_id=item.template_id,
            )
        except TransientDeliveryFailure as e:
            if e.result is not None:
                self.stats.record_result(e.result)
            raise
        self.stats.record_result(result)
        self.stats.delivered += 1
        return result

    async def _persist_dead_letter(self, dead: DeadLetter) -> None:
        self.stats.dead_lettered += 1
        await run_store_io(
            self.store, self.store.put,
            DEAD_LETTERS, dead.item_id, dead.to_dict(), user_id=dead.user_id,
        )

    async def send_templated(
        self,
        user_id: str,
        template_id: str,
        variables: Optional[dict] = None,
        data: Optional[dict] = None,
        bypass_policy: bool = False,
    ) -> DeliveryResult:
        """Render a template and send it immediately."""
        rendered = self.templates.render_template(template_id, variables)
        return await self.send(
            user_id,
            rendered["title"],
            rendered["body"],
            rendered["category"],
            rendered["priority"],
            data={**(variables or {}), **(data or {})},
            bypass_policy=bypass_policy,
            template_id=template_id,
        )

    async def send_bulk(
        self,
        user_ids: list[str],
        title: str,
        body: str,
        category: Union[NotificationCategory, str],
        priority: Union[NotificationPriority, str] = NotificationPriority.MEDIUM,
        data: Optional[dict] = None,
        template_id: Optional[str] = None,
    ) -> dict:
        """Send the same notification to many users concurrently."""
        unique_ids = list(dict.fromkeys(user_ids))
        results = await asyncio.gather(*[
            self.send(uid, title, body, category, priority, data=data, template_id=template_id)
            for uid in unique_ids
        ])
        by_user = dict(zip(unique_ids, results))
        return {
            "total": len(unique_ids),
            "delivered": sum(1 for r in results if r.success),
            "blocked": sum(1 for r in results if r.blocked),
            "failed": sum(1 for r in results if not r.blocked and not r.success),
            "results": {uid: r.to_dict() for uid, r in by_user.items()},
        }

    # ── Scheduling ───────────────────────────────────────────────────

    def schedule(
        self,
        user_id: str,
        scheduled_for: datetime,
        title: Optional[str] = None,
        body: Optional[str] = None,
        category: Optional[Union[NotificationCategory, str]] = None,
        priority: Optional[Union[NotificationPriority, str]] = None,
        template_id: Optional[str] = None,
        variables: Optional[dict] = None,
        data: Optional[dict] = None,
        recurrence: Optional[Union[RecurrenceRule, dict]] = None,
    ) -> ScheduledNotification:
        return self.scheduler.schedule(
            user_id,
            scheduled_for,
            title=title,
            body=body,
            category=category,
            priority=priority,
            template_id=template_id,
            variables=variables,
            data=data,
            recurrence=recurrence,
        )

    def cancel_scheduled(self, schedule_id: str, user_id: Optional[str] = None) -> bool:
        scheduled = self.scheduler.get(schedule_id)
        if scheduled is None or (user_id is not None and scheduled.user_id != user_id):
            return False
        return self.scheduler.cancel(schedule_id)

    def update_scheduled(self, schedule_id: str, **changes) -> ScheduledNotification:
        return self.scheduler.update(schedule_id, **changes)

    def get_scheduled(self, user_id: str, include_completed: bool = False) -> list[ScheduledNotification]:
        return self.scheduler.get_user_scheduled(user_id, include_completed)

    # ── Preferences ──────────────────────────────────────────────────

    def get_preferences(self, user_id: str) -> UserPreferences:
        return self.preferences.get(user_id)

    def update_preferences(self, user_id: str, partial: dict) -> UserPreferences:
        return self.preferences.update(user_id, partial)

    def reset_preferences(self, user_id: str) -> UserPreferences:
        return self.preferences.reset(user_id)

    def get_rate_counters(self, user_id: str) -> Optional[RateCounters]:
        return self.gate.get_rate_counters(user_id)

    # ── History & badges ─────────────────────────────────────────────

    def get_badge_counts(self, user_id: str) -> BadgeCounts:
        return self.badges.get_counts(user_id)

    def mark_read(self, user_id: str, notification_id: str) -> bool:
        return self.badges.mark_read(user_id, notification_id)

    def mark_all_read(self, user_id: str) -> int:
        return self.badges.mark_all_read(user_id)

    def clear_badge(self, user_id: str, category: Optional[Union[NotificationCategory, str]] = None) -> int:
        """Mark a category (or everything) read."""
        if category is None:
            return self.badges.mark_all_read(user_id)
        return self.badges.clear_category(user_id, _coerce(NotificationCategory, category, "category"))

    def get_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
        category: Optional[Union[NotificationCategory, str]] = None,
    ) -> list[Notification]:
        if category is not None:
            category = _coerce(NotificationCategory, category, "category")
        return self.history.list(user_id, limit=limit, offset=offset, unread_only=unread_only, category=category)

    def delete_notification(self, user_id: str, notification_id: str) -> bool:
        deleted = self.history.delete(user_id, notification_id)
        if deleted:
            self.badges.invalidate(user_id)
        return deleted

    def cleanup_history(self, days: Optional[int] = None) -> int:
        """Delete history older than `days` (default history_retention_days)."""
        removed = self.history.cleanup_older_than(
            days if days is not None else self.config.history_retention_days
        )
        if removed:
            self.badges.invalidate_all()
        return removed

    # ── Templates ────────────────────────────────────────────────────

    def get_template(self, template_id: str) -> Optional[NotificationTemplate]:
        return self.templates.get(template_id)

    def list_templates(self, category: Optional[Union[NotificationCategory, str]] = None) -> list[NotificationTemplate]:
        if category is not None:
            category = _coerce(NotificationCategory, category, "category")
        return self.templates.list_templates(category)

    def create_template(self, name: str, title_template: str, body_template: str, category, priority=NotificationPriority.MEDIUM, default_data: Optional[dict] = None) -> NotificationTemplate:
        return self.templates.create(name, title_template, body_template, category, priority, default_data)

    def update_template(self, template_id: str, **changes) -> NotificationTemplate:
        return self.templates.update(template_id, **changes)

    def delete_template(self, template_id: str) -> bool:
        return self.templates.delete(template_id)

    def preview_template(self, template_id: str, variables: Optional[dict] = None) -> dict:
        return render(self.templates.require(template_id), variables)

    # ── Event helpers ────────────────────────────────────────────────

    async def notify_trade_executed(
        self,
        user_id: str,
        symbol: str,
        side: str,
        quantity: float,
        price: float,
        bot_name: Optional[str] = None,
    ) -> DeliveryResult:
        variables = {"symbol": symbol, "side": side.upper(), "quantity": quantity, "price": f"{price:.2f}"}
        if bot_name:
            variables["bot_name"] = bot_name
        return await self.send_templated(user_id, "trade_executed", variables, data={"url": f"/trades?symbol={symbol}"})

    async def notify_price_target(
        self,
        user_id: str,
        symbol: str,
        price: float,
        target_price: float,
    ) -> DeliveryResult:
        direction = "above" if price >= target_price else "below"
        return await self.send_templated(
            user_id,
            "price_target",
            {"symbol": symbol, "price": f"{price:.2f}", "target_price": f"{target_price:.2f}", "direction": direction},
            data={"url": f"/symbols/{symbol}"},
        )

    async def notify_bot_update(self, user_id: str, bot_name: str, status: str, message: str = "") -> DeliveryResult:
        return await self.send_templated(
            user_id, "bot_update", {"bot_name": bot_name, "status": status, "message": message},
        )

    async def notify_big_move(self, user_id: str, symbol: str, change_percent: float, price: float) -> DeliveryResult:
        return await self.send_templated(
            user_id,
            "big_move",
            {
                "symbol": symbol,
                "change_percent": f"{abs(change_percent):.1f}",
                "direction": "up" if change_percent >= 0 else "down",
                "price": f"{price:.2f}",
            },
        )

    async def notify_security_alert(self, user_id: str, event: str, location: Optional[str] = None) -> DeliveryResult:
        variables = {"event": event}
        if location:
            variables["location"] = location
        return await self.send_templated(user_id, "security_alert", variables, data={"url": "/settings/security"})

    async def notify_system_announcement(self, user_ids: list[str], title: str, message: str) -> dict:
        rendered = self.templates.render_template("system_announcement", {"title": title, "message": message})
        return await self.send_bulk(
            user_ids,
            rendered["title"],
            rendered["body"],
            rendered["category"],
            rendered["priority"],
            template_id="system_announcement",
        )

    # ── Queue & stats ────────────────────────────────────────────────

    def get_queue_stats(self) -> dict:
        return self.delivery_queue.get_stats()

    def clear_queue(self) -> int:
        return self.delivery_queue.clear()

    def get_dead_letters(self, user_id: Optional[str] = None) -> list[DeadLetter]:
        """Persisted dead letters, newest first."""
        if user_id is not None:
            docs = self.store.query_by_user(DEAD_LETTERS, user_id)
        else:
            docs = self.store.query(DEAD_LETTERS)
        letters = [DeadLetter.from_dict(d) for d in docs]
        return sorted(letters, key=lambda d: d.dead_lettered_at, reverse=True)

    def get_stats(self) -> dict:
        return {
            "delivery": self.stats.to_dict(),
            "queue": self.get_queue_stats(),
            "subscriptions": self.subscriptions.get_stats(),
            "running": self.running,
        }
