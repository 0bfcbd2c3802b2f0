"""Scheduled and recurring notifications."""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union
import logging

from dateutil.relativedelta import relativedelta

from src.logging_config import DeliveryContext, generate_tick_id, log_performance
from src.notifications.config import (
    NotificationCategory,
    NotificationConfig,
    NotificationPriority,
    RecurrenceType,
    ScheduleStatus,
    DEFAULT_NOTIFICATION_CONFIG,
)
from src.notifications.errors import NotFoundError, SchedulerItemFailure, ValidationError
from src.notifications.models import QueuedItem, RecurrenceRule, ScheduledNotification
from src.notifications.store import NotificationStore, InMemoryStore, SCHEDULED, run_store_io
from src.notifications.templates import TemplateRegistry, render

logger = logging.getLogger(__name__)


def _weekday_sunday_first(value: datetime) -> int:
    """0=Sunday .. 6=Saturday."""
    return (value.weekday() + 1) % 7


def next_occurrence(current: datetime, rule: RecurrenceRule) -> Optional[datetime]:
    """The occurrence after `current` under `rule`, ignoring end_date."""
    interval = rule.interval or 1

    if rule.type == RecurrenceType.DAILY:
        return current + timedelta(days=interval)

    if rule.type == RecurrenceType.WEEKLY:
        if not rule.days_of_week:
            return current + timedelta(days=7 * interval)
        today = _weekday_sunday_first(current)
        later = [d for d in rule.days_of_week if d > today]
        if later:
            return current + timedelta(days=later[0] - today)
        # Wrap to the first listed day of a following week
        days_ahead = 7 - today + rule.days_of_week[0] + 7 * (interval - 1)
        return current + timedelta(days=days_ahead)

    if rule.type == RecurrenceType.MONTHLY:
        if rule.day_of_month:
            # relativedelta clamps day to the month's length
            return current + relativedelta(months=interval, day=rule.day_of_month)
        return current + relativedelta(months=interval)

    return None


@dataclass
class SchedulerTickReport:
    """What one scheduler tick did."""

    promoted: int = 0
    failed: int = 0
    successors: int = 0
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "promoted": self.promoted,
            "failed": self.failed,
            "successors": self.successors,
            "skipped": self.skipped,
        }


class Scheduler:
    """Promotes due scheduled notifications into the delivery queue.

    Scheduled occurrences were requested explicitly by the user, so they
    enqueue directly without going through the policy gate.
    """

    def __init__(
        self,
        templates: TemplateRegistry,
        enqueue: Callable[[QueuedItem], str],
        store: Optional[NotificationStore] = None,
        config: Optional[NotificationConfig] = None,
        owns: Optional[Callable[[str], bool]] = None,
    ):
        self.templates = templates
        self._enqueue = enqueue
        self.store = store or InMemoryStore()
        self.config = config or DEFAULT_NOTIFICATION_CONFIG
        self._owns = owns or (lambda user_id: True)
        self._ticking = False

    def _save(self, scheduled: ScheduledNotification) -> None:
        self.store.put(SCHEDULED, scheduled.schedule_id, scheduled.to_dict(), user_id=scheduled.user_id)

    def schedule(
        self,
        user_id: str,
        scheduled_for: datetime,
        title: Optional[str] = None,
        body: Optional[str] = None,
        category: Optional[NotificationCategory] = None,
        priority: Optional[NotificationPriority] = None,
        template_id: Optional[str] = None,
        variables: Optional[dict] = None,
        data: Optional[dict] = None,
        recurrence: Optional[Union[RecurrenceRule, dict]] = None,
    ) -> ScheduledNotification:
        """Schedule a notification from a template or literal title/body."""
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        self._check_time(scheduled_for)

        if template_id:
            template = self.templates.require(template_id)
            category = category or template.category
            priority = priority or template.priority
            title = title or template.title_template
            body = body or template.body_template
        elif not (title and body and category):
            raise ValidationError(
                "Either template_id or title, body and category are required",
                field="template_id",
            )

        try:
            category = NotificationCategory(category)
            priority = NotificationPriority(priority or NotificationPriority.MEDIUM)
        except ValueError as e:
            raise ValidationError(str(e), field="category")

        if isinstance(recurrence, dict):
            recurrence = RecurrenceRule.from_dict(recurrence)
        if recurrence is not None:
            recurrence = self._anchor(recurrence, scheduled_for)

        scheduled = ScheduledNotification(
            user_id=user_id,
            title=title,
            body=body,
            category=category,
            priority=priority,
            scheduled_for=scheduled_for,
            template_id=template_id,
            variables=dict(variables or {}),
            data=dict(data or {}),
            recurrence=recurrence,
        )
        self._save(scheduled)
        logger.info(
            "Scheduled %s for user %s at %s (%s)",
            scheduled.schedule_id, user_id, scheduled_for.isoformat(),
            recurrence.type.value if recurrence else "once",
        )
        return scheduled

    @staticmethod
    def _anchor(rule: RecurrenceRule, first: datetime) -> RecurrenceRule:
        """Pin monthly rules to the first occurrence's day of month."""
        if rule.type == RecurrenceType.MONTHLY and rule.day_of_month is None:
            return replace(rule, day_of_month=first.day)
        return rule

    @staticmethod
    def _check_time(value) -> None:
        if not isinstance(value, datetime):
            raise ValidationError("scheduled_for must be a datetime", field="scheduled_for")
        if value.tzinfo is None:
            raise ValidationError("scheduled_for must be timezone-aware", field="scheduled_for")

    def get(self, schedule_id: str) -> Optional[ScheduledNotification]:
        doc = self.store.get(SCHEDULED, schedule_id)
        return ScheduledNotification.from_dict(doc) if doc else None

    def cancel(self, schedule_id: str) -> bool:
        """Cancel a pending occurrence. Returns False if unknown or not pending."""
        scheduled = self.get(schedule_id)
        if scheduled is None or not scheduled.cancel():
            return False
        self._save(scheduled)
        logger.info("Cancelled scheduled notification %s", schedule_id)
        return True

    def update(self, schedule_id: str, **changes) -> ScheduledNotification:
        """Change a pending occurrence."""
        scheduled = self.get(schedule_id)
        if scheduled is None:
            raise NotFoundError("scheduled_notification", schedule_id)
        if not scheduled.is_pending:
            raise ValidationError(
                f"Only pending notifications can be updated (status: {scheduled.status.value})",
                field="status",
            )

        allowed = {"title", "body", "category", "priority", "scheduled_for", "variables", "data", "recurrence"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}", field="scheduled_notification")

        if "scheduled_for" in changes:
            self._check_time(changes["scheduled_for"])
        try:
            if "category" in changes:
                changes["category"] = NotificationCategory(changes["category"])
            if "priority" in changes:
                changes["priority"] = NotificationPriority(changes["priority"])
        except ValueError as e:
            raise ValidationError(str(e), field="category")
        if isinstance(changes.get("recurrence"), dict):
            changes["recurrence"] = RecurrenceRule.from_dict(changes["recurrence"])
        if changes.get("recurrence") is not None:
            changes["recurrence"] = self._anchor(
                changes["recurrence"], changes.get("scheduled_for", scheduled.scheduled_for),
            )

        for key, value in changes.items():
            setattr(scheduled, key, value)
        scheduled.updated_at = datetime.now(timezone.utc)
        self._save(scheduled)
        return scheduled

    def get_user_scheduled(self, user_id: str, include_completed: bool = False) -> list[ScheduledNotification]:
        """A user's scheduled notifications, soonest first."""
        items = [ScheduledNotification.from_dict(d) for d in self.store.query_by_user(SCHEDULED, user_id)]
        if not include_completed:
            items = [s for s in items if s.is_pending]
        return sorted(items, key=lambda s: s.scheduled_for)

    def due(self, now: datetime) -> list[ScheduledNotification]:
        pending = self.store.query(SCHEDULED, lambda d: d["status"] == ScheduleStatus.PENDING.value)
        items = [ScheduledNotification.from_dict(d) for d in pending]
        return sorted(
            (s for s in items if s.scheduled_for <= now and self._owns(s.user_id)),
            key=lambda s: s.scheduled_for,
        )

    @log_performance()
    async def tick(self, now: Optional[datetime] = None) -> SchedulerTickReport:
        """Promote every due pending occurrence and create recurring successors."""
        if self._ticking:
            logger.debug("Scheduler tick already in progress, skipping")
            return SchedulerTickReport(skipped=True)

        self._ticking = True
        report = SchedulerTickReport()
        try:
            now = now or datetime.now(timezone.utc)
            with DeliveryContext(loop="scheduler", tick_id=generate_tick_id()):
                for scheduled in await run_store_io(self.store, self.due, now):
                    with DeliveryContext(user_id=scheduled.user_id, extra={"schedule_id": scheduled.schedule_id}):
                        await self._promote(scheduled, now, report)
        finally:
            self._ticking = False

        if report.promoted or report.failed:
            logger.info(
                "Scheduler tick promoted %d, failed %d, created %d successors",
                report.promoted, report.failed, report.successors,
            )
        return report

    async def _promote(self, scheduled: ScheduledNotification, now: datetime, report: SchedulerTickReport) -> None:
        try:
            item = await run_store_io(self.store, self._build_item, scheduled)
            self._enqueue(item)
            scheduled.mark_sent(now)
            report.promoted += 1
        except Exception as e:
            failure = SchedulerItemFailure(scheduled.schedule_id, str(e) or type(e).__name__)
            logger.error(failure.message)
            scheduled.mark_failed(failure.reason, now)
            report.failed += 1

        try:
            if await run_store_io(self.store, self._create_successor, scheduled):
                report.successors += 1
        except Exception:
            logger.exception("Could not create next occurrence for %s", scheduled.schedule_id)
        await run_store_io(self.store, self._save, scheduled)

    def _build_item(self, scheduled: ScheduledNotification) -> QueuedItem:
        title, body = scheduled.title, scheduled.body
        if scheduled.template_id:
            rendered = render(self.templates.require(scheduled.template_id), scheduled.variables)
            title, body = rendered["title"], rendered["body"]
        return QueuedItem(
            user_id=scheduled.user_id,
            title=title,
            body=body,
            category=scheduled.category,
            priority=scheduled.priority,
            data={**scheduled.data, "schedule_id": scheduled.schedule_id},
            template_id=scheduled.template_id,
            max_attempts=self.config.max_attempts,
        )

    def _create_successor(self, scheduled: ScheduledNotification) -> bool:
        rule = scheduled.recurrence
        if rule is None or not rule.is_recurring or scheduled.successor_id:
            return False

        next_time = next_occurrence(scheduled.scheduled_for, rule)
        if next_time is None:
            return False
        if rule.end_date is not None and next_time > rule.end_date:
            logger.info("Recurrence for %s ended at %s", scheduled.schedule_id, rule.end_date.isoformat())
            return False

        successor = ScheduledNotification(
            user_id=scheduled.user_id,
            title=scheduled.title,
            body=scheduled.body,
            category=scheduled.category,
            priority=scheduled.priority,
            scheduled_for=next_time,
            template_id=scheduled.template_id,
            variables=dict(scheduled.variables),
            data=dict(scheduled.data),
            recurrence=rule,
        )
        self._save(successor)
        scheduled.successor_id = successor.schedule_id
        return True
