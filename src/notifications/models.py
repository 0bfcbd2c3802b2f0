"""Data models for Notification Delivery & Scheduling."""

from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo
import logging
import uuid

from src.notifications.config import (
    CATEGORY_CONFIGS,
    NotificationCategory,
    NotificationPriority,
    Platform,
    RecurrenceType,
    ScheduleStatus,
)
from src.notifications.errors import ValidationError

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _parse_end_date(value: Any) -> Optional[datetime]:
    """Recurrence end as an aware datetime.

    A plain date (or YYYY-MM-DD string) ends at the close of that day in UTC.
    Naive date-times are read as UTC.
    """
    if value is None:
        return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"Invalid end_date: {value}", field="recurrence.end_date")
        value = parsed.date() if len(value) == 10 else parsed
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    raise ValidationError("end_date must be a date or datetime", field="recurrence.end_date")


def _known_fields(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def parse_hhmm(value: str) -> int:
    """Parse an HH:MM string into minutes since midnight."""
    hour, minute = map(int, value.split(":"))
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid time of day: {value}")
    return hour * 60 + minute


@dataclass
class Subscription:
    """A browser push endpoint or mobile push token owned by a user."""

    user_id: str
    platform: Platform
    endpoint_or_token: str
    subscription_id: str = field(default_factory=_new_id)
    keys: Optional[dict] = None  # p256dh/auth for browser push
    device_info: Optional[dict] = None
    device_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_now)
    last_used_at: datetime = field(default_factory=_now)

    def mark_used(self, now: Optional[datetime] = None) -> None:
        """Mark subscription as recently used."""
        self.last_used_at = now or _now()

    def deactivate(self) -> None:
        """Deactivate the subscription (record is kept)."""
        self.is_active = False

    def to_dict(self) -> dict:
        return {
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "platform": self.platform.value,
            "endpoint_or_token": self.endpoint_or_token,
            "keys": self.keys,
            "device_info": self.device_info,
            "device_name": self.device_name,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Subscription":
        return cls(
            subscription_id=data["subscription_id"],
            user_id=data["user_id"],
            platform=Platform(data["platform"]),
            endpoint_or_token=data["endpoint_or_token"],
            keys=data.get("keys"),
            device_info=data.get("device_info"),
            device_name=data.get("device_name"),
            is_active=data.get("is_active", True),
            created_at=_parse_dt(data["created_at"]),
            last_used_at=_parse_dt(data["last_used_at"]),
        )


@dataclass
class QuietHours:
    """Local-time window during which non-critical notifications are held back."""

    enabled: bool = False
    start: str = "22:00"  # HH:MM
    end: str = "08:00"
    timezone: str = "UTC"

    def validate(self) -> None:
        try:
            parse_hhmm(self.start)
            parse_hhmm(self.end)
        except (ValueError, AttributeError):
            raise ValidationError("Quiet hours must use HH:MM times", field="quiet_hours")
        try:
            ZoneInfo(self.timezone)
        except (ValueError, KeyError):
            raise ValidationError(f"Unknown timezone: {self.timezone}", field="quiet_hours.timezone")

    def contains(self, current_time: datetime) -> bool:
        """Check if current_time falls inside [start, end) in the user's timezone."""
        if not self.enabled:
            return False

        try:
            start_minutes = parse_hhmm(self.start)
            end_minutes = parse_hhmm(self.end)
            local = current_time.astimezone(ZoneInfo(self.timezone)) if current_time.tzinfo else current_time
        except (ValueError, KeyError, AttributeError) as exc:
            logger.warning("Ignoring malformed quiet hours %s-%s %s: %s", self.start, self.end, self.timezone, exc)
            return False

        current_minutes = local.hour * 60 + local.minute

        if start_minutes == end_minutes:
            return False
        if start_minutes < end_minutes:
            return start_minutes <= current_minutes < end_minutes
        # Overnight window (e.g., 22:00 - 07:00)
        return current_minutes >= start_minutes or current_minutes < end_minutes


@dataclass
class FrequencyLimits:
    """Per-user delivery rate limits."""

    max_per_hour: int = 50
    max_per_day: int = 200


@dataclass
class DeliveryMethods:
    """Which transports the user accepts."""

    push: bool = True
    email: bool = False
    sms: bool = False
    in_app: bool = True


@dataclass
class UserPreferences:
    """User notification settings."""

    user_id: str
    categories: dict[NotificationCategory, bool] = field(default_factory=dict)
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    frequency_limits: FrequencyLimits = field(default_factory=FrequencyLimits)
    delivery_methods: DeliveryMethods = field(default_factory=DeliveryMethods)
    min_priority: NotificationPriority = NotificationPriority.LOW
    updated_at: datetime = field(default_factory=_now)

    @classmethod
    def defaults(cls, user_id: str, max_per_hour: int = 50, max_per_day: int = 200) -> "UserPreferences":
        """Create default preferences for a user."""
        return cls(
            user_id=user_id,
            categories={
                cat: CATEGORY_CONFIGS.get(cat, {}).get("default_enabled", True)
                for cat in NotificationCategory
            },
            frequency_limits=FrequencyLimits(max_per_hour=max_per_hour, max_per_day=max_per_day),
        )

    def is_category_enabled(self, category: NotificationCategory) -> bool:
        return self.categories.get(category, True)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "categories": {cat.value: enabled for cat, enabled in self.categories.items()},
            "quiet_hours": asdict(self.quiet_hours),
            "frequency_limits": asdict(self.frequency_limits),
            "delivery_methods": asdict(self.delivery_methods),
            "min_priority": self.min_priority.value,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserPreferences":
        return cls(
            user_id=data["user_id"],
            categories={NotificationCategory(k): bool(v) for k, v in data.get("categories", {}).items()},
            quiet_hours=QuietHours(**_known_fields(QuietHours, data.get("quiet_hours", {}))),
            frequency_limits=FrequencyLimits(**_known_fields(FrequencyLimits, data.get("frequency_limits", {}))),
            delivery_methods=DeliveryMethods(**_known_fields(DeliveryMethods, data.get("delivery_methods", {}))),
            min_priority=NotificationPriority(data.get("min_priority", "low")),
            updated_at=_parse_dt(data.get("updated_at")) or _now(),
        )


@dataclass
class RateCounters:
    """Hourly and daily delivery counters for one user."""

    user_id: str
    hourly: int = 0
    daily: int = 0
    last_hour_reset: datetime = field(default_factory=_now)
    last_day_reset: datetime = field(default_factory=_now)

    def apply_resets(self, now: datetime) -> None:
        """Reset each counter once its window has fully elapsed."""
        if now - self.last_hour_reset > timedelta(hours=1):
            self.hourly = 0
            self.last_hour_reset = now
        if now - self.last_day_reset > timedelta(days=1):
            self.daily = 0
            self.last_day_reset = now

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "hourly": self.hourly,
            "daily": self.daily,
            "last_hour_reset": self.last_hour_reset.isoformat(),
            "last_day_reset": self.last_day_reset.isoformat(),
        }


@dataclass
class AdmitDecision:
    """Outcome of the policy gate."""

    allowed: bool
    reason: str = "allowed"

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def allow(cls, reason: str = "allowed") -> "AdmitDecision":
        return cls(True, reason)

    @classmethod
    def deny(cls, reason: str) -> "AdmitDecision":
        return cls(False, reason)


@dataclass
class RecurrenceRule:
    """How a scheduled notification repeats.

    days_of_week uses 0=Sunday .. 6=Saturday.
    """

    type: RecurrenceType = RecurrenceType.ONCE
    interval: int = 1
    days_of_week: Optional[list[int]] = None
    day_of_month: Optional[int] = None
    end_date: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.type, str):
            try:
                self.type = RecurrenceType(self.type)
            except ValueError:
                raise ValidationError(f"Unknown recurrence type: {self.type}", field="recurrence.type")
        if self.interval is None:
            self.interval = 1
        if not isinstance(self.interval, int) or self.interval < 1:
            raise ValidationError("Recurrence interval must be a positive integer", field="recurrence.interval")
        if self.days_of_week is not None:
            if any(not isinstance(d, int) or not 0 <= d <= 6 for d in self.days_of_week):
                raise ValidationError("days_of_week entries must be 0-6", field="recurrence.days_of_week")
            self.days_of_week = sorted(set(self.days_of_week))
        if self.day_of_month is not None and not 1 <= self.day_of_month <= 31:
            raise ValidationError("day_of_month must be 1-31", field="recurrence.day_of_month")
        self.end_date = _parse_end_date(self.end_date)

    @property
    def is_recurring(self) -> bool:
        return self.type != RecurrenceType.ONCE

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "interval": self.interval,
            "days_of_week": self.days_of_week,
            "day_of_month": self.day_of_month,
            "end_date": _iso(self.end_date),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecurrenceRule":
        return cls(
            type=data.get("type", "once"),
            interval=data.get("interval", 1),
            days_of_week=data.get("days_of_week", data.get("daysOfWeek")),
            day_of_month=data.get("day_of_month", data.get("dayOfMonth")),
            end_date=data.get("end_date", data.get("endDate")),
        )


@dataclass
class NotificationTemplate:
    """Named title/body template with {{variable}} placeholders."""

    name: str
    title_template: str
    body_template: str
    category: NotificationCategory
    priority: NotificationPriority = NotificationPriority.MEDIUM
    template_id: str = field(default_factory=_new_id)
    variables: list[str] = field(default_factory=list)
    default_data: dict = field(default_factory=dict)
    icon: Optional[str] = None
    is_builtin: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "template_id": self.template_id,
            "name": self.name,
            "title_template": self.title_template,
            "body_template": self.body_template,
            "category": self.category.value,
            "priority": self.priority.value,
            "variables": list(self.variables),
            "default_data": dict(self.default_data),
            "icon": self.icon,
            "is_builtin": self.is_builtin,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationTemplate":
        return cls(
            template_id=data["template_id"],
            name=data["name"],
            title_template=data["title_template"],
            body_template=data["body_template"],
            category=NotificationCategory(data["category"]),
            priority=NotificationPriority(data.get("priority", "medium")),
            variables=list(data.get("variables", [])),
            default_data=dict(data.get("default_data") or {}),
            icon=data.get("icon"),
            is_builtin=data.get("is_builtin", False),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
        )


@dataclass
class Notification:
    """A delivered notification as kept in the user's history."""

    user_id: str
    title: str
    body: str
    category: NotificationCategory
    priority: NotificationPriority = NotificationPriority.MEDIUM
    notification_id: str = field(default_factory=_new_id)
    data: dict = field(default_factory=dict)
    channels_attempted: list[str] = field(default_factory=list)
    template_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def mark_read(self, now: Optional[datetime] = None) -> bool:
        """Mark as read. Returns False if it was already read."""
        if self.read_at is not None:
            return False
        self.read_at = now or _now()
        return True

    def to_dict(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "title": self.title,
            "body": self.body,
            "category": self.category.value,
            "priority": self.priority.value,
            "data": self.data,
            "channels_attempted": list(self.channels_attempted),
            "template_id": self.template_id,
            "created_at": self.created_at.isoformat(),
            "sent_at": _iso(self.sent_at),
            "read_at": _iso(self.read_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Notification":
        return cls(
            notification_id=data["notification_id"],
            user_id=data["user_id"],
            title=data["title"],
            body=data["body"],
            category=NotificationCategory(data["category"]),
            priority=NotificationPriority(data["priority"]),
            data=data.get("data") or {},
            channels_attempted=list(data.get("channels_attempted", [])),
            template_id=data.get("template_id"),
            created_at=_parse_dt(data["created_at"]),
            sent_at=_parse_dt(data.get("sent_at")),
            read_at=_parse_dt(data.get("read_at")),
        )


@dataclass
class QueuedItem:
    """A notification waiting in the delivery queue."""

    user_id: str
    title: str
    body: str
    category: NotificationCategory
    priority: NotificationPriority = NotificationPriority.MEDIUM
    item_id: str = field(default_factory=_new_id)
    data: dict = field(default_factory=dict)
    scheduled_for: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 3
    template_id: Optional[str] = None
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)

    def is_due(self, now: datetime) -> bool:
        if self.scheduled_for is not None and self.scheduled_for > now:
            return False
        if self.next_attempt_at is not None and self.next_attempt_at > now:
            return False
        return True

    @property
    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def record_failure(self, error: str, now: datetime, backoff_seconds: float = 0.0) -> None:
        """Count a failed attempt and push the next attempt out by the backoff."""
        self.attempts += 1
        self.last_error = error
        if backoff_seconds > 0:
            delay = backoff_seconds * (2 ** (self.attempts - 1))  # Exponential backoff
            self.next_attempt_at = now + timedelta(seconds=delay)

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "user_id": self.user_id,
            "title": self.title,
            "body": self.body,
            "category": self.category.value,
            "priority": self.priority.value,
            "data": self.data,
            "scheduled_for": _iso(self.scheduled_for),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ScheduledNotification:
    """A notification to be queued at a future time, optionally recurring."""

    user_id: str
    title: str
    body: str
    category: NotificationCategory
    scheduled_for: datetime
    priority: NotificationPriority = NotificationPriority.MEDIUM
    schedule_id: str = field(default_factory=_new_id)
    template_id: Optional[str] = None
    variables: dict = field(default_factory=dict)
    data: dict = field(default_factory=dict)
    recurrence: Optional[RecurrenceRule] = None
    status: ScheduleStatus = ScheduleStatus.PENDING
    sent_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    successor_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_pending(self) -> bool:
        return self.status == ScheduleStatus.PENDING

    def mark_sent(self, now: datetime) -> None:
        self.status = ScheduleStatus.SENT
        self.sent_at = now
        self.updated_at = now

    def mark_failed(self, reason: str, now: datetime) -> None:
        self.status = ScheduleStatus.FAILED
        self.failure_reason = reason
        self.updated_at = now

    def cancel(self, now: Optional[datetime] = None) -> bool:
        """Cancel a pending occurrence. Returns False if it is no longer pending."""
        if not self.is_pending:
            return False
        self.status = ScheduleStatus.CANCELLED
        self.updated_at = now or _now()
        return True

    def to_dict(self) -> dict:
        return {
            "schedule_id": self.schedule_id,
            "user_id": self.user_id,
            "template_id": self.template_id,
            "variables": self.variables,
            "title": self.title,
            "body": self.body,
            "category": self.category.value,
            "priority": self.priority.value,
            "data": self.data,
            "scheduled_for": self.scheduled_for.isoformat(),
            "recurrence": self.recurrence.to_dict() if self.recurrence else None,
            "status": self.status.value,
            "sent_at": _iso(self.sent_at),
            "failure_reason": self.failure_reason,
            "successor_id": self.successor_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduledNotification":
        recurrence = data.get("recurrence")
        return cls(
            schedule_id=data["schedule_id"],
            user_id=data["user_id"],
            template_id=data.get("template_id"),
            variables=data.get("variables") or {},
            title=data["title"],
            body=data["body"],
            category=NotificationCategory(data["category"]),
            priority=NotificationPriority(data["priority"]),
            data=data.get("data") or {},
            scheduled_for=_parse_dt(data["scheduled_for"]),
            recurrence=RecurrenceRule.from_dict(recurrence) if recurrence else None,
            status=ScheduleStatus(data["status"]),
            sent_at=_parse_dt(data.get("sent_at")),
            failure_reason=data.get("failure_reason"),
            successor_id=data.get("successor_id"),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
        )


@dataclass
class DeliveryResult:
    """Per-channel outcome of one dispatch."""

    notification_id: Optional[str] = None
    browser_sent: int = 0
    browser_failed: int = 0
    mobile_sent: int = 0
    mobile_failed: int = 0
    deactivated: int = 0
    transient_failures: int = 0
    blocked_reason: Optional[str] = None

    @property
    def total_sent(self) -> int:
        return self.browser_sent + self.mobile_sent

    @property
    def total_failed(self) -> int:
        return self.browser_failed + self.mobile_failed

    @property
    def blocked(self) -> bool:
        return self.blocked_reason is not None

    @property
    def success(self) -> bool:
        """Delivered somewhere, or nothing failed transiently."""
        if self.blocked:
            return False
        return self.total_sent > 0 or self.transient_failures == 0

    def to_dict(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "success": self.success,
            "browser_sent": self.browser_sent,
            "browser_failed": self.browser_failed,
            "mobile_sent": self.mobile_sent,
            "mobile_failed": self.mobile_failed,
            "deactivated": self.deactivated,
            "transient_failures": self.transient_failures,
            "blocked_reason": self.blocked_reason,
        }


@dataclass
class BadgeCounts:
    """Unread counts for UI badges."""

    total: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)

    def add(self, category: NotificationCategory, priority: NotificationPriority, count: int = 1) -> None:
        self.total += count
        self.by_category[category.value] = self.by_category.get(category.value, 0) + count
        self.by_priority[priority.value] = self.by_priority.get(priority.value, 0) + count

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "by_category": dict(self.by_category),
            "by_priority": dict(self.by_priority),
        }


@dataclass
class DeadLetter:
    """A queue item removed after exhausting its retry budget."""

    item_id: str
    user_id: str
    title: str
    category: NotificationCategory
    priority: NotificationPriority
    attempts: int
    last_error: Optional[str] = None
    dead_lettered_at: datetime = field(default_factory=_now)

    @classmethod
    def from_item(cls, item: QueuedItem, now: Optional[datetime] = None) -> "DeadLetter":
        return cls(
            item_id=item.item_id,
            user_id=item.user_id,
            title=item.title,
            category=item.category,
            priority=item.priority,
            attempts=item.attempts,
            last_error=item.last_error,
            dead_lettered_at=now or _now(),
        )

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "user_id": self.user_id,
            "title": self.title,
            "category": self.category.value,
            "priority": self.priority.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "dead_lettered_at": self.dead_lettered_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeadLetter":
        return cls(
            item_id=data["item_id"],
            user_id=data["user_id"],
            title=data["title"],
            category=NotificationCategory(data["category"]),
            priority=NotificationPriority(data["priority"]),
            attempts=data["attempts"],
            last_error=data.get("last_error"),
            dead_lettered_at=_parse_dt(data["dead_lettered_at"]),
        )


@dataclass
class DeliveryStats:
    """Engine-wide delivery statistics."""

    queued: int = 0
    delivered: int = 0
    retried: int = 0
    dead_lettered: int = 0
    browser_sent: int = 0
    browser_failed: int = 0
    mobile_sent: int = 0
    mobile_failed: int = 0
    deactivated: int = 0
    blocked: dict[str, int] = field(default_factory=dict)

    def record_result(self, result: DeliveryResult) -> None:
        self.browser_sent += result.browser_sent
        self.browser_failed += result.browser_failed
        self.mobile_sent += result.mobile_sent
        self.mobile_failed += result.mobile_failed
        self.deactivated += result.deactivated

    def record_blocked(self, reason: str) -> None:
        self.blocked[reason] = self.blocked.get(reason, 0) + 1

    @property
    def delivery_rate(self) -> float:
        attempted = self.browser_sent + self.browser_failed + self.mobile_sent + self.mobile_failed
        if attempted == 0:
            return 0.0
        return (self.browser_sent + self.mobile_sent) / attempted

    def to_dict(self) -> dict:
        return {
            "queued": self.queued,
            "delivered": self.delivered,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "browser_sent": self.browser_sent,
            "browser_failed": self.browser_failed,
            "mobile_sent": self.mobile_sent,
            "mobile_failed": self.mobile_failed,
            "deactivated": self.deactivated,
            "blocked": dict(self.blocked),
            "delivery_rate": round(self.delivery_rate * 100, 2),
        }
