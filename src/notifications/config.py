"""Configuration for Notification Delivery & Scheduling."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class NotificationCategory(Enum):
    """Notification categories."""
    TRADE = "trade"
    BOT = "bot"
    PRICE = "price"
    BIG_MOVES = "big_moves"
    SECURITY = "security"
    MARKETING = "marketing"
    SYSTEM = "system"


class NotificationPriority(Enum):
    """Notification priority levels, ordered low < medium < high < critical."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return PRIORITY_RANKS[self]


PRIORITY_RANKS: dict[NotificationPriority, int] = {
    NotificationPriority.LOW: 0,
    NotificationPriority.MEDIUM: 1,
    NotificationPriority.HIGH: 2,
    NotificationPriority.CRITICAL: 3,
}


class Platform(Enum):
    """Subscription platforms."""
    BROWSER = "browser"
    IOS = "ios"
    ANDROID = "android"

    @property
    def is_mobile(self) -> bool:
        return self in (Platform.IOS, Platform.ANDROID)


class Channel(Enum):
    """Delivery transports."""
    BROWSER_PUSH = "browser_push"
    MOBILE_PUSH = "mobile_push"


class GatewayOutcome(Enum):
    """Per-subscription delivery outcome."""
    DELIVERED = "delivered"
    TRANSIENT = "transient"
    GONE = "gone"  # browser endpoint removed (404/410)
    INVALID = "invalid"  # mobile token rejected


class RecurrenceType(Enum):
    """Recurrence rule types."""
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduleStatus(Enum):
    """Scheduled notification status."""
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


class BlockReason(Enum):
    """Reasons the policy gate denies a notification."""
    CATEGORY_DISABLED = "category_disabled"
    BELOW_PRIORITY_THRESHOLD = "below_priority_threshold"
    QUIET_HOURS = "quiet_hours"
    RATE_LIMITED = "rate_limited"


@dataclass
class NotificationConfig:
    """Notification engine configuration."""

    # Loop intervals
    queue_interval_seconds: float = 1.0
    scheduler_interval_seconds: float = 60.0

    # Delivery queue
    batch_size: int = 100
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.0  # 0 = retry on the next tick

    # Gateway fan-out
    max_concurrent_sends: int = 10
    send_timeout_seconds: float = 10.0

    # Rate limit defaults for new preferences
    max_per_user_per_hour: int = 50
    max_per_user_per_day: int = 200

    # Retention
    history_retention_days: int = 90
    stale_subscription_days: int = 90

    # Web Push (VAPID)
    vapid_private_key: Optional[str] = None
    vapid_subject: str = "mailto:noreply@example.com"

    # FCM
    fcm_project_id: Optional[str] = None
    fcm_access_token: Optional[str] = None

    # Partitioning across workers
    worker_index: int = 0
    worker_count: int = 1

    @classmethod
    def from_settings(cls, settings) -> "NotificationConfig":
        """Build engine config from the environment-backed settings."""
        return cls(
            queue_interval_seconds=settings.queue_interval_seconds,
            scheduler_interval_seconds=settings.scheduler_interval_seconds,
            batch_size=settings.batch_size,
            max_attempts=settings.max_attempts,
            retry_backoff_seconds=settings.retry_backoff_seconds,
            max_concurrent_sends=settings.max_concurrent_sends,
            send_timeout_seconds=settings.send_timeout_seconds,
            max_per_user_per_hour=settings.max_per_user_per_hour,
            max_per_user_per_day=settings.max_per_user_per_day,
            history_retention_days=settings.history_retention_days,
            stale_subscription_days=settings.stale_subscription_days,
            vapid_private_key=settings.vapid_private_key or None,
            vapid_subject=settings.vapid_subject,
            fcm_project_id=settings.fcm_project_id or None,
            fcm_access_token=settings.fcm_access_token or None,
            worker_index=settings.worker_index,
            worker_count=settings.worker_count,
        )


DEFAULT_NOTIFICATION_CONFIG = NotificationConfig()


# Category-specific presentation and defaults
CATEGORY_CONFIGS: dict[NotificationCategory, dict] = {
    NotificationCategory.TRADE: {
        "description": "Order fills and trade executions",
        "default_enabled": True,
        "icon": "swap_horiz",
        "color": "#2196F3",
        "sound": "trade.wav",
        "ttl_seconds": 7200,
    },
    NotificationCategory.BOT: {
        "description": "Bot started, stopped, updated or errored",
        "default_enabled": True,
        "icon": "smart_toy",
        "color": "#9C27B0",
        "sound": "default",
        "ttl_seconds": 14400,
    },
    NotificationCategory.PRICE: {
        "description": "Price target and threshold alerts",
        "default_enabled": True,
        "icon": "trending_up",
        "color": "#4CAF50",
        "sound": "price_alert.wav",
        "ttl_seconds": 3600,
    },
    NotificationCategory.BIG_MOVES: {
        "description": "Large market moves on watched symbols",
        "default_enabled": True,
        "icon": "bolt",
        "color": "#FF9800",
        "sound": "default",
        "ttl_seconds": 3600,
    },
    NotificationCategory.SECURITY: {
        "description": "Logins, password and API key changes",
        "default_enabled": True,
        "icon": "lock",
        "color": "#F44336",
        "sound": "alert.wav",
        "ttl_seconds": 86400,
    },
    NotificationCategory.MARKETING: {
        "description": "Promotions and product news",
        "default_enabled": False,
        "icon": "campaign",
        "color": "#00BCD4",
        "sound": None,
        "ttl_seconds": 86400,
    },
    NotificationCategory.SYSTEM: {
        "description": "Maintenance, updates, announcements",
        "default_enabled": True,
        "icon": "info",
        "color": "#607D8B",
        "sound": None,
        "ttl_seconds": 86400,
    },
}
