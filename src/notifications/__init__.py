"""Notification Delivery & Scheduling.

Notification engine for the trading platform supporting:
- Browser (Web Push) and mobile (FCM) subscriptions
- Per-user preferences, quiet hours and rate limits
- Delivery queue with bounded retry and dead-lettering
- Scheduled and recurring notifications
- Templates, read state and badge counts
"""

from src.notifications.config import (
    NotificationCategory,
    NotificationPriority,
    Platform,
    Channel,
    GatewayOutcome,
    RecurrenceType,
    ScheduleStatus,
    BlockReason,
    NotificationConfig,
    DEFAULT_NOTIFICATION_CONFIG,
    CATEGORY_CONFIGS,
)
from src.notifications.errors import (
    NotificationError,
    ValidationError,
    NotFoundError,
    TemplateLockedError,
    TransientDeliveryFailure,
    InvalidEndpoint,
    SchedulerItemFailure,
)
from src.notifications.models import (
    Subscription,
    UserPreferences,
    QuietHours,
    RateCounters,
    AdmitDecision,
    RecurrenceRule,
    NotificationTemplate,
    Notification,
    QueuedItem,
    ScheduledNotification,
    DeliveryResult,
    BadgeCounts,
    DeadLetter,
    DeliveryStats,
)
from src.notifications.store import NotificationStore, InMemoryStore
from src.notifications.subscriptions import SubscriptionRegistry
from src.notifications.templates import TemplateRegistry, render
from src.notifications.preferences import PreferenceManager, PolicyGate
from src.notifications.history import NotificationHistory
from src.notifications.badges import BadgeTracker
from src.notifications.gateways import (
    BrowserPushGateway,
    MobilePushGateway,
    WebPushGateway,
    FCMGateway,
    SimulatedBrowserGateway,
    SimulatedMobileGateway,
)
from src.notifications.dispatcher import ChannelDispatcher
from src.notifications.queue import DeliveryQueue, TickReport
from src.notifications.scheduler import Scheduler, SchedulerTickReport, next_occurrence
from src.notifications.ticker import PeriodicTask
from src.notifications.partition import partition_for
from src.notifications.service import NotificationService

__all__ = [
    # Config
    "NotificationCategory",
    "NotificationPriority",
    "Platform",
    "Channel",
    "GatewayOutcome",
    "RecurrenceType",
    "ScheduleStatus",
    "BlockReason",
    "NotificationConfig",
    "DEFAULT_NOTIFICATION_CONFIG",
    "CATEGORY_CONFIGS",
    # Errors
    "NotificationError",
    "ValidationError",
    "NotFoundError",
    "TemplateLockedError",
    "TransientDeliveryFailure",
    "InvalidEndpoint",
    "SchedulerItemFailure",
    # Models
    "Subscription",
    "UserPreferences",
    "QuietHours",
    "RateCounters",
    "AdmitDecision",
    "RecurrenceRule",
    "NotificationTemplate",
    "Notification",
    "QueuedItem",
    "ScheduledNotification",
    "DeliveryResult",
    "BadgeCounts",
    "DeadLetter",
    "DeliveryStats",
    # Storage
    "NotificationStore",
    "InMemoryStore",
    # Components
    "SubscriptionRegistry",
    "TemplateRegistry",
    "render",
    "PreferenceManager",
    "PolicyGate",
    "NotificationHistory",
    "BadgeTracker",
    "BrowserPushGateway",
    "MobilePushGateway",
    "WebPushGateway",
    "FCMGateway",
    "SimulatedBrowserGateway",
    "SimulatedMobileGateway",
    "ChannelDispatcher",
    "DeliveryQueue",
    "TickReport",
    "Scheduler",
    "SchedulerTickReport",
    "next_occurrence",
    "PeriodicTask",
    "partition_for",
    # Service
    "NotificationService",
]
