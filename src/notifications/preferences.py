"""User notification preferences and the admission policy gate."""

from datetime import datetime, timezone
from typing import Optional
import logging
import re

from src.notifications.config import (
    BlockReason,
    NotificationCategory,
    NotificationPriority,
    NotificationConfig,
    DEFAULT_NOTIFICATION_CONFIG,
)
from src.notifications.errors import ValidationError
from src.notifications.models import (
    AdmitDecision,
    DeliveryMethods,
    FrequencyLimits,
    QuietHours,
    RateCounters,
    UserPreferences,
)
from src.notifications.store import NotificationStore, InMemoryStore, PREFERENCES

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

_SECTIONS = {
    "quiet_hours": QuietHours,
    "frequency_limits": FrequencyLimits,
    "delivery_methods": DeliveryMethods,
}


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


class PreferenceManager:
    """Manages user notification preferences.

    Preferences are created lazily with defaults on first read.
    """

    def __init__(
        self,
        store: Optional[NotificationStore] = None,
        config: Optional[NotificationConfig] = None,
    ):
        self.store = store or InMemoryStore()
        self.config = config or DEFAULT_NOTIFICATION_CONFIG

    def _defaults(self, user_id: str) -> UserPreferences:
        return UserPreferences.defaults(
            user_id,
            max_per_hour=self.config.max_per_user_per_hour,
            max_per_day=self.config.max_per_user_per_day,
        )

    def _save(self, prefs: UserPreferences) -> None:
        self.store.put(PREFERENCES, prefs.user_id, prefs.to_dict(), user_id=prefs.user_id)

    def get(self, user_id: str) -> UserPreferences:
        """Get user preferences, creating defaults if none exist."""
        doc = self.store.get(PREFERENCES, user_id)
        if doc:
            return UserPreferences.from_dict(doc)
        prefs = self._defaults(user_id)
        self._save(prefs)
        return prefs

    def update(self, user_id: str, partial: dict) -> UserPreferences:
        """Merge a partial update into the user's preferences.

        Accepts snake_case or camelCase keys. Unknown keys and invalid values
        raise ValidationError and leave stored preferences untouched.
        """
        if not isinstance(partial, dict):
            raise ValidationError("Preferences update must be an object", field="preferences")

        prefs = self.get(user_id)

        for raw_key, value in partial.items():
            key = _snake(raw_key)
            if key == "categories":
                prefs.categories.update(self._parse_categories(value))
            elif key in _SECTIONS:
                setattr(prefs, key, self._merge_section(key, getattr(prefs, key), value))
            elif key == "min_priority":
                try:
                    prefs.min_priority = NotificationPriority(value)
                except ValueError:
                    raise ValidationError(f"Invalid min_priority: {value}", field="min_priority")
            else:
                raise ValidationError(f"Unknown preference: {raw_key}", field=raw_key)

        prefs.quiet_hours.validate()
        limits = prefs.frequency_limits
        if limits.max_per_hour < 0 or limits.max_per_day < 0:
            raise ValidationError("Frequency limits must be non-negative", field="frequency_limits")

        prefs.updated_at = datetime.now(timezone.utc)
        self._save(prefs)
        logger.info("Updated notification preferences for user %s", user_id)
        return prefs

    def _parse_categories(self, value) -> dict[NotificationCategory, bool]:
        if not isinstance(value, dict):
            raise ValidationError("categories must be an object", field="categories")
        parsed = {}
        for raw_key, enabled in value.items():
            try:
                category = NotificationCategory(_snake(raw_key))
            except ValueError:
                raise ValidationError(f"Unknown category: {raw_key}", field="categories")
            if not isinstance(enabled, bool):
                raise ValidationError(f"Category {raw_key} must be true or false", field="categories")
            parsed[category] = enabled
        return parsed

    def _merge_section(self, section: str, current, value):
        if not isinstance(value, dict):
            raise ValidationError(f"{section} must be an object", field=section)
        section_cls = _SECTIONS[section]
        merged = dict(vars(current))
        for raw_key, item in value.items():
            key = _snake(raw_key)
            if key not in merged:
                raise ValidationError(f"Unknown {section} field: {raw_key}", field=f"{section}.{raw_key}")
            expected = type(merged[key])
            if expected is int and (isinstance(item, bool) or not isinstance(item, int)):
                raise ValidationError(f"{section}.{key} must be an integer", field=f"{section}.{key}")
            if expected is not int and not isinstance(item, expected):
                raise ValidationError(f"{section}.{key} has the wrong type", field=f"{section}.{key}")
            merged[key] = item
        return section_cls(**merged)

    def reset(self, user_id: str) -> UserPreferences:
        """Restore default preferences."""
        prefs = self._defaults(user_id)
        self._save(prefs)
        logger.info("Reset notification preferences for user %s", user_id)
        return prefs


class PolicyGate:
    """Decides whether a candidate notification may be sent to a user.

    Rules are evaluated in order and the first match wins:

    1. Security notifications always pass.
    2. Critical priority always passes.
    3. Disabled categories are blocked.
    4. Priorities below the user's minimum are blocked.
    5. Quiet hours block (window is [start, end) in the user's timezone).
    6. Hourly and daily rate limits block; an admitted notification counts
       against both.

    Rate counters live in memory and are not persisted.
    """

    def __init__(self, preferences: PreferenceManager):
        self.preferences = preferences
        self._counters: dict[str, RateCounters] = {}

    def admit(
        self,
        user_id: str,
        category: NotificationCategory,
        priority: NotificationPriority,
        now: Optional[datetime] = None,
        prefs: Optional[UserPreferences] = None,
    ) -> AdmitDecision:
        """First matching rule wins. prefs may be passed in when already loaded."""
        now = now or datetime.now(timezone.utc)

        if category == NotificationCategory.SECURITY:
            return AdmitDecision.allow("security_bypass")
        if priority == NotificationPriority.CRITICAL:
            return AdmitDecision.allow("critical_bypass")

        prefs = prefs or self.preferences.get(user_id)

        if not prefs.is_category_enabled(category):
            return self._deny(user_id, category, BlockReason.CATEGORY_DISABLED)

        if priority.rank < prefs.min_priority.rank:
            return self._deny(user_id, category, BlockReason.BELOW_PRIORITY_THRESHOLD)

        if prefs.quiet_hours.contains(now):
            return self._deny(user_id, category, BlockReason.QUIET_HOURS)

        counters = self._counters.get(user_id)
        if counters is None:
            counters = RateCounters(user_id=user_id, last_hour_reset=now, last_day_reset=now)
            self._counters[user_id] = counters
        counters.apply_resets(now)

        counters.hourly += 1
        counters.daily += 1
        limits = prefs.frequency_limits
        if counters.hourly > limits.max_per_hour or counters.daily > limits.max_per_day:
            counters.hourly -= 1
            counters.daily -= 1
            return self._deny(user_id, category, BlockReason.RATE_LIMITED)

        return AdmitDecision.allow()

    def _deny(self, user_id: str, category: NotificationCategory, reason: BlockReason) -> AdmitDecision:
        logger.info("Blocked %s notification for user %s: %s", category.value, user_id, reason.value)
        return AdmitDecision.deny(reason.value)

    def get_rate_counters(self, user_id: str) -> Optional[RateCounters]:
        return self._counters.get(user_id)

    def reset_counters(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._counters.clear()
        else:
            self._counters.pop(user_id, None)
