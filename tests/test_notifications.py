"""Tests for notification preferences, policy, templates, subscriptions and scheduling."""

import pytest
from datetime import datetime, timezone, timedelta

from src.notifications.badges import BadgeTracker
from src.notifications.config import (
    NotificationCategory,
    NotificationPriority,
    Platform,
    RecurrenceType,
    ScheduleStatus,
    NotificationConfig,
    CATEGORY_CONFIGS,
)
from src.notifications.errors import (
    NotFoundError,
    TemplateLockedError,
    ValidationError,
)
from src.notifications.history import NotificationHistory
from src.notifications.models import (
    DeliveryResult,
    Notification,
    QueuedItem,
    QuietHours,
    RecurrenceRule,
    ScheduledNotification,
    UserPreferences,
)
from src.notifications.partition import owns, partition_for
from src.notifications.preferences import PolicyGate, PreferenceManager
from src.notifications.scheduler import Scheduler, next_occurrence
from src.notifications.store import InMemoryStore
from src.notifications.subscriptions import SubscriptionRegistry, detect_device_name
from src.notifications.templates import TemplateRegistry, extract_variables, render, render_text

UTC = timezone.utc


class TestNotificationConfig:
    """Tests for notification configuration."""

    def test_priority_ranks_are_ordered(self):
        """Test priority ordering low < medium < high < critical."""
        ranks = [p.rank for p in (
            NotificationPriority.LOW,
            NotificationPriority.MEDIUM,
            NotificationPriority.HIGH,
            NotificationPriority.CRITICAL,
        )]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4

    def test_mobile_platforms(self):
        """Test platform classification."""
        assert Platform.IOS.is_mobile
        assert Platform.ANDROID.is_mobile
        assert not Platform.BROWSER.is_mobile

    def test_every_category_configured(self):
        """Test all categories have presentation config."""
        for category in NotificationCategory:
            assert category in CATEGORY_CONFIGS
            assert "default_enabled" in CATEGORY_CONFIGS[category]

    def test_default_config(self):
        """Test default engine configuration."""
        config = NotificationConfig()
        assert config.queue_interval_seconds == 1.0
        assert config.scheduler_interval_seconds == 60.0
        assert config.max_attempts == 3
        assert config.retry_backoff_seconds == 0.0
        assert config.worker_count == 1

    def test_from_settings(self):
        """Test config built from environment settings."""
        from src.settings import Settings

        settings = Settings(batch_size=7, max_attempts=5, worker_index=1, worker_count=3, stale_subscription_days=30)
        config = NotificationConfig.from_settings(settings)
        assert config.batch_size == 7
        assert config.max_attempts == 5
        assert config.worker_index == 1
        assert config.worker_count == 3
        assert config.stale_subscription_days == 30
        assert config.vapid_private_key is None

    def test_settings_read_env_prefix(self, monkeypatch):
        """Test NOTIFY_ environment variables populate settings."""
        from src.settings import get_settings

        monkeypatch.setenv("NOTIFY_MAX_ATTEMPTS", "9")
        monkeypatch.setenv("NOTIFY_USE_DATABASE", "true")
        settings = get_settings()
        assert settings.max_attempts == 9
        assert settings.use_database is True


class TestModels:
    """Tests for notification data models."""

    def test_user_preferences_defaults(self):
        """Test default preferences: marketing off, everything else on."""
        prefs = UserPreferences.defaults("user1")
        assert prefs.is_category_enabled(NotificationCategory.TRADE)
        assert not prefs.is_category_enabled(NotificationCategory.MARKETING)
        assert prefs.quiet_hours.enabled is False
        assert prefs.quiet_hours.start == "22:00"
        assert prefs.quiet_hours.end == "08:00"
        assert prefs.frequency_limits.max_per_hour == 50
        assert prefs.frequency_limits.max_per_day == 200
        assert prefs.delivery_methods.push is True
        assert prefs.delivery_methods.email is False
        assert prefs.min_priority == NotificationPriority.LOW

    def test_preferences_round_trip(self):
        """Test preferences survive serialisation."""
        prefs = UserPreferences.defaults("user1")
        prefs.quiet_hours = QuietHours(enabled=True, start="23:00", end="06:00", timezone="Europe/Berlin")
        restored = UserPreferences.from_dict(prefs.to_dict())
        assert restored.quiet_hours == prefs.quiet_hours
        assert restored.categories == prefs.categories

    def test_notification_mark_read_idempotent(self):
        """Test marking read twice keeps the first read time."""
        notification = Notification(
            user_id="user1", title="t", body="b", category=NotificationCategory.TRADE,
        )
        first = datetime(2025, 1, 1, tzinfo=UTC)
        assert notification.mark_read(first) is True
        assert notification.mark_read(first + timedelta(hours=1)) is False
        assert notification.read_at == first

    def test_queued_item_due(self, now):
        """Test due check honours scheduled_for and backoff."""
        item = QueuedItem(user_id="u", title="t", body="b", category=NotificationCategory.TRADE)
        assert item.is_due(now)
        item.scheduled_for = now + timedelta(minutes=5)
        assert not item.is_due(now)
        item.scheduled_for = None
        item.record_failure("boom", now, backoff_seconds=10)
        assert item.next_attempt_at == now + timedelta(seconds=10)
        assert not item.is_due(now)
        item.record_failure("boom", now, backoff_seconds=10)
        assert item.next_attempt_at == now + timedelta(seconds=20)

    def test_recurrence_rule_validation(self):
        """Test invalid recurrence rules are rejected."""
        with pytest.raises(ValidationError):
            RecurrenceRule(type=RecurrenceType.DAILY, interval=0)
        with pytest.raises(ValidationError):
            RecurrenceRule(type=RecurrenceType.WEEKLY, days_of_week=[7])
        with pytest.raises(ValidationError):
            RecurrenceRule(type="hourly")

    def test_recurrence_rule_from_camel_case(self):
        """Test recurrence accepts camelCase keys."""
        rule = RecurrenceRule.from_dict({"type": "weekly", "daysOfWeek": [3, 1, 3], "endDate": "2025-02-01T00:00:00+00:00"})
        assert rule.type == RecurrenceType.WEEKLY
        assert rule.days_of_week == [1, 3]
        assert rule.end_date == datetime(2025, 2, 1, tzinfo=UTC)

    def test_recurrence_plain_end_date_covers_whole_day(self):
        """Test a date-only end_date ends at the close of that day in UTC."""
        rule = RecurrenceRule.from_dict({"type": "daily", "endDate": "2025-01-10"})
        assert rule.end_date.tzinfo is not None
        assert rule.end_date.date() == datetime(2025, 1, 10).date()
        assert rule.end_date > datetime(2025, 1, 10, 23, 59, tzinfo=UTC)

    def test_recurrence_naive_end_date_read_as_utc(self):
        """Test a naive end_date is treated as UTC."""
        rule = RecurrenceRule(type=RecurrenceType.DAILY, end_date=datetime(2025, 1, 10, 9, 0))
        assert rule.end_date == datetime(2025, 1, 10, 9, 0, tzinfo=UTC)

    def test_recurrence_bad_end_date_rejected(self):
        """Test an unparseable end_date raises ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            RecurrenceRule.from_dict({"type": "daily", "endDate": "next tuesday"})
        assert exc_info.value.field == "recurrence.end_date"

    def test_delivery_result_success(self):
        """Test success semantics of a delivery result."""
        assert DeliveryResult().success  # nothing attempted, nothing failed
        assert DeliveryResult(browser_sent=1, transient_failures=2).success
        assert not DeliveryResult(transient_failures=1, mobile_failed=1).success
        assert not DeliveryResult(blocked_reason="quiet_hours").success

    def test_scheduled_cancel_only_when_pending(self, now):
        """Test cancel is a pending-only transition."""
        scheduled = ScheduledNotification(
            user_id="u", title="t", body="b",
            category=NotificationCategory.SYSTEM, scheduled_for=now,
        )
        scheduled.mark_sent(now)
        assert scheduled.cancel() is False
        assert scheduled.status == ScheduleStatus.SENT


class TestQuietHours:
    """Tests for quiet hours windows."""

    def test_overnight_window(self):
        """Test 22:00-07:00 wraps midnight."""
        quiet = QuietHours(enabled=True, start="22:00", end="07:00", timezone="UTC")
        assert quiet.contains(datetime(2025, 1, 1, 23, 30, tzinfo=UTC))
        assert quiet.contains(datetime(2025, 1, 1, 2, 0, tzinfo=UTC))
        assert not quiet.contains(datetime(2025, 1, 1, 12, 0, tzinfo=UTC))

    def test_window_is_half_open(self):
        """Test start is inside and end is outside the window."""
        quiet = QuietHours(enabled=True, start="22:00", end="07:00")
        assert quiet.contains(datetime(2025, 1, 1, 22, 0, tzinfo=UTC))
        assert not quiet.contains(datetime(2025, 1, 1, 7, 0, tzinfo=UTC))

    def test_same_day_window(self):
        """Test a window that does not cross midnight."""
        quiet = QuietHours(enabled=True, start="12:00", end="14:00")
        assert quiet.contains(datetime(2025, 1, 1, 13, 0, tzinfo=UTC))
        assert not quiet.contains(datetime(2025, 1, 1, 14, 30, tzinfo=UTC))

    def test_equal_start_end_is_empty(self):
        """Test equal start and end means no quiet time."""
        quiet = QuietHours(enabled=True, start="09:00", end="09:00")
        assert not quiet.contains(datetime(2025, 1, 1, 9, 0, tzinfo=UTC))

    def test_uses_user_timezone(self):
        """Test local time conversion for the window."""
        quiet = QuietHours(enabled=True, start="22:00", end="07:00", timezone="America/New_York")
        # 03:30 UTC is 22:30 in New York (EST)
        assert quiet.contains(datetime(2025, 1, 2, 3, 30, tzinfo=UTC))
        # 12:00 UTC is 07:00 in New York
        assert not quiet.contains(datetime(2025, 1, 2, 12, 0, tzinfo=UTC))

    def test_disabled(self):
        """Test disabled window never matches."""
        quiet = QuietHours(enabled=False, start="00:00", end="23:59")
        assert not quiet.contains(datetime(2025, 1, 1, 12, 0, tzinfo=UTC))

    def test_malformed_window_is_ignored(self):
        """Test malformed times disable the window."""
        quiet = QuietHours(enabled=True, start="late", end="07:00")
        assert not quiet.contains(datetime(2025, 1, 1, 23, 0, tzinfo=UTC))
        quiet = QuietHours(enabled=True, timezone="Mars/Olympus")
        assert not quiet.contains(datetime(2025, 1, 1, 23, 0, tzinfo=UTC))


class TestPreferenceManager:
    """Tests for preference management."""

    @pytest.fixture
    def manager(self):
        return PreferenceManager(InMemoryStore())

    def test_lazy_defaults(self, manager):
        """Test first read creates default preferences."""
        prefs = manager.get("user1")
        assert prefs.user_id == "user1"
        assert manager.store.get("preferences", "user1") is not None

    def test_partial_merge(self, manager):
        """Test nested partial update keeps untouched fields."""
        manager.update("user1", {"quiet_hours": {"enabled": True}})
        prefs = manager.update("user1", {"categories": {"bot": False}})
        assert prefs.quiet_hours.enabled is True
        assert prefs.quiet_hours.start == "22:00"
        assert not prefs.is_category_enabled(NotificationCategory.BOT)
        assert prefs.is_category_enabled(NotificationCategory.TRADE)

    def test_camel_case_keys(self, manager):
        """Test camelCase keys from clients are accepted."""
        prefs = manager.update("user1", {
            "quietHours": {"enabled": True, "start": "21:00"},
            "frequencyLimits": {"maxPerHour": 5},
            "deliveryMethods": {"inApp": False},
            "minPriority": "high",
            "categories": {"bigMoves": False},
        })
        assert prefs.quiet_hours.start == "21:00"
        assert prefs.frequency_limits.max_per_hour == 5
        assert prefs.delivery_methods.in_app is False
        assert prefs.min_priority == NotificationPriority.HIGH
        assert not prefs.is_category_enabled(NotificationCategory.BIG_MOVES)

    @pytest.mark.parametrize("partial", [
        {"unknown": True},
        {"categories": {"crypto": True}},
        {"min_priority": "urgent"},
        {"quiet_hours": {"start": "25:00"}},
        {"quiet_hours": {"timezone": "Nowhere/City"}},
        {"frequency_limits": {"max_per_hour": "many"}},
        {"delivery_methods": {"pigeon": True}},
    ])
    def test_invalid_updates_rejected(self, manager, partial):
        """Test invalid updates raise and leave preferences untouched."""
        before = manager.get("user1").to_dict()
        with pytest.raises(ValidationError):
            manager.update("user1", partial)
        after = manager.get("user1").to_dict()
        assert after == before

    def test_reset(self, manager):
        """Test reset restores defaults."""
        manager.update("user1", {"categories": {"trade": False}})
        prefs = manager.reset("user1")
        assert prefs.is_category_enabled(NotificationCategory.TRADE)


class TestPolicyGate:
    """Tests for the admission policy gate."""

    @pytest.fixture
    def manager(self):
        return PreferenceManager(InMemoryStore())

    @pytest.fixture
    def gate(self, manager):
        return PolicyGate(manager)

    def test_allows_by_default(self, gate, now):
        """Test a normal notification passes."""
        decision = gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, now)
        assert decision
        assert decision.reason == "allowed"

    def test_category_disabled(self, gate, manager, now):
        """Test disabled category is blocked."""
        manager.update("user1", {"categories": {"price": False}})
        decision = gate.admit("user1", NotificationCategory.PRICE, NotificationPriority.HIGH, now)
        assert not decision
        assert decision.reason == "category_disabled"

    def test_marketing_disabled_by_default(self, gate, now):
        """Test marketing is opt-in."""
        decision = gate.admit("user1", NotificationCategory.MARKETING, NotificationPriority.MEDIUM, now)
        assert decision.reason == "category_disabled"

    def test_below_min_priority(self, gate, manager, now):
        """Test priority threshold."""
        manager.update("user1", {"min_priority": "high"})
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, now).reason == "below_priority_threshold"
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.HIGH, now)

    def test_quiet_hours(self, gate, manager):
        """Test quiet hours deny at 23:30 and 02:00 but allow at 12:00."""
        manager.update("user1", {"quiet_hours": {"enabled": True, "start": "22:00", "end": "07:00", "timezone": "UTC"}})
        late = datetime(2025, 1, 1, 23, 30, tzinfo=UTC)
        early = datetime(2025, 1, 2, 2, 0, tzinfo=UTC)
        noon = datetime(2025, 1, 2, 12, 0, tzinfo=UTC)
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.HIGH, late).reason == "quiet_hours"
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.HIGH, early).reason == "quiet_hours"
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.HIGH, noon)

    def test_security_bypasses_everything(self, gate, manager):
        """Test security notifications ignore preferences."""
        manager.update("user1", {
            "categories": {"security": False},
            "min_priority": "critical",
            "quiet_hours": {"enabled": True, "start": "00:00", "end": "23:59"},
            "frequency_limits": {"max_per_hour": 0},
        })
        decision = gate.admit("user1", NotificationCategory.SECURITY, NotificationPriority.LOW, datetime(2025, 1, 1, 3, 0, tzinfo=UTC))
        assert decision
        assert decision.reason == "security_bypass"

    def test_critical_bypasses_everything(self, gate, manager):
        """Test critical priority ignores preferences."""
        manager.update("user1", {"categories": {"bot": False}, "frequency_limits": {"max_per_hour": 0}})
        decision = gate.admit("user1", NotificationCategory.BOT, NotificationPriority.CRITICAL)
        assert decision.reason == "critical_bypass"

    def test_rate_limit(self, gate, manager, now):
        """Test hourly limit: allow, allow, deny, then allowed after an hour."""
        manager.update("user1", {"frequency_limits": {"max_per_hour": 2}})
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, now)
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, now)
        denied = gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, now)
        assert denied.reason == "rate_limited"
        counters = gate.get_rate_counters("user1")
        assert counters.hourly == 2
        assert counters.daily == 2

        later = now + timedelta(hours=1, seconds=1)
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, later)
        assert gate.get_rate_counters("user1").hourly == 1
        assert gate.get_rate_counters("user1").daily == 3

    def test_daily_limit(self, gate, manager, now):
        """Test daily limit applies across hours."""
        manager.update("user1", {"frequency_limits": {"max_per_hour": 10, "max_per_day": 2}})
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, now)
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, now + timedelta(hours=2))
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, now + timedelta(hours=4)).reason == "rate_limited"
        assert gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, now + timedelta(days=1, minutes=1))

    def test_denial_does_not_count(self, gate, manager, now):
        """Test blocked notifications do not consume rate budget."""
        manager.update("user1", {"categories": {"bot": False}})
        gate.admit("user1", NotificationCategory.BOT, NotificationPriority.MEDIUM, now)
        assert gate.get_rate_counters("user1") is None

    def test_reset_counters(self, gate, now):
        """Test counters can be cleared."""
        gate.admit("user1", NotificationCategory.TRADE, NotificationPriority.MEDIUM, now)
        gate.reset_counters("user1")
        assert gate.get_rate_counters("user1") is None


class TestTemplates:
    """Tests for template rendering and registry."""

    def test_render_text(self):
        """Test placeholder substitution with tolerated whitespace."""
        assert render_text("{{symbol}} @ {{ price }}", {"symbol": "AAPL", "price": 190.5}) == "AAPL @ 190.5"

    def test_unknown_variable_renders_empty(self):
        """Test unmatched keys become empty strings."""
        assert render_text("Hello {{name}}!", {}) == "Hello !"

    def test_extract_variables(self):
        """Test placeholder discovery."""
        assert extract_variables("{{a}} {{ b }} {{a}}") == ["a", "b"]

    def test_builtins_installed(self):
        """Test builtin templates exist and are locked."""
        registry = TemplateRegistry(InMemoryStore())
        ids = {t.template_id for t in registry.list_templates()}
        assert {"trade_executed", "price_target", "bot_update", "big_move",
                "security_alert", "system_announcement", "daily_summary"} <= ids
        with pytest.raises(TemplateLockedError):
            registry.update("trade_executed", name="Mine")
        with pytest.raises(TemplateLockedError):
            registry.delete("trade_executed")

    def test_render_merges_default_data(self):
        """Test variables override template defaults."""
        registry = TemplateRegistry(InMemoryStore())
        template = registry.require("trade_executed")
        rendered = render(template, {"side": "BUY", "quantity": 10, "symbol": "AAPL", "price": "190.00"})
        assert rendered["body"] == "Your bot BUY 10 AAPL @ $190.00"
        rendered = render(template, {"bot_name": "Momo", "side": "SELL", "quantity": 1, "symbol": "TSLA", "price": "1"})
        assert rendered["body"].startswith("Momo SELL")

    def test_create_requires_fields(self):
        """Test custom template validation."""
        registry = TemplateRegistry(InMemoryStore())
        with pytest.raises(ValidationError):
            registry.create("", "t", "b", NotificationCategory.SYSTEM)
        with pytest.raises(ValidationError):
            registry.create("n", "t", "b", "crypto")

    def test_custom_template_lifecycle(self):
        """Test create, update and delete of a custom template."""
        registry = TemplateRegistry(InMemoryStore())
        template = registry.create("Earnings", "{{symbol}} earnings", "Reports {{when}}", NotificationCategory.PRICE)
        assert template.variables == ["symbol", "when"]
        updated = registry.update(template.template_id, body_template="Reports on {{date}}")
        assert updated.variables == ["symbol", "date"]
        assert registry.delete(template.template_id) is True
        assert registry.get(template.template_id) is None
        with pytest.raises(NotFoundError):
            registry.update(template.template_id, name="x")

    def test_referenced_template_is_locked(self):
        """Test templates used by history cannot be edited."""
        registry = TemplateRegistry(InMemoryStore(), is_referenced=lambda template_id: True)
        template = registry.create("Earnings", "t", "b", NotificationCategory.PRICE)
        with pytest.raises(TemplateLockedError):
            registry.update(template.template_id, name="Other")


class TestSubscriptionRegistry:
    """Tests for subscription registration."""

    @pytest.fixture
    def registry(self):
        return SubscriptionRegistry(InMemoryStore())

    def test_register_browser_requires_keys(self, registry):
        """Test browser subscriptions need p256dh and auth."""
        with pytest.raises(ValidationError):
            registry.register("user1", Platform.BROWSER, "https://push.example/abc")
        with pytest.raises(ValidationError):
            registry.register("user1", Platform.BROWSER, "https://push.example/abc", keys={"p256dh": "x"})

    def test_register_mobile(self, registry):
        """Test mobile token registration."""
        sub = registry.register("user1", Platform.ANDROID, "fcm-token-1", device_info={"device_model": "Pixel 8"})
        assert sub.is_active
        assert sub.device_name == "Pixel 8"
        assert registry.get_active("user1") == [sub]

    def test_reregistration_is_idempotent(self, registry, browser_keys, now):
        """Test re-registering the same endpoint updates in place."""
        first = registry.register("user1", Platform.BROWSER, "https://push.example/abc", keys=browser_keys, now=now)
        registry.deactivate(first.subscription_id)
        later = now + timedelta(days=1)
        second = registry.register("user2", Platform.BROWSER, "https://push.example/abc", keys=browser_keys, now=later)

        assert second.subscription_id == first.subscription_id
        assert second.is_active
        assert second.user_id == "user2"
        assert second.last_used_at == later
        assert len(registry.get_user_subscriptions("user1")) == 0
        assert len(registry.get_user_subscriptions("user2")) == 1

    def test_unregister_soft_deactivates(self, registry):
        """Test unregister keeps the record."""
        sub = registry.register("user1", Platform.IOS, "apns-token")
        assert registry.unregister("user1", "apns-token") is True
        assert registry.unregister("user1", "apns-token") is False
        assert registry.get(sub.subscription_id).is_active is False
        assert registry.get_active("user1") == []

    def test_unregister_other_users_token(self, registry):
        """Test a user cannot unregister someone else's token."""
        registry.register("user1", Platform.IOS, "apns-token")
        assert registry.unregister("user2", "apns-token") is False

    def test_deactivate_twice(self, registry):
        """Test deactivation reports only the first change."""
        sub = registry.register("user1", Platform.ANDROID, "tok")
        assert registry.deactivate(sub.subscription_id) is True
        assert registry.deactivate(sub.subscription_id) is False

    def test_get_active_by_platform(self, registry, browser_keys):
        """Test platform filtering."""
        registry.register("user1", Platform.ANDROID, "tok")
        registry.register("user1", Platform.BROWSER, "https://push.example/1", keys=browser_keys)
        assert [s.platform for s in registry.get_active("user1", Platform.BROWSER)] == [Platform.BROWSER]

    def test_stale_and_stats(self, registry, now):
        """Test stale detection and statistics."""
        registry.register("user1", Platform.ANDROID, "old", now=now - timedelta(days=120))
        registry.register("user2", Platform.IOS, "new", now=now)
        stale = registry.get_stale(90, now=now)
        assert [s.endpoint_or_token for s in stale] == ["old"]
        stats = registry.get_stats()
        assert stats["active_subscriptions"] == 2
        assert stats["by_platform"]["ios"] == 1
        assert stats["unique_users"] == 2

    @pytest.mark.parametrize("user_agent,expected", [
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)", "iPhone"),
        ("Mozilla/5.0 (Linux; Android 14; Pixel 8)", "Android"),
        ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "Windows"),
        ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)", "Mac"),
        (None, "Unknown Device"),
        ("curl/8.0", "Unknown Device"),
    ])
    def test_detect_device_name(self, user_agent, expected):
        """Test device names from user agents."""
        assert detect_device_name(user_agent) == expected


class TestHistoryAndBadges:
    """Tests for history and badge counts."""

    @pytest.fixture
    def history(self):
        return NotificationHistory(InMemoryStore())

    def _add(self, history, category=NotificationCategory.TRADE, created_at=None, user_id="user1"):
        notification = Notification(
            user_id=user_id, title="t", body="b", category=category,
            created_at=created_at or datetime.now(UTC),
        )
        return history.append(notification)

    def test_list_newest_first_with_paging(self, history, now):
        """Test history ordering and paging."""
        ids = [self._add(history, created_at=now + timedelta(minutes=i)).notification_id for i in range(5)]
        page = history.list("user1", limit=2, offset=1)
        assert [n.notification_id for n in page] == [ids[3], ids[2]]

    def test_get_scoped_to_user(self, history):
        """Test users cannot read each other's notifications."""
        notification = self._add(history)
        assert history.get("user2", notification.notification_id) is None

    def test_badge_counts(self, history):
        """Test unread counts by category and priority."""
        badges = BadgeTracker(history)
        self._add(history, NotificationCategory.TRADE)
        self._add(history, NotificationCategory.TRADE)
        self._add(history, NotificationCategory.PRICE)
        counts = badges.get_counts("user1")
        assert counts.total == 3
        assert counts.by_category == {"trade": 2, "price": 1}
        assert counts.by_priority == {"medium": 3}

    def test_observer_increments_cached_counts(self, history):
        """Test dispatcher observer keeps the cache current."""
        badges = BadgeTracker(history)
        assert badges.get_counts("user1").total == 0
        notification = self._add(history)
        badges.on_notification(notification)
        assert badges.get_counts("user1").total == 1

    def test_mark_read_idempotent(self, history):
        """Test marking read twice changes counts once."""
        badges = BadgeTracker(history)
        notification = self._add(history)
        self._add(history)
        assert badges.mark_read("user1", notification.notification_id) is True
        assert badges.mark_read("user1", notification.notification_id) is False
        assert badges.get_counts("user1").total == 1
        assert badges.mark_all_read("user1") == 1
        assert badges.mark_all_read("user1") == 0
        assert badges.get_counts("user1").total == 0

    def test_clear_category(self, history):
        """Test clearing one category's badges."""
        badges = BadgeTracker(history)
        self._add(history, NotificationCategory.TRADE)
        self._add(history, NotificationCategory.BOT)
        assert badges.clear_category("user1", NotificationCategory.TRADE) == 1
        assert badges.get_counts("user1").by_category == {"bot": 1}

    def test_cleanup_older_than(self, history, now):
        """Test age-based cleanup."""
        self._add(history, created_at=now - timedelta(days=100))
        recent = self._add(history, created_at=now - timedelta(days=1))
        assert history.cleanup_older_than(90, now=now) == 1
        assert [n.notification_id for n in history.list("user1")] == [recent.notification_id]

    def test_template_reference(self, history):
        """Test detection of template use."""
        notification = Notification(user_id="u", title="t", body="b", category=NotificationCategory.TRADE, template_id="tpl1")
        history.append(notification)
        assert history.is_template_referenced("tpl1")
        assert not history.is_template_referenced("tpl2")


class TestRecurrence:
    """Tests for next occurrence calculation."""

    def test_daily(self):
        """Test daily recurrence adds one day."""
        start = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
        assert next_occurrence(start, RecurrenceRule(type=RecurrenceType.DAILY)) == datetime(2025, 1, 2, 9, 0, tzinfo=UTC)

    def test_daily_interval(self):
        """Test daily recurrence with interval."""
        start = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
        assert next_occurrence(start, RecurrenceRule(type=RecurrenceType.DAILY, interval=3)) == datetime(2025, 1, 4, 9, 0, tzinfo=UTC)

    def test_weekly_next_listed_day(self):
        """Test Monday with days [1, 3] goes to Wednesday."""
        monday = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)
        rule = RecurrenceRule(type=RecurrenceType.WEEKLY, days_of_week=[1, 3])
        assert next_occurrence(monday, rule) == datetime(2025, 1, 8, 9, 0, tzinfo=UTC)

    def test_weekly_wraps_to_next_week(self):
        """Test Wednesday with days [1, 3] wraps to next Monday."""
        wednesday = datetime(2025, 1, 8, 9, 0, tzinfo=UTC)
        rule = RecurrenceRule(type=RecurrenceType.WEEKLY, days_of_week=[1, 3])
        assert next_occurrence(wednesday, rule) == datetime(2025, 1, 13, 9, 0, tzinfo=UTC)

    def test_weekly_wrap_with_interval(self):
        """Test fortnightly wrap skips a week."""
        wednesday = datetime(2025, 1, 8, 9, 0, tzinfo=UTC)
        rule = RecurrenceRule(type=RecurrenceType.WEEKLY, interval=2, days_of_week=[1, 3])
        assert next_occurrence(wednesday, rule) == datetime(2025, 1, 20, 9, 0, tzinfo=UTC)

    def test_weekly_sunday(self):
        """Test Saturday with Sunday listed wraps one day."""
        saturday = datetime(2025, 1, 11, 9, 0, tzinfo=UTC)
        rule = RecurrenceRule(type=RecurrenceType.WEEKLY, days_of_week=[0])
        assert next_occurrence(saturday, rule) == datetime(2025, 1, 12, 9, 0, tzinfo=UTC)

    def test_weekly_without_days(self):
        """Test plain weekly adds seven days."""
        start = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)
        assert next_occurrence(start, RecurrenceRule(type=RecurrenceType.WEEKLY)) == datetime(2025, 1, 13, 9, 0, tzinfo=UTC)

    def test_monthly_clamps_day(self):
        """Test day 31 clamps to end of February."""
        start = datetime(2025, 1, 31, 9, 0, tzinfo=UTC)
        rule = RecurrenceRule(type=RecurrenceType.MONTHLY, day_of_month=31)
        assert next_occurrence(start, rule) == datetime(2025, 2, 28, 9, 0, tzinfo=UTC)
        assert next_occurrence(datetime(2025, 2, 28, 9, 0, tzinfo=UTC), rule) == datetime(2025, 3, 31, 9, 0, tzinfo=UTC)

    def test_once(self):
        """Test one-off schedules have no next occurrence."""
        assert next_occurrence(datetime(2025, 1, 1, tzinfo=UTC), RecurrenceRule()) is None


class TestScheduler:
    """Tests for scheduled notification promotion."""

    @pytest.fixture
    def enqueued(self):
        return []

    @pytest.fixture
    def scheduler(self, enqueued):
        store = InMemoryStore()

        def enqueue(item):
            enqueued.append(item)
            return item.item_id

        return Scheduler(TemplateRegistry(store), enqueue, store=store)

    def test_schedule_validation(self, scheduler, now):
        """Test required fields and timezone awareness."""
        with pytest.raises(ValidationError):
            scheduler.schedule("user1", now, title="t")
        with pytest.raises(ValidationError):
            scheduler.schedule("user1", datetime(2025, 1, 1), title="t", body="b", category="system")
        with pytest.raises(NotFoundError):
            scheduler.schedule("user1", now, template_id="nope")

    @pytest.mark.asyncio
    async def test_tick_promotes_due_items(self, scheduler, enqueued, now):
        """Test due items are enqueued and marked sent."""
        due = scheduler.schedule("user1", now - timedelta(minutes=1), title="t", body="b", category="system")
        future = scheduler.schedule("user1", now + timedelta(hours=1), title="t", body="b", category="system")

        report = await scheduler.tick(now)

        assert report.promoted == 1
        assert [i.data["schedule_id"] for i in enqueued] == [due.schedule_id]
        assert scheduler.get(due.schedule_id).status == ScheduleStatus.SENT
        assert scheduler.get(due.schedule_id).sent_at == now
        assert scheduler.get(future.schedule_id).status == ScheduleStatus.PENDING

    @pytest.mark.asyncio
    async def test_template_rendered_at_promotion(self, scheduler, enqueued, now):
        """Test templated schedules render with their variables."""
        scheduler.schedule(
            "user1", now, template_id="bot_update",
            variables={"bot_name": "Grid", "status": "paused", "message": "Low balance"},
        )
        await scheduler.tick(now)
        assert enqueued[0].title == "Grid paused"
        assert enqueued[0].category == NotificationCategory.BOT

    @pytest.mark.asyncio
    async def test_daily_recurrence_creates_one_successor(self, scheduler, now):
        """Test a recurring item spawns exactly one next occurrence."""
        first = scheduler.schedule(
            "user1", now, title="t", body="b", category="system",
            recurrence={"type": "daily"},
        )
        await scheduler.tick(now)
        await scheduler.tick(now)  # nothing new is due

        pending = scheduler.get_user_scheduled("user1")
        assert len(pending) == 1
        assert pending[0].scheduled_for == now + timedelta(days=1)
        assert scheduler.get(first.schedule_id).successor_id == pending[0].schedule_id
        assert pending[0].recurrence.type == RecurrenceType.DAILY

    @pytest.mark.asyncio
    async def test_recurrence_stops_at_end_date(self, scheduler, now):
        """Test no successor past end_date."""
        scheduler.schedule(
            "user1", now, title="t", body="b", category="system",
            recurrence=RecurrenceRule(type=RecurrenceType.DAILY, end_date=now + timedelta(hours=12)),
        )
        report = await scheduler.tick(now)
        assert report.successors == 0
        assert scheduler.get_user_scheduled("user1") == []

    @pytest.mark.asyncio
    async def test_failure_marks_failed_and_continues(self, now):
        """Test an enqueue failure marks the occurrence failed but keeps recurrence."""
        store = InMemoryStore()

        def enqueue(item):
            raise RuntimeError("queue unavailable")

        scheduler = Scheduler(TemplateRegistry(store), enqueue, store=store)
        item = scheduler.schedule(
            "user1", now, title="t", body="b", category="system",
            recurrence={"type": "weekly"},
        )
        report = await scheduler.tick(now)

        failed = scheduler.get(item.schedule_id)
        assert report.failed == 1
        assert failed.status == ScheduleStatus.FAILED
        assert "queue unavailable" in failed.failure_reason
        assert len(scheduler.get_user_scheduled("user1")) == 1

    @pytest.mark.asyncio
    async def test_plain_end_date_keeps_series_running(self, scheduler):
        """Test a date-only endDate allows occurrences through that day."""
        start = datetime(2025, 1, 9, 9, 0, tzinfo=UTC)
        scheduler.schedule(
            "user1", start, title="t", body="b", category="system",
            recurrence={"type": "daily", "endDate": "2025-01-10"},
        )

        report = await scheduler.tick(start)
        assert report.successors == 1
        pending = scheduler.get_user_scheduled("user1")
        assert [s.scheduled_for for s in pending] == [datetime(2025, 1, 10, 9, 0, tzinfo=UTC)]

        report = await scheduler.tick(datetime(2025, 1, 10, 9, 0, tzinfo=UTC))
        assert report.promoted == 1
        assert report.successors == 0
        assert scheduler.get_user_scheduled("user1") == []

    def test_invalid_end_date_is_validation_error(self, scheduler, now):
        """Test a malformed endDate is rejected when scheduling."""
        with pytest.raises(ValidationError):
            scheduler.schedule(
                "user1", now, title="t", body="b", category="system",
                recurrence={"type": "daily", "endDate": "someday"},
            )

    @pytest.mark.asyncio
    async def test_monthly_anchored_to_first_occurrence_day(self, scheduler):
        """Test monthly series keep the first day of month after a short month."""
        start = datetime(2025, 1, 31, 9, 0, tzinfo=UTC)
        first = scheduler.schedule(
            "user1", start, title="t", body="b", category="system",
            recurrence={"type": "monthly"},
        )
        assert first.recurrence.day_of_month == 31

        await scheduler.tick(start)
        february = scheduler.get_user_scheduled("user1")[0]
        assert february.scheduled_for == datetime(2025, 2, 28, 9, 0, tzinfo=UTC)

        await scheduler.tick(february.scheduled_for)
        march = scheduler.get_user_scheduled("user1")[0]
        assert march.scheduled_for == datetime(2025, 3, 31, 9, 0, tzinfo=UTC)

    def test_cancel_and_update(self, scheduler, now):
        """Test cancel and update are pending-only."""
        item = scheduler.schedule("user1", now + timedelta(hours=1), title="t", body="b", category="system")
        updated = scheduler.update(item.schedule_id, title="New title", priority="high")
        assert updated.title == "New title"
        assert updated.priority == NotificationPriority.HIGH
        assert scheduler.cancel(item.schedule_id) is True
        assert scheduler.cancel(item.schedule_id) is False
        with pytest.raises(ValidationError):
            scheduler.update(item.schedule_id, title="Too late")
        assert scheduler.get_user_scheduled("user1") == []
        assert len(scheduler.get_user_scheduled("user1", include_completed=True)) == 1

    @pytest.mark.asyncio
    async def test_only_owned_users_promoted(self, now):
        """Test partition filtering during a tick."""
        store = InMemoryStore()
        enqueued = []
        scheduler = Scheduler(
            TemplateRegistry(store),
            lambda item: enqueued.append(item),
            store=store,
            owns=lambda user_id: user_id == "mine",
        )
        scheduler.schedule("mine", now, title="t", body="b", category="system")
        scheduler.schedule("theirs", now, title="t", body="b", category="system")
        await scheduler.tick(now)
        assert [i.user_id for i in enqueued] == ["mine"]


class TestPartition:
    """Tests for worker partitioning."""

    def test_single_worker_owns_everything(self):
        """Test one worker handles all users."""
        assert partition_for("anyone", 1) == 0
        assert owns("anyone", 0, 1)

    def test_stable_and_in_range(self):
        """Test partition is deterministic and bounded."""
        for i in range(50):
            user_id = f"user{i}"
            p = partition_for(user_id, 4)
            assert 0 <= p < 4
            assert partition_for(user_id, 4) == p

    def test_exactly_one_owner(self):
        """Test every user is owned by exactly one worker."""
        for i in range(20):
            assert sum(owns(f"user{i}", w, 3) for w in range(3)) == 1

    def test_invalid_worker_count(self):
        """Test zero workers is rejected."""
        with pytest.raises(ValueError):
            partition_for("user1", 0)
