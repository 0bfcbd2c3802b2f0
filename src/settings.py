"""Centralized settings for the notification engine.

Uses pydantic-settings to load from environment variables (prefixed NOTIFY_)
with defaults matching NotificationConfig.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Notification engine settings loaded from environment variables."""

    # --- Database ---
    database_url: str = "sqlite:///notifications.db"
    use_database: bool = False  # False = in-memory store

    # --- Loops ---
    queue_interval_seconds: float = 1.0
    scheduler_interval_seconds: float = 60.0

    # --- Delivery queue ---
    batch_size: int = 100
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.0

    # --- Gateway fan-out ---
    max_concurrent_sends: int = 10
    send_timeout_seconds: float = 10.0

    # --- Policy defaults ---
    max_per_user_per_hour: int = 50
    max_per_user_per_day: int = 200
    history_retention_days: int = 90
    stale_subscription_days: int = 90

    # --- Web Push (VAPID) ---
    vapid_private_key: str = ""
    vapid_subject: str = "mailto:noreply@example.com"

    # --- FCM HTTP v1 ---
    fcm_project_id: str = ""
    fcm_access_token: str = ""

    # --- Worker partitioning ---
    worker_index: int = 0
    worker_count: int = 1

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"

    model_config = {
        "env_prefix": "NOTIFY_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
