"""Shared configuration utilities."""

import os
from typing import Optional


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def _get_float(key: str, default: float) -> float:
    return float(get_env(key, str(default)))


def _get_int(key: str, default: int) -> int:
    return int(get_env(key, str(default)))


def _get_bool(key: str, default: bool) -> bool:
    return get_env(key, "true" if default else "false").lower() in ("1", "true", "yes", "on")


def get_database_url() -> str:
    """Get the local store database URL from environment."""
    return get_env("DATABASE_URL", "sqlite:///notepad.db", required=False)


def get_remote_store_url() -> Optional[str]:
    """Get the base URL of the remote document store, if one is configured."""
    return get_env("REMOTE_STORE_URL")


def get_default_timezone() -> str:
    """Get the timezone used for date parsing and formatting."""
    return get_env("NOTEPAD_TIMEZONE", "UTC")


def get_sync_config() -> dict:
    """Get sync engine tuning from environment.

    Delays and intervals are in seconds.
    """
    return {
        "batch_size": _get_int("SYNC_BATCH_SIZE", 20),
        "max_retries": _get_int("SYNC_MAX_RETRIES", 5),
        "base_retry_delay": _get_float("SYNC_BASE_RETRY_DELAY", 0.2),
        "page_limit": _get_int("SYNC_PAGE_LIMIT", 50),
        "error_log_limit": _get_int("SYNC_ERROR_LOG_LIMIT", 100),
        "recovery_interval": _get_float("SYNC_RECOVERY_INTERVAL", 60.0),
        "progress_interval": _get_float("SYNC_PROGRESS_INTERVAL", 0.5),
        "checkpoint_probability": _get_float("SYNC_CHECKPOINT_PROBABILITY", 0.2),
        "merge_tolerance": _get_float("SYNC_MERGE_TOLERANCE", 60.0),
    }


def get_scheduler_config() -> dict:
    """Get SmartSync timing and threshold settings from environment."""
    return {
        "local_save_delay": _get_float("SMART_SYNC_LOCAL_DELAY", 5.0),
        "cloud_sync_delay": _get_float("SMART_SYNC_CLOUD_DELAY", 30.0),
        "max_sync_delay": _get_float("SMART_SYNC_MAX_DELAY", 300.0),
        "min_change_threshold": _get_int("SMART_SYNC_MIN_CHANGE", 10),
        "significant_change_threshold": _get_int("SMART_SYNC_SIGNIFICANT_CHANGE", 100),
        "adaptive_timing": _get_bool("SMART_SYNC_ADAPTIVE", True),
        "collect_metrics": _get_bool("SMART_SYNC_METRICS", True),
    }


def get_notification_config() -> dict:
    """Get failure notification settings from environment."""
    return {
        "enabled": _get_bool("NOTIFICATIONS_ENABLED", False),
        "webhook_url": get_env("NOTIFICATION_WEBHOOK_URL"),
    }
