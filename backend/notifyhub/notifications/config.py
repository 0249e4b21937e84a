from __future__ import annotations

import os
from dataclasses import dataclass

from notifyhub.db.models import DEFAULT_MAX_ATTEMPTS, DEFAULT_TIMEZONE


@dataclass(frozen=True)
class NotificationConfig:
    default_timezone: str = DEFAULT_TIMEZONE
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_minutes: int = 3
    cleanup_days_to_keep: int = 30
    worker_batch_size: int = 10
    stuck_after_minutes: int = 15
    dry_run: bool = True
    worker_enabled: bool = True


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = int(raw)
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {raw!r}")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def load_notification_config() -> NotificationConfig:
    return NotificationConfig(
        default_timezone=os.getenv("NOTIFICATION_DEFAULT_TIMEZONE", DEFAULT_TIMEZONE),
        max_attempts=_env_int("NOTIFICATION_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
        backoff_base_minutes=_env_int("NOTIFICATION_BACKOFF_BASE_MINUTES", 3),
        cleanup_days_to_keep=_env_int("NOTIFICATION_CLEANUP_DAYS", 30),
        worker_batch_size=_env_int("NOTIFICATION_WORKER_BATCH_SIZE", 10),
        stuck_after_minutes=_env_int("NOTIFICATION_STUCK_AFTER_MINUTES", 15),
        dry_run=_env_bool("NOTIFICATION_DRY_RUN", True),
        worker_enabled=_env_bool("NOTIFICATION_WORKER_ENABLED", True),
    )
