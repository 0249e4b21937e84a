from __future__ import annotations

import re
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from notifyhub.db.models import DEFAULT_TIMEZONE

QUIET_HOURS_PATTERN = re.compile(r"([01]?[0-9]|2[0-3]):[0-5][0-9]")


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_valid_quiet_hours_time(value: str) -> bool:
    return bool(QUIET_HOURS_PATTERN.fullmatch(value))


def parse_quiet_hours_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(hour=int(hours), minute=int(minutes))


def resolve_timezone(name: str | None, fallback: str = DEFAULT_TIMEZONE) -> ZoneInfo:
    try:
        return ZoneInfo(name or fallback)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(fallback)


def is_known_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def is_within_window(local: time, start: time, end: time) -> bool:
    if start > end:
        return local >= start or local < end
    return start <= local < end


def next_window_end(now: datetime, end: time, tz: ZoneInfo) -> datetime:
    local_dt = ensure_utc(now).astimezone(tz)
    candidate = datetime.combine(local_dt.date(), end, tzinfo=tz)
    if candidate <= local_dt:
        candidate = datetime.combine(
            local_dt.date() + timedelta(days=1), end, tzinfo=tz
        )
    return candidate.astimezone(UTC)
