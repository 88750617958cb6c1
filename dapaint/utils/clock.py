"""Timezone helpers shared by the lifecycle rules."""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def time_until(starts_at: datetime, now: Optional[datetime] = None) -> timedelta:
    """Signed time remaining until starts_at; negative once started."""
    now = ensure_utc(now) if now else utc_now()
    return ensure_utc(starts_at) - now


def within_hours(starts_at: datetime, hours: int, now: Optional[datetime] = None) -> bool:
    """True when starts_at is at most `hours` away (inclusive), or already past."""
    return time_until(starts_at, now) <= timedelta(hours=hours)
