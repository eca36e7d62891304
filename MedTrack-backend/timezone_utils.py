# timezone_utils.py
"""
Local time helpers. Every window and interval comparison runs in one fixed
local offset (settings.local_utc_offset_minutes).
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config import settings

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    """Current instant, timezone-aware UTC"""
    return datetime.now(timezone.utc)


def get_clock() -> Clock:
    """FastAPI dependency; tests override it with a fixed clock"""
    return system_clock


def local_timezone(offset_minutes: Optional[int] = None) -> timezone:
    if offset_minutes is None:
        offset_minutes = settings.local_utc_offset_minutes
    return timezone(timedelta(minutes=offset_minutes))


def to_utc(instant: datetime) -> datetime:
    """Naive datetimes (SQLite hands these back) are taken to be UTC"""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def to_local(instant: datetime, offset_minutes: Optional[int] = None) -> datetime:
    return to_utc(instant).astimezone(local_timezone(offset_minutes))


def now_local(clock: Clock = system_clock, offset_minutes: Optional[int] = None) -> datetime:
    return to_local(clock(), offset_minutes)


def today_start_local(clock: Clock = system_clock) -> datetime:
    return now_local(clock).replace(hour=0, minute=0, second=0, microsecond=0)


def today_end_local(clock: Clock = system_clock) -> datetime:
    return now_local(clock).replace(hour=23, minute=59, second=59, microsecond=999999)


def format_time_ago(instant: datetime, clock: Clock = system_clock) -> str:
    """Short relative label for activity feeds: 'Just now', '5m ago', '3h ago', '2d ago'"""
    diff_minutes = int((clock() - to_utc(instant)).total_seconds() // 60)

    if diff_minutes < 1:
        return "Just now"
    if diff_minutes < 60:
        return f"{diff_minutes}m ago"

    diff_hours = diff_minutes // 60
    if diff_hours < 24:
        return f"{diff_hours}h ago"

    return f"{diff_hours // 24}d ago"
