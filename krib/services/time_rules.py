"""
Time rules and conversions.
Handles HH:MM parsing, half-hour pickers and timezone conversions.
"""
from datetime import date, datetime, time
from typing import Optional
import pytz
from ..config import settings


def parse_hhmm(value: str) -> Optional[time]:
    """
    Parse an "HH:MM" string into a time. Returns None when malformed.
    """
    if not value or not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        return None
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return time(hour, minute)


def format_hhmm(minutes_since_midnight: int) -> str:
    return f"{minutes_since_midnight // 60:02d}:{minutes_since_midnight % 60:02d}"


def time_to_minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def format_12h(value: str) -> str:
    """
    "16:30" -> "4:30 PM"
    """
    t = parse_hhmm(value)
    if t is None:
        return value
    suffix = "PM" if t.hour >= 12 else "AM"
    hour = t.hour % 12 or 12
    return f"{hour}:{t.minute:02d} {suffix}"


def resolve_timezone(timezone_str: Optional[str]):
    try:
        return pytz.timezone(timezone_str or settings.tz_default)
    except pytz.UnknownTimeZoneError:
        return pytz.timezone(settings.tz_default)


def local_to_utc(local_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert local datetime to UTC.

    Args:
        local_datetime: Local datetime (naive)
        timezone_str: Timezone string (e.g., "America/New_York")

    Returns:
        UTC datetime (timezone-aware)
    """
    tz = resolve_timezone(timezone_str)
    if local_datetime.tzinfo is None:
        local_dt = tz.localize(local_datetime)
    else:
        local_dt = local_datetime.astimezone(tz)
    return local_dt.astimezone(pytz.UTC)


def utc_to_local(utc_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (timezone-aware or naive UTC)
        timezone_str: Timezone string

    Returns:
        Local datetime (timezone-aware)
    """
    tz = resolve_timezone(timezone_str)
    if utc_datetime.tzinfo is None:
        utc_dt = utc_datetime.replace(tzinfo=pytz.UTC)
    else:
        utc_dt = utc_datetime.astimezone(pytz.UTC)
    return utc_dt.astimezone(tz)


def combine_date_time(date_val: date, time_val: time, timezone_str: str) -> datetime:
    """
    Combine a local date and time into a timezone-aware UTC datetime.
    """
    naive_dt = datetime.combine(date_val, time_val)
    return local_to_utc(naive_dt, timezone_str)


def today_in_timezone(timezone_str: Optional[str], now: Optional[datetime] = None) -> date:
    now = now or datetime.now(pytz.UTC)
    return utc_to_local(now, timezone_str).date()


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Treat naive datetimes (as returned by SQLite) as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)
