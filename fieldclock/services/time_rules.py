"""
Time helpers for the clock.
All persisted instants are UTC; SQLite hands them back naive, so every read goes through ensure_utc.
"""
from datetime import datetime, time, timedelta
from typing import Optional
import pytz
import structlog

from ..config import settings

logger = structlog.get_logger(__name__)

# Seconds a fix may be stamped ahead of the receiving clock
FIX_CLOCK_SKEW_S = 30


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive values are assumed to already be UTC (that is how they are stored).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def resolve_timezone(timezone_str: Optional[str]):
    try:
        return pytz.timezone(timezone_str or settings.tz_default)
    except pytz.UnknownTimeZoneError:
        logger.warning("unknown_timezone", timezone=timezone_str, fallback=settings.tz_default)
        return pytz.timezone(settings.tz_default)


def end_of_day_utc(now: datetime, timezone_str: Optional[str]) -> datetime:
    """
    Last instant of the local day containing `now`, returned in UTC.

    Args:
        now: Reference instant (timezone-aware or naive UTC)
        timezone_str: Business timezone (e.g., "America/Vancouver")
    """
    tz = resolve_timezone(timezone_str)
    local_now = ensure_utc(now).astimezone(tz)
    local_end = tz.localize(datetime.combine(local_now.date(), time(23, 59, 59)))
    return local_end.astimezone(pytz.UTC)


def minutes_between(start: datetime, end: datetime) -> float:
    """Exact elapsed minutes between two instants (fractional, not rounded)."""
    return (ensure_utc(end) - ensure_utc(start)) / timedelta(minutes=1)


def age_seconds(captured_at: Optional[datetime], now: datetime) -> Optional[float]:
    if captured_at is None:
        return None
    return (ensure_utc(now) - ensure_utc(captured_at)).total_seconds()


def fix_is_stale(
    captured_at: Optional[datetime], now: datetime, max_age_s: float, max_skew_s: float = FIX_CLOCK_SKEW_S
) -> bool:
    """
    True when a fix is older than max_age_s, or stamped more than max_skew_s
    ahead of now (device clock skew or a forged timestamp).
    """
    age = age_seconds(captured_at, now)
    if age is None:
        return False
    return age > max_age_s or age < -max_skew_s
