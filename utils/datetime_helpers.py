"""
Datetime helper utilities to ensure consistent timezone handling across the application.

Order timestamps are stored as naive UTC (DateTime(timezone=False)). These helpers
keep timezone-aware values from leaking into order columns and comparisons.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> ensure_naive_datetime(aware_dt).tzinfo is None
        True
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string from the wire into a naive UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_naive_datetime(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_naive_datetime(datetime.fromisoformat(text))


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a naive UTC datetime for the wire"""
    if dt is None:
        return None
    return ensure_naive_datetime(dt).isoformat() + "Z"


def seconds_until(dt: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds from now until dt (negative when already past)"""
    if dt is None:
        return None
    now = now or utc_now()
    return (ensure_naive_datetime(dt) - now).total_seconds()
