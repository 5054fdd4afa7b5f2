"""
Date helpers shared by the analytics service.

Every timestamp read from storage goes through ``to_datetime`` before it is
compared or used in arithmetic. Stored values arrive as native datetimes,
ISO strings, epoch numbers, or timestamp wrappers exposing an accessor.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from ..config import settings


RANGE_DAYS = {
    "1w": 7,
    "2w": 14,
    "4w": 28,
    "8w": 56,
    "12w": 84,
}

_ACCESSORS = ("to_datetime", "ToDatetime", "toDate", "to_date")


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_epoch(value: float) -> Optional[datetime]:
    # Values past year 2286 in seconds are treated as milliseconds
    seconds = value / 1000.0 if abs(value) >= 1e10 else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def to_datetime(value: Any) -> Optional[datetime]:
    """Normalize any supported timestamp shape into an aware UTC datetime.

    Unparseable input yields ``None`` rather than raising.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _aware(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _from_epoch(float(value))
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        try:
            return _aware(datetime.fromisoformat(raw))
        except ValueError:
            return None
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            return None
        nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
        try:
            return _from_epoch(float(seconds) + float(nanos) / 1e9)
        except (TypeError, ValueError):
            return None
    for name in _ACCESSORS:
        accessor = getattr(value, name, None)
        if callable(accessor):
            try:
                converted = accessor()
            except Exception:
                return None
            if isinstance(converted, (datetime, date)):
                return to_datetime(converted)
            return None
    return None


def isoformat(value: Any) -> Optional[str]:
    dt = to_datetime(value)
    return dt.isoformat() if dt else None


def normalize_range(range_token: Optional[str]) -> str:
    token = (range_token or "").strip().lower()
    if token in RANGE_DAYS:
        return token
    return settings.analytics_default_range if settings.analytics_default_range in RANGE_DAYS else "4w"


def range_days(range_token: Optional[str]) -> int:
    return RANGE_DAYS[normalize_range(range_token)]


def get_time_range_dates(range_token: Optional[str], now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    end = _aware(now) if now else utcnow()
    start = end - timedelta(days=range_days(range_token))
    return start, end


def get_previous_range_dates(range_token: Optional[str], now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Window of equal length immediately before the current one."""
    start, end = get_time_range_dates(range_token, now)
    return start - (end - start), start


def in_window(value: Optional[datetime], start: datetime, end: datetime) -> bool:
    return value is not None and start <= value <= end


def format_date(value: Any) -> str:
    dt = to_datetime(value)
    if not dt:
        return "-"
    return f"{dt.strftime('%b')} {dt.day}, {dt.year}"


def format_time_range(range_token: Optional[str], now: Optional[datetime] = None) -> str:
    start, end = get_time_range_dates(range_token, now)
    return f"{format_date(start)} - {format_date(end)}"
