from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Engine 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    ISO-8601 text (sale/movement/expense timestamps, range bounds) to a
    UTC-naive datetime. Naive input is taken as UTC; an offset or trailing Z
    is converted. Blank input gives None; garbage raises ValueError.
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    if dt.tzinfo is None:
        return dt

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def normalize_timestamp(value) -> datetime:
    """
    Normalize a caller-supplied timestamp to canonical UTC-naive datetime.

    Accepts None (-> now), datetime (aware is converted to UTC), date
    (midnight), or an ISO-8601 string. Raises ValueError on anything else.
    """
    if value is None:
        return utcnow()

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    if isinstance(value, date):
        return datetime.combine(value, time.min)

    if isinstance(value, str):
        dt = parse_iso_datetime(value)
        if dt is None:
            raise ValueError("invalid timestamp")
        return dt

    raise ValueError("invalid timestamp")


def end_of_day(value: date) -> datetime:
    """Inclusive upper bound for a calendar day."""
    return datetime.combine(value, time.min) + timedelta(days=1) - timedelta(microseconds=1)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Stored (naive UTC) datetime to the "...Z" form every to_dict() returns."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
