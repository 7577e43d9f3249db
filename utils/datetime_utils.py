"""
Datetime helpers shared by the scheduling services.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from dateutil import parser as dtparser

from config import DEFAULT_TZ


def _iso(dt: datetime) -> str:
    """Convert datetime to a UTC ISO string (naive values are read as DEFAULT_TZ)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=ZoneInfo(DEFAULT_TZ))
    return dt.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse a timestamp read back from the database or a calendar API."""
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_datetime(raw: Optional[str], tz_str: str) -> Optional[datetime]:
    """
    Parse a caller-supplied date/time.

    Offsets in the input win; naive values are interpreted in the tenant's
    timezone. Returns None when the text cannot be parsed.
    """
    if not raw or not str(raw).strip():
        return None
    try:
        dt = dtparser.isoparse(str(raw).strip())
    except (ValueError, OverflowError):
        try:
            dt = dtparser.parse(str(raw).strip())
        except (ValueError, OverflowError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=ZoneInfo(tz_str))
    return dt


def ceil_to_hour(dt: datetime) -> datetime:
    """Round up to the next whole hour; already-aligned values are kept."""
    floored = dt.replace(minute=0, second=0, microsecond=0)
    if floored == dt:
        return dt
    return floored + timedelta(hours=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
