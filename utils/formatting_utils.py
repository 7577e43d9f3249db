"""
Formatting utilities for spoken responses.

Every string here is read aloud by the voice agent, so times are rendered in
the tenant's timezone with 12-hour clocks and no leading zeros.
"""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo


def _clock(dt: datetime, always_minutes: bool = False) -> str:
    hour = dt.hour % 12 or 12
    meridiem = "AM" if dt.hour < 12 else "PM"
    if dt.minute or always_minutes:
        return f"{hour}:{dt.minute:02d} {meridiem}"
    return f"{hour} {meridiem}"


def format_slot_display(dt: datetime, tz_str: str) -> str:
    """e.g. "Wednesday at 10 AM" or "Wednesday at 10:30 AM"."""
    local = dt.astimezone(ZoneInfo(tz_str))
    return f"{local.strftime('%A')} at {_clock(local)}"


def format_appointment_time(dt: datetime, tz_str: str) -> str:
    """e.g. "Wednesday, January 15 at 10:00 AM"."""
    local = dt.astimezone(ZoneInfo(tz_str))
    return f"{local.strftime('%A, %B')} {local.day} at {_clock(local, always_minutes=True)}"


def format_appointment_time_short(dt: datetime, tz_str: str) -> str:
    """e.g. "Wed Jan 15 at 10 AM"."""
    local = dt.astimezone(ZoneInfo(tz_str))
    return f"{local.strftime('%a %b')} {local.day} at {_clock(local)}"


def format_hour(hhmm: str) -> str:
    """Render an "HH:MM" schedule value as "9 AM" / "5:30 PM"."""
    hours, minutes = (int(part) for part in hhmm.split(":"))
    return _clock(datetime(2000, 1, 1, hours, minutes))
