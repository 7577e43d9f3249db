"""
Business-hours resolution for a tenant's weekly schedule.

Handles:
- Resolving the schedule entry for a calendar date
- Falling back to default hours when the tenant has none configured
- Summarizing the week for spoken responses
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Dict, Optional, Tuple

from config import logger
from utils.formatting_utils import format_hour

# Indexed with 0=Sunday to match the keys stored by the settings UI
DAY_NAMES = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]
WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday"]


def day_index(d: date) -> int:
    """Day of week with 0=Sunday."""
    return d.isoweekday() % 7


def parse_hhmm(value: str) -> Tuple[int, int]:
    hours, minutes = value.split(":")[:2]
    return int(hours), int(minutes)


@dataclass(frozen=True)
class DaySchedule:
    enabled: bool
    start: str
    end: str

    @property
    def opens_at(self) -> time:
        return time(*parse_hhmm(self.start))

    @property
    def closes_at(self) -> time:
        return time(*parse_hhmm(self.end))

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DaySchedule":
        return cls(
            enabled=bool(raw.get("enabled")),
            start=str(raw.get("start") or "09:00"),
            end=str(raw.get("end") or "17:00"),
        )


DEFAULT_DAY = DaySchedule(enabled=True, start="09:00", end="17:00")


class BusinessHours:
    """
    Weekly schedule for one tenant.

    A tenant without a stored schedule (or a schedule missing a day) gets
    DEFAULT_DAY; the fallback is applied here and nowhere else.
    """

    def __init__(self, schedule: Optional[Dict[str, Any]] = None):
        self.configured = bool(schedule)
        self._days: Dict[str, DaySchedule] = {}
        for name in DAY_NAMES:
            raw = (schedule or {}).get(name)
            if isinstance(raw, dict):
                try:
                    self._days[name] = DaySchedule.from_dict(raw)
                    parse_hhmm(self._days[name].start)
                    parse_hhmm(self._days[name].end)
                    continue
                except ValueError as e:
                    logger.warning(f"[HOURS] Ignoring malformed {name} entry {raw!r}: {e}")
            self._days[name] = DEFAULT_DAY

    def for_date(self, d: date) -> DaySchedule:
        return self._days[DAY_NAMES[day_index(d)]]

    def for_day_name(self, name: str) -> DaySchedule:
        return self._days[name]

    def open_interval(self, d: date, tz) -> Optional[Tuple[datetime, datetime]]:
        """Open and close instants for a date, or None when closed."""
        day = self.for_date(d)
        if not day.enabled:
            return None
        return (
            datetime.combine(d, day.opens_at, tzinfo=tz),
            datetime.combine(d, day.closes_at, tzinfo=tz),
        )

    def describe(self) -> str:
        """Spoken summary, e.g. "9 AM - 5 PM weekdays"."""
        if not self.configured:
            return "9 AM - 5 PM weekdays"

        weekdays = [self._days[name] for name in WEEKDAY_NAMES]
        first = weekdays[0]
        if first.enabled and all(d == first for d in weekdays):
            return f"{format_hour(first.start)} - {format_hour(first.end)} weekdays"

        return "Variable hours - check specific days"
