"""
Scheduling service for appointment slot search.

Handles:
- Date-range presets ("today", "tomorrow", "this_week", "next_week")
- First-fit slot search against business hours and busy intervals
- The checkAvailability operation used by the voice agent
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from config import (
    logger,
    DEFAULT_APPT_MINUTES,
    DEFAULT_DATE_PREFERENCE,
    DEFAULT_TZ,
    MAX_SLOTS,
)
from models.records import AvailableSlot, TimeInterval
from models.requests import CheckAvailabilityArgs
from services.business_hours import BusinessHours
from services.calendar_service import CalendarGateway
from services.database_service import SupabaseRepository
from utils.datetime_utils import _iso, ceil_to_hour, utc_now
from utils.formatting_utils import format_slot_display


def _end_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=23, minute=59, second=59, microsecond=999999)


def get_date_range(preference: Optional[str], tz_str: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    Resolve a spoken date preference into a search window in the tenant's timezone.

    - today:     next hour through end of today
    - tomorrow:  all of tomorrow
    - this_week: next hour through the coming Sunday
    - next_week (and anything unrecognized): next hour through 14 days out
    """
    tz = ZoneInfo(tz_str)
    now = (now or utc_now()).astimezone(tz)
    next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

    if preference == "today":
        return next_hour, _end_of_day(now)

    if preference == "tomorrow":
        tomorrow = now + timedelta(days=1)
        return tomorrow.replace(hour=0, minute=0, second=0, microsecond=0), _end_of_day(tomorrow)

    if preference == "this_week":
        # Sunday counts as the last day of the week, so on Sunday look a full week ahead
        days_until_sunday = 7 - (next_hour.isoweekday() % 7)
        return next_hour, _end_of_day(now + timedelta(days=days_until_sunday))

    return next_hour, _end_of_day(now + timedelta(days=14))


def _is_free(start: datetime, end: datetime, busy: Sequence[TimeInterval]) -> bool:
    for block in busy:
        if start < block.end and end > block.start:
            return False
    return True


def find_available_slots(
    start_date: datetime,
    end_date: datetime,
    business_hours: BusinessHours,
    existing_events: Sequence[TimeInterval],
    duration_minutes: int,
    tz_str: str,
    max_slots: int = MAX_SLOTS,
) -> List[AvailableSlot]:
    """
    First-fit search for hour-aligned slots.

    Days run from start_date to end_date inclusive in the tenant's timezone.
    Within an open day, candidates start at the later of opening time and
    start_date rounded up to the hour, step one hour, and stop once a
    candidate would end after closing. The max_slots limit is global across
    days.
    """
    tz = ZoneInfo(tz_str)
    start_local = start_date.astimezone(tz)
    end_local = end_date.astimezone(tz)
    earliest = ceil_to_hour(start_local)
    duration = timedelta(minutes=duration_minutes)

    slots: List[AvailableSlot] = []
    day = start_local.date()

    while day <= end_local.date() and len(slots) < max_slots:
        interval = business_hours.open_interval(day, tz)
        if interval:
            day_open, day_close = interval
            candidate = max(day_open, earliest)

            while candidate + duration <= day_close and len(slots) < max_slots:
                candidate_end = candidate + duration
                if _is_free(candidate, candidate_end, existing_events):
                    slots.append(AvailableSlot(
                        start=candidate,
                        end=candidate_end,
                        display=format_slot_display(candidate, tz_str),
                    ))
                candidate += timedelta(hours=1)

        day += timedelta(days=1)

    return slots


def _unavailable(error: str, next_available: str) -> Dict[str, Any]:
    return {
        "error": error,
        "available_slots": [],
        "next_available": next_available,
        "business_hours": "Unknown",
    }


class AvailabilityService:
    def __init__(
        self,
        repo: SupabaseRepository,
        gateway: CalendarGateway,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.gateway = gateway
        self._clock = clock

    async def check_availability(self, args: CheckAvailabilityArgs) -> Dict[str, Any]:
        """Answer "when can I come in?" for the voice agent. Always returns a sayable payload."""
        organization_id = args.organization_id
        preference = args.date_preference or DEFAULT_DATE_PREFERENCE
        duration = args.duration_minutes if args.duration_minutes and args.duration_minutes > 0 else DEFAULT_APPT_MINUTES

        logger.info(f"[AVAILABILITY] org={organization_id} preference={preference} duration={duration}")

        if not organization_id:
            return _unavailable("Organization ID required", "Unable to check calendar - missing organization")

        try:
            access_token = await self.gateway.get_valid_access_token(organization_id)
            if not access_token:
                logger.warning(f"[AVAILABILITY] No calendar connection for org={organization_id}")
                return _unavailable(
                    "Calendar not connected",
                    "Calendar is not connected. Please ask the customer for their preferred time.",
                )

            calendar_id, tenant = await asyncio.gather(
                self.gateway.get_selected_calendar_id(organization_id),
                self.repo.get_tenant(organization_id),
            )
            tz_str = tenant.timezone if tenant else DEFAULT_TZ
            hours = BusinessHours(tenant.business_hours_schedule if tenant else None)

            start, end = get_date_range(preference, tz_str, self._clock())
            logger.info(f"[AVAILABILITY] Fetching events calendar={calendar_id} {_iso(start)} -> {_iso(end)}")

            busy = await self.gateway.fetch_events(access_token, calendar_id, start, end)
            slots = find_available_slots(start, end, hours, busy, duration, tz_str)

            logger.info(f"[AVAILABILITY] {len(busy)} busy blocks, {len(slots)} slots found")

            return {
                "available_slots": [slot.to_dict() for slot in slots],
                "next_available": slots[0].display if slots else "No available slots in the requested time period",
                "business_hours": hours.describe(),
            }

        except Exception as e:
            logger.error(f"[AVAILABILITY] Unexpected error for org={organization_id}: {e}")
            return _unavailable("Failed to check availability", "Unable to check calendar at this time")
