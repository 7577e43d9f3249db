from __future__ import annotations

from datetime import datetime, timezone

import pytest

from config import Settings
from services import build_services
from services.database_service import SupabaseRepository
from tests.fakes import FakeSupabase, RecordingNotifier, StubCalendarGateway, fixed_clock

ORG_ID = "org-alpha"
TZ = "America/New_York"

# Monday 2025-01-13, 10:00 in New York
FIXED_NOW = datetime(2025, 1, 13, 15, 0, tzinfo=timezone.utc)

WEEKDAY_HOURS = {
    "monday": {"enabled": True, "start": "09:00", "end": "17:00"},
    "tuesday": {"enabled": True, "start": "09:00", "end": "17:00"},
    "wednesday": {"enabled": True, "start": "09:00", "end": "17:00"},
    "thursday": {"enabled": True, "start": "09:00", "end": "17:00"},
    "friday": {"enabled": True, "start": "09:00", "end": "17:00"},
    "saturday": {"enabled": False, "start": "09:00", "end": "17:00"},
    "sunday": {"enabled": False, "start": "09:00", "end": "17:00"},
}


@pytest.fixture()
def settings():
    return Settings(side_effect_max_attempts=2, side_effect_backoff_seconds=0)


@pytest.fixture()
def db():
    fake = FakeSupabase()
    fake.seed("organizations", {
        "id": ORG_ID,
        "name": "Bright Smile Dental",
        "timezone": TZ,
        "business_hours_schedule": WEEKDAY_HOURS,
        "webhook_enabled": False,
    })
    return fake


@pytest.fixture()
def clock():
    return fixed_clock(FIXED_NOW)


@pytest.fixture()
def gateway(db, settings):
    return StubCalendarGateway(SupabaseRepository(db), settings)


@pytest.fixture()
def notifier(settings):
    return RecordingNotifier(settings)


@pytest.fixture()
def services(db, settings, gateway, notifier, clock):
    return build_services(settings, client=db, gateway=gateway, notifier=notifier, clock=clock)
