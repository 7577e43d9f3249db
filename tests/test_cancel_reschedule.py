from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import httplib2
import pytest
from googleapiclient.errors import HttpError

from models.requests import BookAppointmentArgs, CancelAppointmentArgs, RescheduleAppointmentArgs
from services import build_services
from services.calendar_service import CalendarGateway, SYNC_CREATE
from services.database_service import SupabaseRepository
from services.errors import ServiceError
from tests.conftest import FIXED_NOW, ORG_ID
from tests.fakes import FakeGoogleService, StubCalendarGateway
from utils.datetime_utils import _iso

NY = ZoneInfo("America/New_York")
PHONE = "+15551234567"


def _seed_booking(db, event_id, start, minutes=60, phone=PHONE, external_id=None, provider_id=None, status="confirmed"):
    end = start + timedelta(minutes=minutes)
    db.seed("calendar_events", {
        "id": event_id,
        "organization_id": ORG_ID,
        "provider_id": provider_id,
        "title": "Appointment: Jamie Rivera",
        "start_time": _iso(start),
        "end_time": _iso(end),
        "status": status,
        "customer_name": "Jamie Rivera",
        "customer_phone": phone,
        "external_id": external_id,
        "sync_status": "synced" if external_id else "pending_push",
        "appointment_id": f"appt-{event_id}",
    })
    db.seed("appointments", {
        "id": f"appt-{event_id}",
        "organization_id": ORG_ID,
        "calendar_event_id": event_id,
        "scheduled_start": _iso(start),
        "scheduled_end": _iso(end),
        "status": "scheduled",
    })


def _event(db, event_id):
    return next(e for e in db.rows("calendar_events") if e["id"] == event_id)


def _appointment(db, event_id):
    return next(a for a in db.rows("appointments") if a["calendar_event_id"] == event_id)


# =============================================================================
# Cancel
# =============================================================================


async def test_cancel_asks_which_when_several_match(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))
    _seed_booking(db, "evt-2", datetime(2025, 1, 16, 14, 0, tzinfo=NY))

    result = await services.appointments.cancel_appointment(
        CancelAppointmentArgs(organization_id=ORG_ID, customer_phone="555-123-4567")
    )

    assert result["success"] is False
    assert result["multiple_appointments"] is True
    assert [a["id"] for a in result["appointments"]] == ["evt-1", "evt-2"]
    assert all(a["display"] for a in result["appointments"])
    assert result["message"] == (
        "I see multiple upcoming appointments: Wed Jan 15 at 10 AM, Thu Jan 16 at 2 PM. "
        "Which one would you like to cancel?"
    )
    assert all(e["status"] == "confirmed" for e in db.rows("calendar_events"))


async def test_cancel_with_time_picks_the_matching_appointment(services, db, gateway, notifier):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))
    _seed_booking(db, "evt-2", datetime(2025, 1, 16, 14, 0, tzinfo=NY), external_id="g-2")

    result = await services.appointments.cancel_appointment(
        CancelAppointmentArgs(
            organization_id=ORG_ID,
            customer_phone="5551234567",
            appointment_datetime="2025-01-16T14:20:00",
        )
    )
    await services.side_effects.drain()

    assert result["success"] is True
    assert result["cancelled_appointment_id"] == "evt-2"
    assert result["message"] == (
        "I've cancelled your appointment for Thursday, January 16 at 2:00 PM. "
        "Is there anything else I can help you with?"
    )
    assert _event(db, "evt-2")["status"] == "cancelled"
    assert _appointment(db, "evt-2")["status"] == "cancelled"
    assert _event(db, "evt-1")["status"] == "confirmed"
    assert gateway.pushed == [("cancel", "evt-2")]
    assert [name for name, _ in notifier.sent] == ["appointment.cancelled"]


async def test_cancel_unsynced_event_skips_calendar_push(services, db, gateway):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))

    result = await services.appointments.cancel_appointment(
        CancelAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE)
    )
    await services.side_effects.drain()

    assert result["success"] is True
    assert gateway.pushed == []


async def test_cancel_time_outside_window_finds_nothing(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))

    result = await services.appointments.cancel_appointment(
        CancelAppointmentArgs(
            organization_id=ORG_ID,
            customer_phone=PHONE,
            appointment_datetime="2025-01-15T11:00:00",
        )
    )

    assert result["success"] is False
    assert "don't see any upcoming appointments" in result["message"]


async def test_cancel_ignores_past_and_cancelled_appointments(services, db):
    _seed_booking(db, "evt-old", datetime(2025, 1, 10, 10, 0, tzinfo=NY))
    _seed_booking(db, "evt-gone", datetime(2025, 1, 15, 10, 0, tzinfo=NY), status="cancelled")

    result = await services.appointments.cancel_appointment(
        CancelAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE)
    )

    assert result["success"] is False
    assert "multiple_appointments" not in result


async def test_cancel_is_scoped_to_the_organization(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))

    result = await services.appointments.cancel_appointment(
        CancelAppointmentArgs(organization_id="org-other", customer_phone=PHONE)
    )

    assert result["success"] is False
    assert _event(db, "evt-1")["status"] == "confirmed"


async def test_cancel_unparseable_time(services, db):
    result = await services.appointments.cancel_appointment(
        CancelAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, appointment_datetime="whenever")
    )

    assert result["success"] is False
    assert "couldn't understand" in result["message"]


async def test_cancel_requires_phone(services):
    result = await services.appointments.cancel_appointment(CancelAppointmentArgs(organization_id=ORG_ID))

    assert result["success"] is False
    assert "phone number" in result["message"]


async def test_cancel_requires_organization(services):
    with pytest.raises(ServiceError) as exc:
        await services.appointments.cancel_appointment(CancelAppointmentArgs(customer_phone=PHONE))

    assert exc.value.status_code == 400


# =============================================================================
# Reschedule
# =============================================================================


async def test_reschedule_moves_event_and_keeps_duration(services, db, gateway, notifier):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY), minutes=45, external_id="g-1")

    result = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(
            organization_id=ORG_ID,
            customer_phone="555-123-4567",
            new_datetime="2025-01-17T13:00:00",
        )
    )
    await services.side_effects.drain()

    assert result["success"] is True
    assert result["appointment_id"] == "evt-1"
    assert result["message"] == (
        "I've rescheduled your appointment from Wed Jan 15 at 10 AM to Friday, January 17 at 1:00 PM. "
        "Is there anything else I can help you with?"
    )

    event = _event(db, "evt-1")
    assert event["start_time"] == _iso(datetime(2025, 1, 17, 13, 0, tzinfo=NY))
    assert event["end_time"] == _iso(datetime(2025, 1, 17, 13, 45, tzinfo=NY))
    assert event["status"] == "confirmed"
    assert event["sync_status"] == "pending_push"
    assert _appointment(db, "evt-1")["scheduled_start"] == event["start_time"]
    assert _appointment(db, "evt-1")["scheduled_end"] == event["end_time"]
    assert gateway.pushed == [("update", "evt-1")]
    assert [name for name, _ in notifier.sent] == ["appointment.rescheduled"]


async def test_reschedule_never_synced_event_creates_externally(services, db, gateway):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))

    await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-17T13:00:00")
    )
    await services.side_effects.drain()

    assert gateway.pushed == [("create", "evt-1")]


async def test_reschedule_duration_override(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))

    await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(
            organization_id=ORG_ID,
            customer_phone=PHONE,
            new_datetime="2025-01-17T13:00:00",
            new_duration_minutes=30,
        )
    )
    await services.side_effects.drain()

    assert _event(db, "evt-1")["end_time"] == _iso(datetime(2025, 1, 17, 13, 30, tzinfo=NY))


async def test_reschedule_may_overlap_its_own_old_slot(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY), provider_id="prov-lee")

    result = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-15T10:30:00")
    )
    await services.side_effects.drain()

    assert result["success"] is True


async def test_reschedule_into_taken_slot_is_refused(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))
    _seed_booking(db, "evt-other", datetime(2025, 1, 17, 13, 0, tzinfo=NY), phone="+15550001111")

    result = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-17T13:30:00")
    )

    assert result["success"] is False
    assert "not available" in result["message"]
    assert _event(db, "evt-1")["start_time"] == _iso(datetime(2025, 1, 15, 10, 0, tzinfo=NY))


async def test_reschedule_to_past_time(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))

    result = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-12T10:00:00")
    )

    assert result["success"] is False
    assert "in the past" in result["message"]


async def test_reschedule_asks_which_when_several_match(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))
    _seed_booking(db, "evt-2", datetime(2025, 1, 16, 14, 0, tzinfo=NY))

    result = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-17T13:00:00")
    )

    assert result["multiple_appointments"] is True
    assert len(result["appointments"]) == 2
    assert result["message"].endswith("Which one would you like to reschedule?")


async def test_reschedule_with_current_time_narrows_the_match(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))
    _seed_booking(db, "evt-2", datetime(2025, 1, 16, 14, 0, tzinfo=NY))

    result = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(
            organization_id=ORG_ID,
            customer_phone=PHONE,
            current_appointment_datetime="2025-01-15T10:00:00",
            new_datetime="2025-01-17T13:00:00",
        )
    )
    await services.side_effects.drain()

    assert result["appointment_id"] == "evt-1"


async def test_reschedule_requires_new_time(services, db):
    result = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE)
    )

    assert result["success"] is False
    assert "new preferred time" in result["message"]


# =============================================================================
# Provider checks on reschedule
# =============================================================================


async def test_reschedule_onto_provider_day_off_is_refused(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY), provider_id="prov-lee")
    db.seed("provider_schedule_overrides", {
        "provider_id": "prov-lee",
        "override_date": "2025-01-17",
        "is_available": False,
        "start_time": None,
        "end_time": None,
    })

    result = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-17T13:00:00")
    )

    assert result["success"] is False
    assert "provider isn't available at the new time" in result["message"]
    assert _event(db, "evt-1")["start_time"] == _iso(datetime(2025, 1, 15, 10, 0, tzinfo=NY))


async def test_reschedule_outside_provider_schedule_is_refused(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY), provider_id="prov-lee")
    # Wednesdays 09:00-17:00 only
    db.seed("provider_schedules", {
        "provider_id": "prov-lee",
        "day_of_week": 3,
        "start_time": "09:00:00",
        "end_time": "17:00:00",
        "is_available": True,
    })

    other_day = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-17T13:00:00")
    )
    past_closing = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-15T16:30:00")
    )

    for result in (other_day, past_closing):
        assert result["success"] is False
        assert "provider isn't available at the new time" in result["message"]
    assert _event(db, "evt-1")["start_time"] == _iso(datetime(2025, 1, 15, 10, 0, tzinfo=NY))


async def test_reschedule_onto_providers_other_booking_is_refused(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY), provider_id="prov-lee")
    _seed_booking(db, "evt-other", datetime(2025, 1, 17, 13, 0, tzinfo=NY), phone="+15550001111", provider_id="prov-lee")

    result = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-17T13:30:00")
    )

    assert result["success"] is False
    assert result["message"].startswith("That provider isn't available at the new time.")


async def test_concurrent_reschedules_into_one_provider_slot(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY), provider_id="prov-lee")
    _seed_booking(db, "evt-2", datetime(2025, 1, 16, 10, 0, tzinfo=NY), phone="+15550001111", provider_id="prov-lee")

    results = await asyncio.gather(
        services.appointments.reschedule_appointment(
            RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-17T13:00:00")
        ),
        services.appointments.reschedule_appointment(
            RescheduleAppointmentArgs(
                organization_id=ORG_ID, customer_phone="555-000-1111", new_datetime="2025-01-17T13:30:00"
            )
        ),
    )
    await services.side_effects.drain()

    assert sorted(r["success"] for r in results) == [False, True]
    friday = _iso(datetime(2025, 1, 17, 13, 0, tzinfo=NY)), _iso(datetime(2025, 1, 17, 13, 30, tzinfo=NY))
    moved = [e for e in db.rows("calendar_events") if e["start_time"] in friday]
    assert len(moved) == 1


# =============================================================================
# Calendar sync after cancel / reschedule
# =============================================================================


class SlowCreateGateway(StubCalendarGateway):
    """Holds external inserts until released, then records the external id like a real push."""

    def __init__(self, repo, settings) -> None:
        super().__init__(repo, settings)
        self.release = asyncio.Event()

    async def push_event(self, organization_id, event, action):
        self.pushed.append((action, event.id))
        if action == SYNC_CREATE:
            await self.release.wait()
            await self.repo.update_calendar_event(organization_id, event.id, {
                "external_id": f"g-{event.id}",
                "sync_status": "synced",
            })
        return True


def _book_args():
    return BookAppointmentArgs(
        organization_id=ORG_ID,
        customer_name="Jamie Rivera",
        customer_phone="555-123-4567",
        appointment_datetime="2025-01-14T10:00:00",
    )


async def test_cancel_marks_row_pending_until_pushed(services, db):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY), external_id="g-1")

    result = await services.appointments.cancel_appointment(
        CancelAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE)
    )

    assert result["success"] is True
    assert _event(db, "evt-1")["sync_status"] == "pending_push"
    await services.side_effects.drain()


async def test_cancel_push_failure_leaves_row_failed(db, settings, notifier, clock):
    google = FakeGoogleService()
    google.errors["delete"] = HttpError(httplib2.Response({"status": "500"}), b"{}")
    gateway = CalendarGateway(SupabaseRepository(db), settings, service_factory=google.factory, clock=clock)
    services = build_services(settings, client=db, gateway=gateway, notifier=notifier, clock=clock)
    db.seed("google_calendar_connections", {
        "organization_id": ORG_ID,
        "access_token": "token-current",
        "refresh_token": "refresh-1",
        "token_expires_at": _iso(FIXED_NOW + timedelta(hours=1)),
        "selected_calendars": None,
    })
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY), external_id="g-1")

    result = await services.appointments.cancel_appointment(
        CancelAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE)
    )
    await services.side_effects.drain()

    assert result["success"] is True
    event = _event(db, "evt-1")
    assert event["status"] == "cancelled"
    assert event["sync_status"] == "failed"
    assert [method for method, _ in google.calls] == ["delete", "delete"]
    assert services.side_effects.failures == 1


async def test_cancel_of_never_synced_event_settles_sync_status(services, db, gateway):
    _seed_booking(db, "evt-1", datetime(2025, 1, 15, 10, 0, tzinfo=NY))

    await services.appointments.cancel_appointment(CancelAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE))
    await services.side_effects.drain()

    assert gateway.pushed == []
    assert _event(db, "evt-1")["sync_status"] == "synced"


async def test_reschedule_while_create_in_flight_updates_instead_of_inserting_twice(db, settings, notifier, clock):
    gateway = SlowCreateGateway(SupabaseRepository(db), settings)
    services = build_services(settings, client=db, gateway=gateway, notifier=notifier, clock=clock)

    booked = await services.appointments.book_appointment(_book_args())
    moved = await services.appointments.reschedule_appointment(
        RescheduleAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE, new_datetime="2025-01-17T13:00:00")
    )
    gateway.release.set()
    await services.side_effects.drain()

    event_id = booked["appointment_id"]
    assert moved["success"] is True
    assert gateway.pushed == [("create", event_id), ("update", event_id)]
    assert _event(db, event_id)["external_id"] == f"g-{event_id}"


async def test_cancel_while_create_in_flight_deletes_the_new_external_event(db, settings, notifier, clock):
    gateway = SlowCreateGateway(SupabaseRepository(db), settings)
    services = build_services(settings, client=db, gateway=gateway, notifier=notifier, clock=clock)

    booked = await services.appointments.book_appointment(_book_args())
    await services.appointments.cancel_appointment(CancelAppointmentArgs(organization_id=ORG_ID, customer_phone=PHONE))
    gateway.release.set()
    await services.side_effects.drain()

    event_id = booked["appointment_id"]
    assert gateway.pushed == [("create", event_id), ("cancel", event_id)]
