"""
Appointment management service for booking, cancellation and rescheduling.

Handles:
- Creating appointments with provider selection and conflict checks
- Finding existing appointments by phone number (with disambiguation)
- Cancelling and rescheduling, mirrored onto the linked appointment row
- Handing calendar sync, contact upserts and notifications to the side-effect queue

Domain outcomes are returned as `{"success": False, "message": ...}` because
the caller is a voice agent that must always have a sentence to say.
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from config import (
    logger,
    APPOINTMENT_CANCELLED,
    APPOINTMENT_SCHEDULED,
    DEFAULT_APPT_MINUTES,
    DEFAULT_TZ,
    EVENT_CANCELLED,
    EVENT_CONFIRMED,
    LOOKUP_WINDOW_MINUTES,
    MAX_DISAMBIGUATION_CHOICES,
    SPOKEN_DISAMBIGUATION_CHOICES,
    SYNC_PENDING_PUSH,
    SYNC_SYNCED,
)
from models.records import CalendarEvent, Provider, Tenant
from models.requests import BookAppointmentArgs, CancelAppointmentArgs, RescheduleAppointmentArgs
from services.business_hours import day_index, parse_hhmm
from services.calendar_service import CalendarGateway, SYNC_CANCEL, SYNC_CREATE, SYNC_UPDATE
from services.contact_service import ContactService, WebhookNotifier
from services.database_service import BookingConflictError, SupabaseRepository
from services.errors import ServiceError
from services.side_effects import SideEffectQueue
from utils.datetime_utils import _iso, parse_datetime, utc_now
from utils.formatting_utils import format_appointment_time, format_appointment_time_short
from utils.phone_utils import mask_phone, normalize_phone, phone_variants

MSG_UNPARSEABLE = "I couldn't understand that date and time. Could you please provide it in a clearer format?"
MSG_SLOT_TAKEN = "That time slot is no longer available. Would you like me to check for other available times?"


def _fail(message: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "message": message, **extra}


def _minute_of_day(hhmm: str) -> int:
    hours, minutes = parse_hhmm(hhmm)
    return hours * 60 + minutes


class BookingLocks:
    """
    Serializes conflict-check-then-write sequences per tenant within a process.

    Locks are held weakly, so a tenant's lock disappears once no request is
    using or waiting on it. Concurrent workers are still only protected by the
    database constraint that SupabaseRepository maps to BookingConflictError.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def for_tenant(self, organization_id: str) -> asyncio.Lock:
        lock = self._locks.get(organization_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[organization_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class AppointmentService:
    def __init__(
        self,
        repo: SupabaseRepository,
        gateway: CalendarGateway,
        contacts: ContactService,
        notifier: WebhookNotifier,
        side_effects: SideEffectQueue,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.gateway = gateway
        self.contacts = contacts
        self.notifier = notifier
        self.side_effects = side_effects
        self.locks = BookingLocks()
        self._clock = clock

    # =========================================================================
    # Provider availability
    # =========================================================================

    async def check_provider_availability(
        self,
        tenant: Tenant,
        provider_id: str,
        start: datetime,
        end: datetime,
        exclude_event_id: Optional[str] = None,
    ) -> bool:
        """
        A provider is available when:
        A) their weekly schedule (if they have one) covers [start, end)
        B) no unavailable override blocks that date/time
        C) no other confirmed event assigned to them overlaps
        """
        local_start = start.astimezone(ZoneInfo(tenant.timezone))
        # Minutes past the start day's midnight; an interval running past midnight ends beyond 1440
        start_min = local_start.hour * 60 + local_start.minute
        end_min = start_min + int((end - start).total_seconds() // 60)

        schedules = await self.repo.list_provider_schedules(provider_id)
        if schedules:
            covering = [
                s for s in schedules
                if s.is_available
                and s.day_of_week == day_index(local_start.date())
                and _minute_of_day(s.start_time) <= start_min
                and end_min <= _minute_of_day(s.end_time)
            ]
            if not covering:
                logger.debug(f"[PROVIDER] {provider_id} not scheduled for {_iso(start)} -> {_iso(end)}")
                return False

        override = await self.repo.get_schedule_override(provider_id, local_start.date().isoformat())
        if override and not override.is_available:
            if not override.start_time or not override.end_time:
                return False
            if start_min < _minute_of_day(override.end_time) and end_min > _minute_of_day(override.start_time):
                return False

        conflicts = await self.repo.find_conflicts(
            tenant.id, start, end, provider_id=provider_id, exclude_event_id=exclude_event_id
        )
        return not conflicts

    async def find_available_provider(
        self,
        tenant: Tenant,
        start: datetime,
        end: datetime,
        service_type: Optional[str] = None,
    ) -> Optional[Provider]:
        """First free active provider; ones whose role matches service_type are tried first."""
        providers = await self.repo.list_active_providers(tenant.id)
        if service_type:
            wanted = service_type.strip().lower()
            providers.sort(key=lambda p: (p.role or "").strip().lower() != wanted)

        for provider in providers:
            if await self.check_provider_availability(tenant, provider.id, start, end):
                return provider
        return None

    # =========================================================================
    # Create
    # =========================================================================

    async def book_appointment(self, args: BookAppointmentArgs) -> Dict[str, Any]:
        if not args.organization_id:
            raise ServiceError("Missing organization_id", 400)

        logger.info(
            f"[BOOKING] org={args.organization_id} name={args.customer_name} "
            f"phone={mask_phone(args.customer_phone)} at={args.appointment_datetime}"
        )

        try:
            return await self._book(args)
        except ServiceError:
            raise
        except Exception as e:
            logger.error(f"[BOOKING] Unexpected error: {e}")
            return _fail(
                "I had trouble booking the appointment. "
                "Let me try again or transfer you to someone who can help."
            )

    async def _book(self, args: BookAppointmentArgs) -> Dict[str, Any]:
        if not args.customer_name or not args.customer_phone or not args.appointment_datetime:
            return _fail(
                "I need the customer's name, phone number, and preferred appointment time "
                "to book an appointment."
            )

        tenant = await self.repo.get_tenant(args.organization_id)
        if not tenant:
            raise ServiceError("Invalid organization", 403)

        start = parse_datetime(args.appointment_datetime, tenant.timezone)
        if start is None:
            return _fail(MSG_UNPARSEABLE)
        if start <= self._clock():
            return _fail("That time is in the past. Please provide a future date and time.")

        duration = args.duration_minutes if args.duration_minutes and args.duration_minutes > 0 else DEFAULT_APPT_MINUTES
        end = start + timedelta(minutes=duration)

        async with self.locks.for_tenant(tenant.id):
            provider: Optional[Provider] = None
            if args.provider_id:
                provider = await self.repo.get_active_provider(tenant.id, args.provider_id)
                if not provider:
                    return _fail(
                        "I couldn't find that provider. "
                        "Would you like me to find someone else who's available?"
                    )
                if not await self.check_provider_availability(tenant, provider.id, start, end):
                    return _fail(
                        f"{provider.name} isn't available at that time. "
                        "Would you like me to find another available time or provider?"
                    )
            else:
                # Booking without a provider is allowed
                provider = await self.find_available_provider(tenant, start, end, args.service_type)

            conflicts = await self.repo.find_conflicts(
                tenant.id, start, end, provider_id=provider.id if provider else None
            )
            if conflicts:
                logger.info(f"[BOOKING] Conflict with event(s) {conflicts}")
                return _fail(MSG_SLOT_TAKEN)

            phone = normalize_phone(args.customer_phone)
            title = (
                f"{args.service_type}: {args.customer_name}" if args.service_type
                else f"Appointment: {args.customer_name}"
            )

            try:
                event = await self.repo.insert_calendar_event({
                    "organization_id": tenant.id,
                    "provider_id": provider.id if provider else None,
                    "title": title,
                    "description": args.notes,
                    "start_time": _iso(start),
                    "end_time": _iso(end),
                    "status": EVENT_CONFIRMED,
                    "customer_name": args.customer_name,
                    "customer_phone": phone,
                    "source": "native",
                    "sync_status": SYNC_PENDING_PUSH,
                })
            except BookingConflictError as e:
                logger.warning(f"[BOOKING] Insert rejected as overlapping: {e}")
                return _fail(MSG_SLOT_TAKEN)

        appointment = await self.repo.insert_appointment({
            "organization_id": tenant.id,
            "provider_id": provider.id if provider else None,
            "calendar_event_id": event.id,
            "customer_name": args.customer_name,
            "customer_phone": phone,
            "issue_description": args.service_type or "General appointment",
            "scheduled_start": _iso(start),
            "scheduled_end": _iso(end),
            "status": APPOINTMENT_SCHEDULED,
            "notes": args.notes,
        })
        if appointment:
            event.appointment_id = appointment.id
            await self.repo.update_calendar_event(tenant.id, event.id, {"appointment_id": appointment.id})

        self._queue_calendar_sync(tenant.id, event)
        self.side_effects.submit(
            f"contact upsert phone={mask_phone(phone)}",
            lambda: self.contacts.upsert_customer(tenant.id, phone, args.customer_name),
        )
        self._notify(tenant, "appointment.booked", event)

        when = format_appointment_time(start, tenant.timezone)
        if provider:
            message = f"I've booked your appointment with {provider.name} for {when}."
        else:
            message = f"I've booked your appointment for {when}."

        logger.info(
            f"[BOOKING] ✅ Booked event={event.id} appointment={appointment.id if appointment else None} "
            f"provider={provider.name if provider else None}"
        )
        return {
            "success": True,
            "appointment_id": event.id,
            "provider_name": provider.name if provider else None,
            "message": message,
        }

    # =========================================================================
    # Lookup shared by cancel / reschedule
    # =========================================================================

    async def _find_target(
        self,
        tenant: Tenant,
        phone: str,
        target_raw: Optional[str],
        verb: str,
        not_found_message: str,
    ) -> Tuple[Optional[CalendarEvent], Optional[Dict[str, Any]]]:
        """
        Resolve exactly one upcoming appointment for a phone number.

        Returns (event, None) on a unique match, otherwise (None, response)
        where response asks the caller to confirm details or pick one.
        """
        window_start = window_end = None
        if target_raw:
            target = parse_datetime(target_raw, tenant.timezone)
            if target is None:
                return None, _fail(MSG_UNPARSEABLE)
            window_start = target - timedelta(minutes=LOOKUP_WINDOW_MINUTES)
            window_end = target + timedelta(minutes=LOOKUP_WINDOW_MINUTES)

        events = await self.repo.find_upcoming_events_by_phone(
            tenant.id, phone_variants(phone), self._clock(), window_start, window_end
        )

        if not events:
            return None, _fail(not_found_message)

        if len(events) > 1 and not target_raw:
            spoken = ", ".join(
                format_appointment_time_short(e.start_time, tenant.timezone)
                for e in events[:SPOKEN_DISAMBIGUATION_CHOICES]
            )
            choices = [
                {
                    "id": e.id,
                    "datetime": _iso(e.start_time),
                    "display": format_appointment_time_short(e.start_time, tenant.timezone),
                }
                for e in events[:MAX_DISAMBIGUATION_CHOICES]
            ]
            return None, _fail(
                f"I see multiple upcoming appointments: {spoken}. Which one would you like to {verb}?",
                multiple_appointments=True,
                appointments=choices,
            )

        return events[0], None

    async def _load_tenant(self, organization_id: str) -> Tenant:
        tenant = await self.repo.get_tenant(organization_id)
        return tenant or Tenant(id=organization_id, name="", timezone=DEFAULT_TZ)

    # =========================================================================
    # Cancel
    # =========================================================================

    async def cancel_appointment(self, args: CancelAppointmentArgs) -> Dict[str, Any]:
        if not args.organization_id:
            raise ServiceError("Missing organization_id", 400)

        logger.info(f"[CANCEL] org={args.organization_id} phone={mask_phone(args.customer_phone)}")

        try:
            return await self._cancel(args)
        except ServiceError:
            raise
        except Exception as e:
            logger.error(f"[CANCEL] Unexpected error: {e}")
            return _fail(
                "I had trouble cancelling the appointment. "
                "Let me transfer you to someone who can help."
            )

    async def _cancel(self, args: CancelAppointmentArgs) -> Dict[str, Any]:
        if not args.customer_phone:
            return _fail("I need the customer's phone number to look up their appointment.")

        tenant = await self._load_tenant(args.organization_id)
        event, response = await self._find_target(
            tenant,
            args.customer_phone,
            args.appointment_datetime,
            verb="cancel",
            not_found_message=(
                "I don't see any upcoming appointments for that phone number. "
                "Could you confirm the phone number or the date of the appointment?"
            ),
        )
        if response:
            return response

        updated = await self.repo.update_calendar_event(tenant.id, event.id, {
            "status": EVENT_CANCELLED,
            "updated_at": _iso(self._clock()),
            "sync_status": SYNC_PENDING_PUSH,
        })
        if not updated:
            logger.error(f"[CANCEL] ❌ Failed to cancel event={event.id}")
            return _fail("I had trouble cancelling the appointment. Please try again.")
        event.status = EVENT_CANCELLED
        event.sync_status = SYNC_PENDING_PUSH

        await self._mirror_appointment(tenant.id, event.id, {"status": APPOINTMENT_CANCELLED})

        self._queue_calendar_sync(tenant.id, event)
        self._notify(tenant, "appointment.cancelled", event)

        logger.info(f"[CANCEL] ✅ Cancelled event={event.id}")
        when = format_appointment_time(event.start_time, tenant.timezone)
        return {
            "success": True,
            "cancelled_appointment_id": event.id,
            "message": f"I've cancelled your appointment for {when}. Is there anything else I can help you with?",
        }

    # =========================================================================
    # Reschedule
    # =========================================================================

    async def reschedule_appointment(self, args: RescheduleAppointmentArgs) -> Dict[str, Any]:
        if not args.organization_id:
            raise ServiceError("Missing organization_id", 400)

        logger.info(
            f"[RESCHEDULE] org={args.organization_id} phone={mask_phone(args.customer_phone)} "
            f"new={args.new_datetime}"
        )

        try:
            return await self._reschedule(args)
        except ServiceError:
            raise
        except Exception as e:
            logger.error(f"[RESCHEDULE] Unexpected error: {e}")
            return _fail(
                "I had trouble rescheduling the appointment. "
                "Let me transfer you to someone who can help."
            )

    async def _reschedule(self, args: RescheduleAppointmentArgs) -> Dict[str, Any]:
        if not args.customer_phone or not args.new_datetime:
            return _fail(
                "I need the customer's phone number and the new preferred time "
                "to reschedule the appointment."
            )

        tenant = await self._load_tenant(args.organization_id)
        event, response = await self._find_target(
            tenant,
            args.customer_phone,
            args.current_appointment_datetime,
            verb="reschedule",
            not_found_message=(
                "I couldn't find an upcoming appointment for that phone number. "
                "Could you confirm the details?"
            ),
        )
        if response:
            return response

        new_start = parse_datetime(args.new_datetime, tenant.timezone)
        if new_start is None:
            return _fail(MSG_UNPARSEABLE)
        if new_start <= self._clock():
            return _fail("The new time is in the past. Please provide a future date and time.")

        duration = (
            args.new_duration_minutes
            if args.new_duration_minutes and args.new_duration_minutes > 0
            else event.duration_minutes
        )
        new_end = new_start + timedelta(minutes=duration)
        old_start = event.start_time

        async with self.locks.for_tenant(tenant.id):
            if event.provider_id and not await self.check_provider_availability(
                tenant, event.provider_id, new_start, new_end, exclude_event_id=event.id
            ):
                return _fail(
                    "That provider isn't available at the new time. "
                    "Would you like me to check other available times?"
                )

            conflicts = await self.repo.find_conflicts(
                tenant.id, new_start, new_end,
                provider_id=event.provider_id,
                exclude_event_id=event.id,
            )
            if conflicts:
                return _fail("That time slot is not available. Would you like me to check for other times?")

            try:
                updated = await self.repo.update_calendar_event(tenant.id, event.id, {
                    "start_time": _iso(new_start),
                    "end_time": _iso(new_end),
                    "updated_at": _iso(self._clock()),
                    "sync_status": SYNC_PENDING_PUSH,
                })
            except BookingConflictError as e:
                logger.warning(f"[RESCHEDULE] Update rejected as overlapping: {e}")
                return _fail("That time slot is not available. Would you like me to check for other times?")

        if not updated:
            logger.error(f"[RESCHEDULE] ❌ Failed to move event={event.id}")
            return _fail("I had trouble rescheduling the appointment. Please try again.")

        event.start_time, event.end_time = new_start, new_end
        event.sync_status = SYNC_PENDING_PUSH

        await self._mirror_appointment(tenant.id, event.id, {
            "scheduled_start": _iso(new_start),
            "scheduled_end": _iso(new_end),
            "updated_at": _iso(self._clock()),
        })

        self._queue_calendar_sync(tenant.id, event)
        self._notify(tenant, "appointment.rescheduled", event)

        logger.info(f"[RESCHEDULE] ✅ Moved event={event.id} {_iso(old_start)} -> {_iso(new_start)}")
        old_display = format_appointment_time_short(old_start, tenant.timezone)
        new_display = format_appointment_time(new_start, tenant.timezone)
        return {
            "success": True,
            "appointment_id": event.id,
            "message": (
                f"I've rescheduled your appointment from {old_display} to {new_display}. "
                "Is there anything else I can help you with?"
            ),
        }

    # =========================================================================
    # Side effects
    # =========================================================================

    async def _mirror_appointment(self, organization_id: str, event_id: str, fields: Dict[str, Any]) -> None:
        """Best-effort copy of a calendar-event change onto the linked appointment row."""
        try:
            if not await self.repo.update_appointment_for_event(organization_id, event_id, fields):
                logger.warning(f"[APPT_MGMT] No linked appointment row for event={event_id}")
        except Exception as e:
            logger.warning(f"[APPT_MGMT] Mirroring to appointments failed for event={event_id}: {e}")

    def _notify(self, tenant: Tenant, name: str, event: CalendarEvent) -> None:
        data = {
            "calendar_event_id": event.id,
            "appointment_id": event.appointment_id,
            "customer_name": event.customer_name,
            "customer_phone": event.customer_phone,
            "start_time": _iso(event.start_time),
            "end_time": _iso(event.end_time),
            "status": event.status,
            "provider_id": event.provider_id,
        }
        self.side_effects.submit(
            f"notify {name} event={event.id}",
            lambda: self.notifier.notify(tenant, name, data),
        )

    def _queue_calendar_sync(self, organization_id: str, event: CalendarEvent) -> None:
        # Inserts are not idempotent, so a create gets a single attempt
        self.side_effects.submit(
            f"calendar sync event={event.id}",
            lambda: self._sync_calendar(organization_id, event.id),
            attempts=None if event.external_id else 1,
            key=event.id,
        )

    async def _sync_calendar(self, organization_id: str, event_id: str) -> bool:
        """Push the row as it is now; create, update or cancel is decided when the push runs."""
        event = await self.repo.get_calendar_event(organization_id, event_id)
        if event is None:
            logger.warning(f"[CALENDAR_SYNC] Event {event_id} vanished before sync")
            return False

        if event.external_id:
            action = SYNC_CANCEL if event.status == EVENT_CANCELLED else SYNC_UPDATE
        elif event.status == EVENT_CANCELLED:
            # Never reached the external calendar
            await self.repo.update_calendar_event(organization_id, event_id, {"sync_status": SYNC_SYNCED})
            return True
        else:
            action = SYNC_CREATE
        return await self.gateway.push_event(organization_id, event, action)
