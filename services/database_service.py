"""
Database service for Supabase operations.

Handles:
- Tenant, provider and calendar-connection lookups
- Booking conflict queries
- Calendar event / appointment persistence
- Contact upserts

Every query is scoped by organization_id. The Supabase client is synchronous,
so each call runs in a worker thread to keep the event loop free.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from postgrest.exceptions import APIError

from config import (
    logger,
    BOOKING_CONFLICT_CODES,
    EVENT_CONFIRMED,
)
from models.records import (
    Appointment,
    CalendarConnection,
    CalendarEvent,
    Contact,
    Provider,
    ProviderSchedule,
    ScheduleOverride,
    Tenant,
)
from utils.datetime_utils import _iso


class BookingConflictError(Exception):
    """Raised when the database rejects a booking that overlaps another."""


class SupabaseRepository:
    def __init__(self, client):
        self.supabase = client

    async def _run(self, query_fn):
        return await asyncio.to_thread(query_fn)

    # -------------------------------------------------------------------------
    # Tenants & calendar connections
    # -------------------------------------------------------------------------

    async def get_tenant(self, organization_id: str) -> Optional[Tenant]:
        res = await self._run(
            lambda: self.supabase.table("organizations")
            .select(
                "id, name, timezone, business_hours_schedule, notification_email, "
                "notification_phone, webhook_enabled, webhook_url, webhook_secret"
            )
            .eq("id", organization_id)
            .limit(1)
            .execute()
        )
        if not res.data:
            logger.warning(f"[DB] No organization found for id={organization_id}")
            return None
        return Tenant.from_row(res.data[0])

    async def get_calendar_connection(self, organization_id: str) -> Optional[CalendarConnection]:
        res = await self._run(
            lambda: self.supabase.table("google_calendar_connections")
            .select("organization_id, access_token, refresh_token, token_expires_at, selected_calendars")
            .eq("organization_id", organization_id)
            .limit(1)
            .execute()
        )
        if not res.data:
            return None
        return CalendarConnection.from_row(res.data[0])

    async def save_access_token(self, organization_id: str, access_token: str, expires_at: datetime) -> None:
        await self._run(
            lambda: self.supabase.table("google_calendar_connections")
            .update({"access_token": access_token, "token_expires_at": _iso(expires_at)})
            .eq("organization_id", organization_id)
            .execute()
        )

    # -------------------------------------------------------------------------
    # Providers
    # -------------------------------------------------------------------------

    async def get_active_provider(self, organization_id: str, provider_id: str) -> Optional[Provider]:
        res = await self._run(
            lambda: self.supabase.table("providers")
            .select("id, organization_id, name, role, is_active")
            .eq("id", provider_id)
            .eq("organization_id", organization_id)
            .eq("is_active", True)
            .limit(1)
            .execute()
        )
        return Provider.from_row(res.data[0]) if res.data else None

    async def list_active_providers(self, organization_id: str) -> List[Provider]:
        res = await self._run(
            lambda: self.supabase.table("providers")
            .select("id, organization_id, name, role, is_active")
            .eq("organization_id", organization_id)
            .eq("is_active", True)
            .execute()
        )
        return [Provider.from_row(row) for row in (res.data or [])]

    async def list_provider_schedules(self, provider_id: str) -> List[ProviderSchedule]:
        res = await self._run(
            lambda: self.supabase.table("provider_schedules")
            .select("provider_id, day_of_week, start_time, end_time, is_available")
            .eq("provider_id", provider_id)
            .execute()
        )
        return [ProviderSchedule.from_row(row) for row in (res.data or [])]

    async def get_schedule_override(self, provider_id: str, override_date: str) -> Optional[ScheduleOverride]:
        res = await self._run(
            lambda: self.supabase.table("provider_schedule_overrides")
            .select("provider_id, override_date, is_available, start_time, end_time")
            .eq("provider_id", provider_id)
            .eq("override_date", override_date)
            .limit(1)
            .execute()
        )
        return ScheduleOverride.from_row(res.data[0]) if res.data else None

    # -------------------------------------------------------------------------
    # Calendar events
    # -------------------------------------------------------------------------

    async def find_conflicts(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        provider_id: Optional[str] = None,
        exclude_event_id: Optional[str] = None,
    ) -> List[str]:
        """Ids of confirmed events overlapping [start, end)."""
        def _query():
            q = (
                self.supabase.table("calendar_events")
                .select("id")
                .eq("organization_id", organization_id)
                .eq("status", EVENT_CONFIRMED)
                .lt("start_time", _iso(end))
                .gt("end_time", _iso(start))
            )
            if provider_id:
                q = q.eq("provider_id", provider_id)
            if exclude_event_id:
                q = q.neq("id", exclude_event_id)
            return q.limit(1).execute()

        res = await self._run(_query)
        return [row["id"] for row in (res.data or [])]

    async def insert_calendar_event(self, payload: Dict[str, Any]) -> CalendarEvent:
        try:
            res = await self._run(
                lambda: self.supabase.table("calendar_events").insert(payload).execute()
            )
        except APIError as e:
            if e.code in BOOKING_CONFLICT_CODES:
                raise BookingConflictError(e.message) from e
            raise
        if not res.data:
            raise RuntimeError("Insert into calendar_events returned no row")
        return CalendarEvent.from_row(res.data[0])

    async def get_calendar_event(self, organization_id: str, event_id: str) -> Optional[CalendarEvent]:
        res = await self._run(
            lambda: self.supabase.table("calendar_events")
            .select("*")
            .eq("id", event_id)
            .eq("organization_id", organization_id)
            .limit(1)
            .execute()
        )
        return CalendarEvent.from_row(res.data[0]) if res.data else None

    async def find_upcoming_events_by_phone(
        self,
        organization_id: str,
        phones: Sequence[str],
        now: datetime,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[CalendarEvent]:
        def _query():
            q = (
                self.supabase.table("calendar_events")
                .select(
                    "id, organization_id, provider_id, title, description, start_time, end_time, "
                    "status, customer_name, customer_phone, external_id, sync_status, appointment_id"
                )
                .eq("organization_id", organization_id)
                .eq("status", EVENT_CONFIRMED)
                .in_("customer_phone", list(phones))
                .gt("start_time", _iso(now))
            )
            if window_start is not None and window_end is not None:
                q = q.gte("start_time", _iso(window_start)).lte("start_time", _iso(window_end))
            return q.order("start_time", desc=False).execute()

        res = await self._run(_query)
        return [CalendarEvent.from_row(row) for row in (res.data or [])]

    async def update_calendar_event(self, organization_id: str, event_id: str, fields: Dict[str, Any]) -> bool:
        try:
            res = await self._run(
                lambda: self.supabase.table("calendar_events")
                .update(fields)
                .eq("id", event_id)
                .eq("organization_id", organization_id)
                .execute()
            )
        except APIError as e:
            if e.code in BOOKING_CONFLICT_CODES:
                raise BookingConflictError(e.message) from e
            raise
        return bool(res.data)

    # -------------------------------------------------------------------------
    # Appointments
    # -------------------------------------------------------------------------

    async def insert_appointment(self, payload: Dict[str, Any]) -> Optional[Appointment]:
        try:
            res = await self._run(
                lambda: self.supabase.table("appointments").insert(payload).execute()
            )
        except APIError as e:
            logger.warning(f"[DB] Appointment insert failed (non-fatal): {e.message}")
            return None
        return Appointment.from_row(res.data[0]) if res.data else None

    async def update_appointment_for_event(
        self, organization_id: str, calendar_event_id: str, fields: Dict[str, Any]
    ) -> bool:
        res = await self._run(
            lambda: self.supabase.table("appointments")
            .update(fields)
            .eq("calendar_event_id", calendar_event_id)
            .eq("organization_id", organization_id)
            .execute()
        )
        return bool(res.data)

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    async def find_contact(self, organization_id: str, phones: Sequence[str]) -> Optional[Contact]:
        res = await self._run(
            lambda: self.supabase.table("contacts")
            .select("id, organization_id, name, phone, address, email, notes, status")
            .eq("organization_id", organization_id)
            .in_("phone", list(phones))
            .limit(1)
            .execute()
        )
        return Contact.from_row(res.data[0]) if res.data else None

    async def upsert_contact(self, payload: Dict[str, Any]) -> Optional[Contact]:
        res = await self._run(
            lambda: self.supabase.table("contacts")
            .upsert(payload, on_conflict="organization_id,phone")
            .execute()
        )
        return Contact.from_row(res.data[0]) if res.data else None
