"""
Service modules package.

This package contains business logic services for:
- Database operations (Supabase)
- Business hours and slot search
- Calendar integration
- Booking, cancellation and rescheduling
- Contacts and notifications
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from config import Settings, get_supabase
from utils.datetime_utils import utc_now

from .appointment_management_service import AppointmentService
from .business_hours import BusinessHours
from .calendar_service import CalendarGateway, CalendarSyncError
from .contact_service import ContactService, WebhookNotifier
from .database_service import BookingConflictError, SupabaseRepository
from .errors import ServiceError
from .scheduling_service import AvailabilityService, find_available_slots, get_date_range
from .side_effects import SideEffectQueue


@dataclass
class ServiceContainer:
    repo: SupabaseRepository
    gateway: CalendarGateway
    availability: AvailabilityService
    appointments: AppointmentService
    contacts: ContactService
    side_effects: SideEffectQueue


def build_services(
    settings: Settings,
    client=None,
    gateway: Optional[CalendarGateway] = None,
    notifier: Optional[WebhookNotifier] = None,
    clock: Callable[[], datetime] = utc_now,
) -> ServiceContainer:
    """Wire every service against one repository and one side-effect queue."""
    repo = SupabaseRepository(client if client is not None else get_supabase(settings))
    gateway = gateway or CalendarGateway(repo, settings, clock=clock)
    notifier = notifier or WebhookNotifier(settings)
    side_effects = SideEffectQueue(
        max_attempts=settings.side_effect_max_attempts,
        backoff_seconds=settings.side_effect_backoff_seconds,
    )
    contacts = ContactService(repo, clock=clock)

    return ServiceContainer(
        repo=repo,
        gateway=gateway,
        availability=AvailabilityService(repo, gateway, clock=clock),
        appointments=AppointmentService(
            repo, gateway, contacts, notifier, side_effects, clock=clock
        ),
        contacts=contacts,
        side_effects=side_effects,
    )


__all__ = [
    "AppointmentService",
    "AvailabilityService",
    "BookingConflictError",
    "BusinessHours",
    "CalendarGateway",
    "CalendarSyncError",
    "ContactService",
    "ServiceContainer",
    "ServiceError",
    "SideEffectQueue",
    "SupabaseRepository",
    "WebhookNotifier",
    "build_services",
    "find_available_slots",
    "get_date_range",
]
