"""
Data models for the receptionist scheduling backend.
"""

from .records import (
    Tenant,
    Provider,
    ProviderSchedule,
    ScheduleOverride,
    CalendarEvent,
    Appointment,
    Contact,
    CalendarConnection,
    TimeInterval,
    AvailableSlot,
)
from .requests import (
    CheckAvailabilityArgs,
    BookAppointmentArgs,
    CancelAppointmentArgs,
    RescheduleAppointmentArgs,
    LookupContactArgs,
    SaveContactArgs,
    _sanitize_tool_arg,
)

__all__ = [
    "Tenant",
    "Provider",
    "ProviderSchedule",
    "ScheduleOverride",
    "CalendarEvent",
    "Appointment",
    "Contact",
    "CalendarConnection",
    "TimeInterval",
    "AvailableSlot",
    "CheckAvailabilityArgs",
    "BookAppointmentArgs",
    "CancelAppointmentArgs",
    "RescheduleAppointmentArgs",
    "LookupContactArgs",
    "SaveContactArgs",
    "_sanitize_tool_arg",
]
