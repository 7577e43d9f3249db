"""
Typed records for rows read from Supabase.

Rows are validated once at the data-access boundary so the scheduling logic
never handles raw dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import DEFAULT_TZ, EVENT_CONFIRMED, SYNC_PENDING_PUSH
from utils.datetime_utils import _iso, parse_timestamp


def _opt_timestamp(value: Any) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


@dataclass
class Tenant:
    id: str
    name: str
    timezone: str = DEFAULT_TZ
    business_hours_schedule: Optional[Dict[str, Any]] = None
    notification_email: Optional[str] = None
    notification_phone: Optional[str] = None
    webhook_enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Tenant":
        schedule = row.get("business_hours_schedule")
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            timezone=row.get("timezone") or DEFAULT_TZ,
            business_hours_schedule=schedule if isinstance(schedule, dict) else None,
            notification_email=row.get("notification_email"),
            notification_phone=row.get("notification_phone"),
            webhook_enabled=bool(row.get("webhook_enabled")),
            webhook_url=row.get("webhook_url"),
            webhook_secret=row.get("webhook_secret"),
        )


@dataclass
class Provider:
    id: str
    organization_id: str
    name: str
    role: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Provider":
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row.get("name") or "",
            role=row.get("role"),
            is_active=bool(row.get("is_active", True)),
        )


@dataclass
class ProviderSchedule:
    """Weekly working window for a provider; day_of_week uses 0=Sunday."""

    provider_id: str
    day_of_week: int
    start_time: str
    end_time: str
    is_available: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProviderSchedule":
        return cls(
            provider_id=row["provider_id"],
            day_of_week=int(row["day_of_week"]),
            start_time=str(row["start_time"])[:5],
            end_time=str(row["end_time"])[:5],
            is_available=bool(row.get("is_available", True)),
        )


@dataclass
class ScheduleOverride:
    provider_id: str
    override_date: str
    is_available: bool
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScheduleOverride":
        return cls(
            provider_id=row["provider_id"],
            override_date=str(row["override_date"]),
            is_available=bool(row.get("is_available")),
            start_time=str(row["start_time"])[:5] if row.get("start_time") else None,
            end_time=str(row["end_time"])[:5] if row.get("end_time") else None,
        )


@dataclass
class CalendarEvent:
    """Authoritative local booking record."""

    id: str
    organization_id: str
    start_time: datetime
    end_time: datetime
    title: str = ""
    description: Optional[str] = None
    provider_id: Optional[str] = None
    status: str = EVENT_CONFIRMED
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    source: str = "native"
    external_id: Optional[str] = None
    external_calendar_id: Optional[str] = None
    sync_status: str = SYNC_PENDING_PUSH
    appointment_id: Optional[str] = None

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CalendarEvent":
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            start_time=parse_timestamp(row["start_time"]),
            end_time=parse_timestamp(row["end_time"]),
            title=row.get("title") or "",
            description=row.get("description"),
            provider_id=row.get("provider_id"),
            status=row.get("status") or EVENT_CONFIRMED,
            customer_name=row.get("customer_name"),
            customer_phone=row.get("customer_phone"),
            source=row.get("source") or "native",
            external_id=row.get("external_id"),
            external_calendar_id=row.get("external_calendar_id"),
            sync_status=row.get("sync_status") or SYNC_PENDING_PUSH,
            appointment_id=row.get("appointment_id"),
        )


@dataclass
class Appointment:
    """Business-facing projection of a CalendarEvent."""

    id: str
    organization_id: str
    scheduled_start: datetime
    scheduled_end: datetime
    status: str
    calendar_event_id: Optional[str] = None
    provider_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    issue_description: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Appointment":
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            scheduled_start=parse_timestamp(row["scheduled_start"]),
            scheduled_end=parse_timestamp(row["scheduled_end"]),
            status=row["status"],
            calendar_event_id=row.get("calendar_event_id"),
            provider_id=row.get("provider_id"),
            customer_name=row.get("customer_name"),
            customer_phone=row.get("customer_phone"),
            issue_description=row.get("issue_description"),
            notes=row.get("notes"),
        )


@dataclass
class Contact:
    id: str
    organization_id: str
    phone: str
    name: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    status: str = "lead"
    notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Contact":
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            phone=row["phone"],
            name=row.get("name"),
            address=row.get("address"),
            email=row.get("email"),
            status=row.get("status") or "lead",
            notes=row.get("notes"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "address": self.address,
            "email": self.email,
            "notes": self.notes,
        }


@dataclass
class CalendarConnection:
    organization_id: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    token_expires_at: Optional[datetime]
    selected_calendars: List[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CalendarConnection":
        return cls(
            organization_id=row["organization_id"],
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            token_expires_at=_opt_timestamp(row.get("token_expires_at")),
            selected_calendars=list(row.get("selected_calendars") or []),
        )


@dataclass(frozen=True)
class TimeInterval:
    """A busy [start, end) block fetched from the external calendar."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


@dataclass(frozen=True)
class AvailableSlot:
    start: datetime
    end: datetime
    display: str

    def to_dict(self) -> Dict[str, str]:
        return {"start": _iso(self.start), "end": _iso(self.end), "display": self.display}
