"""
Pydantic models for tool-call request bodies.

Every field is optional at this layer: the voice agent must always receive a
sayable answer, so missing or mistyped values are coerced to None here and
reported by the services as domain failures instead of 422 errors.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

# Fields typed as whole minutes; everything else is text
_MINUTE_FIELDS = frozenset({"duration_minutes", "new_duration_minutes"})


def _sanitize_tool_arg(value: Any) -> Any:
    """Sanitize tool arguments - removes empty strings and 'null' literals."""
    if isinstance(value, str):
        value = value.strip()
        if value.lower() in ("", "null", "none", "undefined"):
            return None
    return value


def _coerce_minutes(value: Any) -> Optional[int]:
    """Accept 30, 30.0, "30" or "30 minutes"; anything else (e.g. "an hour") is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        match = re.match(r"(\d+)(?![\d.])", value)
        return int(match.group(1)) if match else None
    return None


def _coerce_text(value: Any) -> Optional[str]:
    """Numbers become strings (a phone sent as 5551234567); other non-text is dropped."""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


class _ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _clean(cls, value: Any, info: ValidationInfo) -> Any:
        value = _sanitize_tool_arg(value)
        if value is None:
            return None
        if info.field_name in _MINUTE_FIELDS:
            return _coerce_minutes(value)
        return _coerce_text(value)


class CheckAvailabilityArgs(_ToolArgs):
    organization_id: Optional[str] = None
    date_preference: Optional[str] = None
    duration_minutes: Optional[int] = None


class BookAppointmentArgs(_ToolArgs):
    organization_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    appointment_datetime: Optional[str] = None
    duration_minutes: Optional[int] = None
    provider_id: Optional[str] = None
    service_type: Optional[str] = None
    notes: Optional[str] = None


class CancelAppointmentArgs(_ToolArgs):
    organization_id: Optional[str] = None
    customer_phone: Optional[str] = None
    appointment_datetime: Optional[str] = None


class RescheduleAppointmentArgs(_ToolArgs):
    organization_id: Optional[str] = None
    customer_phone: Optional[str] = None
    current_appointment_datetime: Optional[str] = None
    new_datetime: Optional[str] = None
    new_duration_minutes: Optional[int] = None


class LookupContactArgs(_ToolArgs):
    organization_id: Optional[str] = None
    phone: Optional[str] = None


class SaveContactArgs(_ToolArgs):
    organization_id: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
