"""
Utility modules for the receptionist scheduling backend.
"""

from .datetime_utils import _iso, ceil_to_hour, parse_datetime, parse_timestamp, utc_now
from .phone_utils import mask_phone, normalize_phone, phone_variants
from .formatting_utils import (
    format_appointment_time,
    format_appointment_time_short,
    format_hour,
    format_slot_display,
)

__all__ = [
    "_iso",
    "ceil_to_hour",
    "parse_datetime",
    "parse_timestamp",
    "utc_now",
    "mask_phone",
    "normalize_phone",
    "phone_variants",
    "format_appointment_time",
    "format_appointment_time_short",
    "format_hour",
    "format_slot_display",
]
