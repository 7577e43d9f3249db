"""
Phone number utilities for normalization and lookup.

Numbers are stored as +1XXXXXXXXXX where possible. Callers may dictate a
number in any format, so lookups match against every variant a previously
stored value could have taken.
"""

from __future__ import annotations

import re
from typing import List, Optional


def _digits(raw: str) -> str:
    return re.sub(r"\D", "", raw or "")


def normalize_phone(raw: str) -> str:
    """
    Canonicalize a phone number for storage.

    Examples:
        "555-123-4567"   -> "+15551234567"
        "1 555 123 4567" -> "+15551234567"
        "+442071234567"  -> "+442071234567"

    Malformed input is not rejected, only passed through best-effort.
    """
    raw = raw or ""
    digits = _digits(raw)

    if len(digits) == 10:
        return f"+1{digits}"

    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"

    return raw if raw.startswith("+") else f"+{digits}"


def phone_variants(raw: str) -> List[str]:
    """
    Return the deduplicated formats a stored copy of this number might use.

    The original input always comes first so an exact match wins.
    """
    raw = raw or ""
    digits = _digits(raw)
    variants = [raw]

    if len(digits) == 10:
        variants += [f"+1{digits}", f"1{digits}", digits]
    elif len(digits) == 11 and digits.startswith("1"):
        variants += [f"+{digits}", digits, digits[1:], f"+1{digits[1:]}"]

    return list(dict.fromkeys(variants))


def mask_phone(phone: Optional[str]) -> str:
    """Mask all but the last four digits for logs."""
    digits = _digits(phone or "")
    if len(digits) < 4:
        return "***"
    return f"***{digits[-4:]}"
