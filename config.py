"""
Configuration and constants for the receptionist scheduling backend.

Contains environment loading, the shared logger, tuning constants and the
Settings object that is handed to services at construction.
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from supabase import create_client

# =============================================================================
# Load Environment
# =============================================================================

load_dotenv(".env.local")

# Mute noisy transport debug logs (reduces log-bloat in production)
logging.getLogger("hpack").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.WARNING)

# =============================================================================
# STRUCTURED LOGGER
# =============================================================================

logger = logging.getLogger("receptionist")
logger.setLevel(logging.DEBUG)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S"
    ))
    logger.addHandler(handler)

# =============================================================================
# SCHEDULING CONSTANTS
# =============================================================================

DEFAULT_TZ = "America/New_York"
DEFAULT_APPT_MINUTES = 60
MAX_SLOTS = 5

# Cancel/reschedule lookups match a caller-supplied time within +/- this window
LOOKUP_WINDOW_MINUTES = 30
MAX_DISAMBIGUATION_CHOICES = 5
SPOKEN_DISAMBIGUATION_CHOICES = 3

DEFAULT_DATE_PREFERENCE = "this_week"
DATE_PREFERENCES = ("today", "tomorrow", "this_week", "next_week")

# =============================================================================
# DATABASE CONSTANTS
# =============================================================================

EVENT_CONFIRMED = "confirmed"
EVENT_CANCELLED = "cancelled"

APPOINTMENT_SCHEDULED = "scheduled"
APPOINTMENT_CANCELLED = "cancelled"

SYNC_PENDING_PUSH = "pending_push"
SYNC_SYNCED = "synced"
SYNC_FAILED = "failed"

CONTACT_CUSTOMER = "customer"

# Postgres error codes raised when a write collides with an existing booking
BOOKING_CONFLICT_CODES = {"23P01", "23505"}

# =============================================================================
# GOOGLE CALENDAR CONFIGURATION
# =============================================================================

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]
GOOGLE_CALENDAR_ID_DEFAULT = "primary"
GOOGLE_EVENTS_PAGE_SIZE = 250


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, resolved once from the environment."""

    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    environment: str = "development"
    side_effect_max_attempts: int = 2
    side_effect_backoff_seconds: float = 0.5
    notification_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID"),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
            environment=(os.getenv("ENVIRONMENT") or "development").strip().lower(),
            side_effect_max_attempts=int(os.getenv("SIDE_EFFECT_MAX_ATTEMPTS", "2")),
            side_effect_backoff_seconds=float(os.getenv("SIDE_EFFECT_BACKOFF_SEC", "0.5")),
            notification_timeout_seconds=float(os.getenv("NOTIFY_TIMEOUT_SEC", "5.0")),
        )


# =============================================================================
# SUPABASE CONFIGURATION
# =============================================================================

_supabase_client = None


def get_supabase(settings: Settings):
    """Create the Supabase client on first use."""
    global _supabase_client
    if _supabase_client is None:
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")
        _supabase_client = create_client(settings.supabase_url, settings.supabase_service_role_key)
    return _supabase_client
