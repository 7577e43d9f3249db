"""
Calendar service for Google Calendar integration.

Handles:
- OAuth access-token validation and refresh
- Selected-calendar resolution
- Fetching busy intervals for availability
- Pushing local booking changes to the external calendar

Lookups return None / [] for expected absence (no connection, API errors) so
callers can degrade to asking the caller for a time verbally.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from config import (
    logger,
    Settings,
    GOOGLE_TOKEN_URI,
    GOOGLE_CALENDAR_SCOPES,
    GOOGLE_CALENDAR_ID_DEFAULT,
    GOOGLE_EVENTS_PAGE_SIZE,
    SYNC_FAILED,
    SYNC_SYNCED,
)
from models.records import CalendarEvent, TimeInterval
from services.database_service import SupabaseRepository
from utils.datetime_utils import _iso, parse_timestamp, utc_now

SYNC_CREATE = "create"
SYNC_UPDATE = "update"
SYNC_CANCEL = "cancel"


class CalendarSyncError(Exception):
    """A push to the external calendar did not go through."""


class CalendarGateway:
    def __init__(
        self,
        repo: SupabaseRepository,
        settings: Settings,
        service_factory: Optional[Callable[[str], object]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.settings = settings
        self._service_factory = service_factory or self._build_service
        self._clock = clock

    def _build_service(self, access_token: str):
        creds = Credentials(token=access_token, scopes=GOOGLE_CALENDAR_SCOPES)
        return build("calendar", "v3", credentials=creds, cache_discovery=False)

    def _refresh_access_token(self, refresh_token: str) -> Tuple[str, datetime]:
        """Exchange a refresh token for a new access token (blocking)."""
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=GOOGLE_CALENDAR_SCOPES,
        )
        creds.refresh(Request())
        # google-auth reports expiry as naive UTC
        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else self._clock() + timedelta(hours=1)
        return creds.token, expiry

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def get_valid_access_token(self, organization_id: str) -> Optional[str]:
        """
        Return a usable access token or None when the calendar is not connected.

        Expired tokens are refreshed and persisted. Never raises.
        """
        try:
            connection = await self.repo.get_calendar_connection(organization_id)
            if not connection:
                logger.info(f"[CALENDAR_AUTH] No calendar connection for org={organization_id}")
                return None

            expires_at = connection.token_expires_at
            if connection.access_token and expires_at and self._clock() < expires_at:
                return connection.access_token

            if not connection.refresh_token:
                logger.warning(f"[CALENDAR_AUTH] Token expired and no refresh_token for org={organization_id}")
                return None

            logger.info(f"[CALENDAR_AUTH] Refreshing expired token for org={organization_id}")
            try:
                token, new_expiry = await asyncio.to_thread(
                    self._refresh_access_token, connection.refresh_token
                )
            except GoogleAuthError as e:
                logger.error(f"[CALENDAR_AUTH] Token refresh failed for org={organization_id}: {e}")
                return None

            await self.repo.save_access_token(organization_id, token, new_expiry)
            logger.info("[CALENDAR_AUTH] Refreshed OAuth token saved to database.")
            return token

        except Exception as e:
            logger.error(f"[CALENDAR_AUTH] Token lookup error for org={organization_id}: {e}")
            return None

    async def get_selected_calendar_id(self, organization_id: str) -> str:
        connection = await self.repo.get_calendar_connection(organization_id)
        if not connection or not connection.selected_calendars:
            return GOOGLE_CALENDAR_ID_DEFAULT
        return connection.selected_calendars[0]

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def fetch_events(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> List[TimeInterval]:
        """Timed events in the window; all-day events never block a slot."""
        def _list():
            service = self._service_factory(access_token)
            return (
                service.events()
                .list(
                    calendarId=calendar_id,
                    timeMin=_iso(time_min),
                    timeMax=_iso(time_max),
                    singleEvents=True,
                    orderBy="startTime",
                    maxResults=GOOGLE_EVENTS_PAGE_SIZE,
                )
                .execute()
            )

        try:
            data = await asyncio.to_thread(_list)
        except HttpError as e:
            logger.warning(f"[CALENDAR] Event list failed ({e.resp.status}) for calendar={calendar_id}")
            return []

        busy = []
        for item in data.get("items") or []:
            start = (item.get("start") or {}).get("dateTime")
            end = (item.get("end") or {}).get("dateTime")
            if not start or not end:
                continue
            busy.append(TimeInterval(parse_timestamp(start), parse_timestamp(end)))
        return busy

    # -------------------------------------------------------------------------
    # Writes (run from the side-effect queue)
    # -------------------------------------------------------------------------

    async def push_event(self, organization_id: str, event: CalendarEvent, action: str) -> bool:
        """
        Mirror a local booking change to the external calendar.

        Returns False when the tenant has no connection (nothing to sync).
        Raises CalendarSyncError when the external API rejects the change;
        the local row is marked failed first so the divergence stays visible.
        """
        token = await self.get_valid_access_token(organization_id)
        if not token:
            logger.info(f"[CALENDAR_SYNC] No calendar connection for org={organization_id}, skipping {action}")
            return False

        calendar_id = await self.get_selected_calendar_id(organization_id)
        body = {
            "summary": event.title,
            "description": event.description or "",
            "start": {"dateTime": _iso(event.start_time)},
            "end": {"dateTime": _iso(event.end_time)},
        }

        def _call():
            events = self._service_factory(token).events()
            if action == SYNC_CREATE:
                return events.insert(calendarId=calendar_id, body=body).execute()
            if action == SYNC_UPDATE:
                return events.patch(calendarId=calendar_id, eventId=event.external_id, body=body).execute()
            if action == SYNC_CANCEL:
                return events.delete(calendarId=calendar_id, eventId=event.external_id).execute()
            raise ValueError(f"Unknown calendar sync action: {action}")

        if action in (SYNC_UPDATE, SYNC_CANCEL) and not event.external_id:
            raise ValueError(f"Cannot {action} event {event.id} without an external id")

        try:
            result = await asyncio.to_thread(_call)
        except HttpError as e:
            if action != SYNC_CANCEL or e.resp.status != 404:
                await self.repo.update_calendar_event(organization_id, event.id, {"sync_status": SYNC_FAILED})
                raise CalendarSyncError(f"{action} failed with status {e.resp.status}") from e
            logger.info(f"[CALENDAR_SYNC] External event {event.external_id} already deleted")
            result = None

        now_iso = _iso(self._clock())
        if action == SYNC_CREATE:
            await self.repo.update_calendar_event(organization_id, event.id, {
                "external_id": (result or {}).get("id"),
                "external_calendar_id": calendar_id,
                "sync_status": SYNC_SYNCED,
                "last_synced_at": now_iso,
            })
        else:
            await self.repo.update_calendar_event(organization_id, event.id, {
                "sync_status": SYNC_SYNCED,
                "last_synced_at": now_iso,
            })

        logger.info(f"[CALENDAR_SYNC] {action} ok for event={event.id}")
        return True
