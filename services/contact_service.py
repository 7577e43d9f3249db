"""
Contact and notification side effects.

Handles:
- Opportunistic contact upserts after bookings
- Contact lookup / save operations for the voice agent
- Outbound webhook notifications for booking changes
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from config import logger, CONTACT_CUSTOMER, Settings
from models.records import Contact, Tenant
from models.requests import LookupContactArgs, SaveContactArgs
from services.database_service import SupabaseRepository
from services.errors import ServiceError
from utils.datetime_utils import _iso, utc_now
from utils.phone_utils import mask_phone, normalize_phone, phone_variants


class WebhookNotifier:
    """POSTs booking events to the tenant's configured webhook URL."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = settings.notification_timeout_seconds
        self._transport = transport

    @staticmethod
    def sign(secret: str, body: bytes) -> str:
        return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

    async def notify(self, tenant: Tenant, event: str, data: Dict[str, Any]) -> bool:
        if not tenant.webhook_enabled or not tenant.webhook_url:
            logger.debug(f"[NOTIFY] Webhooks disabled for org={tenant.id}, skipping {event}")
            return False

        body = json.dumps({"event": event, "organization_id": tenant.id, "data": data}).encode()
        headers = {"Content-Type": "application/json"}
        if tenant.webhook_secret:
            headers["X-Webhook-Signature"] = self.sign(tenant.webhook_secret, body)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(tenant.webhook_url, content=body, headers=headers)
            response.raise_for_status()

        logger.info(f"[NOTIFY] {event} delivered for org={tenant.id}")
        return True


class ContactService:
    def __init__(
        self,
        repo: SupabaseRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self._clock = clock

    async def upsert_customer(self, organization_id: str, phone: str, name: Optional[str]) -> Optional[Contact]:
        """Record the caller as a customer; phone is the key within a tenant."""
        normalized = normalize_phone(phone)
        contact = await self.repo.upsert_contact({
            "organization_id": organization_id,
            "phone": normalized,
            "name": name,
            "status": CONTACT_CUSTOMER,
            "source": "inbound_call",
            "updated_at": _iso(self._clock()),
        })
        logger.info(f"[CONTACT] Upserted customer phone={mask_phone(normalized)} org={organization_id}")
        return contact

    async def lookup_contact(self, args: LookupContactArgs) -> Dict[str, Any]:
        if not args.organization_id:
            raise ServiceError("Missing organization_id", 400)
        if not args.phone:
            raise ServiceError("Phone number is required", 400)

        logger.info(f"[CONTACT] Lookup org={args.organization_id} phone={mask_phone(args.phone)}")
        try:
            contact = await self.repo.find_contact(args.organization_id, phone_variants(args.phone))
        except Exception as e:
            logger.error(f"[CONTACT] Lookup failed: {e}")
            raise ServiceError("Failed to lookup contact", 500) from e

        if not contact:
            logger.info(f"[CONTACT] Not found phone={mask_phone(args.phone)}")
            return {
                "found": False,
                "contact": None,
                "message": "This appears to be a new caller. We don't have their information on file yet.",
            }

        greeting = (
            f"This is {contact.name}, a returning customer." if contact.name
            else "This is a returning customer."
        )
        details = []
        if contact.address:
            details.append(f"Address on file: {contact.address}")
        if contact.email:
            details.append(f"Email: {contact.email}")
        if contact.notes:
            details.append(f"Notes: {contact.notes}")

        return {
            "found": True,
            "contact": contact.to_dict(),
            "message": greeting,
            "details": ". ".join(details) if details else None,
        }

    async def save_contact(self, args: SaveContactArgs) -> Dict[str, Any]:
        if not args.organization_id:
            raise ServiceError("Missing organization_id", 400)
        if not args.phone:
            raise ServiceError("Phone number is required", 400)

        tenant = await self.repo.get_tenant(args.organization_id)
        if not tenant:
            raise ServiceError("Invalid organization", 403)

        normalized = normalize_phone(args.phone)
        try:
            contact = await self.repo.upsert_contact({
                "organization_id": args.organization_id,
                "phone": normalized,
                "name": args.name,
                "address": args.address,
                "email": args.email,
                "notes": args.notes,
                "status": CONTACT_CUSTOMER,
                "source": "inbound_call",
                "updated_at": _iso(self._clock()),
            })
        except Exception as e:
            logger.error(f"[CONTACT] Save failed: {e}")
            raise ServiceError("Failed to save contact", 500) from e

        if not contact:
            raise ServiceError("Failed to save contact", 500)

        logger.info(f"[CONTACT] Saved contact id={contact.id}")
        return {
            "success": True,
            "contact_id": contact.id,
            "message": f"Contact information for {args.name or normalized} has been saved.",
        }
