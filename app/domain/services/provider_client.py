"""
Provider API Client - קריאות read-only ל-API של ספק החיוב/CRM.

כל הקריאות עוברות דרך RetryableHttpClient (מדיניות retry אחת).
תשובה שאינה 2xx מתועדת ומוחזרת כ-None; שגיאת רשת שמיצתה את ה-retries
נעטפת ב-ProviderError כדי שה-handler הגלובלי יחזיר 503.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from app.core.exceptions import ProviderError
from app.core.http_client import RetryableHttpClient, RetryPolicy
from app.core.logging import get_logger
from app.domain.services.event_normalizer import (
    first_present,
    parse_contact_id,
    parse_user_id,
)

logger = get_logger(__name__)

_ACTIVE_STATUSES = frozenset({"active", "trialing"})
_ENDED_STATUSES = frozenset({"canceled", "cancelled", "ended", "expired"})
_USER_ID_FIELD_KEYS = frozenset({"telegram_user_id", "telegramuserid"})


@dataclass(frozen=True)
class TenantContext:
    """
    הגדרות ה-tenant אצל הספק. נוצר פעם אחת ב-startup, כחלק מ-ProviderClient.

    location_id אופציונלי - חלק מה-endpoints מסננים לפיו כשהוא קיים.
    """

    base_url: str
    api_key: str = ""
    api_version: str = ""
    location_id: str | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> "TenantContext":
        return cls(
            base_url=settings.PROVIDER_API_BASE_URL.rstrip("/"),
            api_key=settings.PROVIDER_API_KEY,
            api_version=settings.PROVIDER_API_VERSION,
            location_id=settings.PROVIDER_LOCATION_ID.strip() or None,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def auth_headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }
        if self.api_version:
            headers["Version"] = self.api_version
        return headers


@dataclass(frozen=True)
class ContactMatch:
    contact_id: str
    contact: dict[str, Any]


@dataclass(frozen=True)
class SubscriptionStatus:
    is_active: bool
    cancel_at_period_end: bool
    ended: bool
    source: str
    count: int


def _extract_list(payload: Any, *paths: tuple[str, ...]) -> list[Any]:
    if not isinstance(payload, dict):
        return []
    for path in paths:
        current: Any = payload
        for key in path:
            current = current.get(key) if isinstance(current, dict) else None
        if isinstance(current, list):
            return current
    return []


def _extract_contact_id(contact: Any) -> str | None:
    if not isinstance(contact, dict):
        return None
    raw = first_present(contact, (("id",), ("_id",)))
    return parse_contact_id(raw) if isinstance(raw, str) else None


def extract_user_id_from_contact(contact: Any) -> int | None:
    """
    חילוץ מזהה משתמש הצ'אט מרשומת contact.

    קודם שדה ישיר (או customFields כאובייקט), אחר כך מערך custom fields
    שבו כל פריט הוא {key/name/fieldKey, value/fieldValue}.
    """
    if not isinstance(contact, dict):
        return None

    direct = first_present(contact, (
        ("telegram_user_id",),
        ("telegramUserId",),
        ("customFields", "telegram_user_id"),
        ("customFields", "telegramUserId"),
    ))
    user_id = parse_user_id(direct)
    if user_id is not None:
        return user_id

    fields = first_present(contact, (("customFields",), ("customField",), ("custom_fields",)))
    if not isinstance(fields, list):
        return None

    for field in fields:
        if not isinstance(field, dict):
            continue
        key = first_present(field, (("key",), ("name",), ("fieldKey",), ("field_key",)))
        if str(key or "").lower() not in _USER_ID_FIELD_KEYS:
            continue
        value = first_present(field, (("value",), ("fieldValue",), ("field_value",)))
        user_id = parse_user_id(value)
        if user_id is not None:
            return user_id
    return None


def normalize_subscription(sub: Any) -> tuple[bool, bool, bool]:
    """(is_active, cancel_at_period_end, ended) for a single subscription record."""
    if not isinstance(sub, dict):
        return False, False, False

    raw_status = first_present(sub, (("status",), ("subscription_status",), ("state",)))
    status = raw_status.lower() if isinstance(raw_status, str) else None

    is_active = (
        sub.get("active") is True
        or sub.get("isActive") is True
        or (status in _ACTIVE_STATUSES if status else False)
    )
    cancel_at_period_end = any(
        sub.get(k) is True
        for k in ("cancelAtPeriodEnd", "cancel_at_period_end", "cancelAtPeriod", "cancel_at_period")
    )
    ended = (
        any(sub.get(k) is True for k in ("ended", "canceled", "cancelled"))
        or (status in _ENDED_STATUSES if status else False)
    )
    return is_active, cancel_at_period_end, ended


def aggregate_subscriptions(subs: list[Any], source: str) -> SubscriptionStatus:
    """
    איחוד כל המנויים של איש קשר לדגל אחד לכל תכונה.

    cancel_at_period_end נחשב רק על מנוי פעיל.
    """
    flags = [normalize_subscription(s) for s in subs]
    return SubscriptionStatus(
        is_active=any(active for active, _, _ in flags),
        cancel_at_period_end=any(active and pending for active, pending, _ in flags),
        ended=any(ended for _, _, ended in flags),
        source=source,
        count=len(subs),
    )


class ProviderClient:
    """Read-only provider API: contact search, contact fetch, subscription status"""

    def __init__(self, http: RetryableHttpClient, tenant: TenantContext):
        self.http = http
        self.tenant = tenant

    @property
    def configured(self) -> bool:
        return self.tenant.configured

    async def _call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        cancel_event: asyncio.Event | None = None,
        **kwargs: Any,
    ) -> Any:
        """Perform one logical call; returns decoded JSON, or None on non-2xx / bad JSON."""
        url = f"{self.tenant.base_url}{path}"
        headers = {**self.tenant.auth_headers(), **kwargs.pop("headers", {})}
        try:
            response = await self.http.request(
                method, url, headers=headers, cancel_event=cancel_event, **kwargs
            )
        except httpx.HTTPError as e:
            raise ProviderError(
                f"{operation} failed: {type(e).__name__}",
                details={"operation": operation},
            ) from e

        if response.status_code == 404:
            logger.info(
                f"Provider {operation}: not found",
                extra_data={"operation": operation},
            )
            return None

        if not response.is_success:
            logger.warning(
                f"Provider {operation} failed",
                extra_data={
                    "operation": operation,
                    "status_code": response.status_code,
                    "response_text": response.text[:300],
                },
            )
            return None

        try:
            return response.json()
        except ValueError:
            logger.warning(
                f"Provider {operation} returned invalid JSON",
                extra_data={"operation": operation, "status_code": response.status_code},
            )
            return None

    async def find_contact_by_user_id(
        self, user_id: int, *, cancel_event: asyncio.Event | None = None
    ) -> ContactMatch | None:
        if not self.configured:
            return None

        body: dict[str, Any] = {"query": str(user_id), "pageLimit": 1}
        if self.tenant.location_id:
            body["locationId"] = self.tenant.location_id

        # חיפוש הוא קריאה בלבד - בטוח לחזור עליו למרות POST
        payload = await self._call(
            "contacts.search",
            "POST",
            "/contacts/search",
            json=body,
            idempotent=True,
            cancel_event=cancel_event,
        )
        contacts = _extract_list(payload, ("contacts",), ("data", "contacts"), ("data",))
        if not contacts:
            return None

        contact = contacts[0]
        contact_id = _extract_contact_id(contact)
        if contact_id is None:
            return None
        return ContactMatch(contact_id=contact_id, contact=contact)

    async def fetch_user_id_by_contact_id(
        self, contact_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> int | None:
        if not self.configured or not contact_id:
            return None

        payload = await self._call(
            "contacts.get",
            "GET",
            f"/contacts/{quote(contact_id, safe='')}",
            cancel_event=cancel_event,
        )
        if not isinstance(payload, dict):
            return None

        data = payload.get("data")
        contact = payload.get("contact")
        if not isinstance(contact, dict) and isinstance(data, dict):
            contact = data.get("contact") if isinstance(data.get("contact"), dict) else data
        if not isinstance(contact, dict):
            contact = payload
        return extract_user_id_from_contact(contact)

    async def get_subscription_status(
        self, contact_id: str, *, cancel_event: asyncio.Event | None = None
    ) -> SubscriptionStatus | None:
        """
        סטטוס מנוי מאוחד לאיש קשר.

        מנסה את /subscriptions ואז את /payments/subscriptions; הראשון שמחזיר
        2xx קובע (גם אם אין בו מנויים).
        """
        if not self.configured:
            return None

        params: dict[str, str] = {"contactId": contact_id}
        if self.tenant.location_id:
            params["altId"] = self.tenant.location_id
            params["altType"] = "location"

        for path in ("/subscriptions", "/payments/subscriptions"):
            payload = await self._call(
                "subscriptions.list",
                "GET",
                path,
                params=params,
                cancel_event=cancel_event,
            )
            if payload is None:
                continue
            subs = _extract_list(
                payload, ("subscriptions",), ("data", "subscriptions"), ("data",), ("items",)
            )
            return aggregate_subscriptions(subs, source=path)

        return None


def build_provider_client(settings: Any) -> ProviderClient:
    """TenantContext + HTTP client משותף. נקרא פעם אחת לכל תהליך (או לכל task)."""
    tenant = TenantContext.from_settings(settings)
    http = RetryableHttpClient(
        policy=RetryPolicy.from_settings(settings),
        service_name="provider",
    )
    return ProviderClient(http, tenant)
