"""
Identity Resolver - קישור אירוע webhook למשתמש צ'אט.

סדר הניסיונות:
1. מזהה משתמש מוטמע ב-payload
2. checkout token (מהגוף או מ-?token=), ממומש פעם אחת בלבד
3. חיפוש איש הקשר אצל הספק לפי contact id

שלבים 1-2 מקומיים ורצים בתוך טרנזקציית רישום האירוע; שלב 3 הוא קריאת
רשת ולכן רץ בנפרד, מחוץ לכל טרנזקציה.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException
from app.core.logging import get_logger
from app.domain.services.checkout_token_service import CheckoutTokenService
from app.domain.services.event_normalizer import NormalizedWebhook, first_present
from app.domain.services.provider_client import ProviderClient

logger = get_logger(__name__)

SOURCE_PAYLOAD = "payload"
SOURCE_CHECKOUT_TOKEN = "checkout_token"
SOURCE_CONTACT_LOOKUP = "contact_lookup"

_TOKEN_PATHS = (
    ("token",),
    ("checkoutToken",),
    ("metadata", "token"),
    ("metadata", "checkoutToken"),
)


@dataclass(frozen=True)
class IdentityResolution:
    user_id: int | None = None
    source: str | None = None

    @property
    def resolved(self) -> bool:
        return self.user_id is not None


def extract_checkout_token(payload: Any, query_token: str | None = None) -> str | None:
    """Token from the payload if present and non-blank, else the query value."""
    from_payload = first_present(payload, _TOKEN_PATHS) if isinstance(payload, dict) else None
    if isinstance(from_payload, str) and from_payload.strip():
        return from_payload.strip()
    if query_token and query_token.strip():
        return query_token.strip()
    return None


class IdentityResolver:
    def __init__(self, db: AsyncSession, provider: ProviderClient | None = None):
        self.db = db
        self.provider = provider

    async def resolve_local(
        self,
        normalized: NormalizedWebhook,
        payload: Any,
        query_token: str | None = None,
    ) -> IdentityResolution:
        """Steps 1-2. Token redemption joins the caller's open transaction."""
        if normalized.user_id is not None:
            return IdentityResolution(normalized.user_id, SOURCE_PAYLOAD)

        token = extract_checkout_token(payload, query_token)
        if token:
            user_id = await CheckoutTokenService(self.db).redeem(token)
            if user_id is not None:
                logger.info(
                    "Webhook linked via checkout token",
                    extra_data={"user_id": user_id},
                )
                return IdentityResolution(user_id, SOURCE_CHECKOUT_TOKEN)

        return IdentityResolution()

    async def resolve_remote(self, normalized: NormalizedWebhook) -> IdentityResolution:
        """Step 3: provider contact lookup. Failures are logged, never raised."""
        if not normalized.contact_id or self.provider is None or not self.provider.configured:
            return IdentityResolution()

        try:
            user_id = await self.provider.fetch_user_id_by_contact_id(normalized.contact_id)
        except AppException as e:
            logger.warning(
                "Contact lookup failed",
                extra_data={
                    "contact_id": normalized.contact_id,
                    "error_code": e.error_code.value,
                    "error": e.message,
                },
            )
            return IdentityResolution()

        if user_id is None:
            return IdentityResolution()

        logger.info(
            "Webhook linked via contact lookup",
            extra_data={"user_id": user_id, "contact_id": normalized.contact_id},
        )
        return IdentityResolution(user_id, SOURCE_CONTACT_LOOKUP)

    async def resolve(
        self,
        normalized: NormalizedWebhook,
        payload: Any,
        query_token: str | None = None,
    ) -> IdentityResolution:
        local = await self.resolve_local(normalized, payload, query_token)
        if local.resolved:
            return local
        return await self.resolve_remote(normalized)
