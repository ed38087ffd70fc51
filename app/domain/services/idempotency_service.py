"""
Idempotency Gate - רישום משלוחי webhook ודחיית כפילויות.

גישה אופטימיסטית: INSERT בתוך savepoint, ו-IntegrityError על ה-primary key
(provider, idempotency_key) מסמן משלוח חוזר. אין SELECT לפני - כך שני
משלוחים מקבילים של אותו אירוע לא יכולים לעבור שניהם.
"""
from __future__ import annotations

import hashlib
import math
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.webhook_event import WebhookEvent

logger = get_logger(__name__)

_ID_FIELDS = ("webhookId", "webhook_id", "id")
_MAX_KEY_LENGTH = 200


def sha256_hex(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def extract_idempotency_key(payload: Any, payload_hash: str) -> str:
    """
    מפתח idempotency: מזהה האירוע של הספק, או hash של ה-bytes הגולמיים.

    רק הערך הראשון שאינו null נבדק (webhookId, אחריו webhook_id, אחריו id);
    אם הוא לא מחרוזת לא-ריקה או מספר סופי - נופלים ל-hash.
    """
    candidate = None
    if isinstance(payload, dict):
        for field in _ID_FIELDS:
            if payload.get(field) is not None:
                candidate = payload[field]
                break

    key: str | None = None
    if isinstance(candidate, str) and candidate.strip():
        key = candidate.strip()
    elif isinstance(candidate, int) and not isinstance(candidate, bool):
        key = str(candidate)
    elif isinstance(candidate, float) and math.isfinite(candidate):
        key = str(int(candidate)) if candidate.is_integer() else str(candidate)

    if key is None:
        return payload_hash
    if len(key) > _MAX_KEY_LENGTH:
        # מזהה ארוך מהעמודה - נשמר כ-hash יציב שלו
        return "id-sha256:" + hashlib.sha256(key.encode("utf-8")).hexdigest()
    return key


class IdempotencyService:
    """Records webhook deliveries; the caller owns the surrounding transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def try_record(
        self,
        *,
        provider: str,
        idempotency_key: str,
        event_type: str | None,
        payload_hash: str,
        linked_user_id: int | None = None,
    ) -> WebhookEvent | None:
        """
        Insert the delivery record inside a savepoint.

        Returns the new (not yet committed) row, or None when the key was
        already recorded. Any error other than the duplicate-key violation
        propagates.
        """
        event = WebhookEvent(
            provider=provider,
            idempotency_key=idempotency_key,
            event_type=event_type[:100] if event_type else None,
            received_at=utcnow(),
            payload_hash=payload_hash,
            linked_user_id=linked_user_id,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(event)
        except IntegrityError:
            logger.info(
                "Webhook duplicate ignored",
                extra_data={"provider": provider, "idempotency_key": idempotency_key},
            )
            return None

        return event

    async def link_user(self, *, provider: str, idempotency_key: str, user_id: int) -> bool:
        """Attach a user id to an already-recorded delivery. Caller commits."""
        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.provider == provider,
                WebhookEvent.idempotency_key == idempotency_key,
            )
            .values(linked_user_id=user_id)
        )
        return result.rowcount > 0
