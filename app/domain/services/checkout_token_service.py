"""
Checkout Token Service - טוקנים חד-פעמיים לקישור checkout אצל הספק למשתמש.

הטוקן מוטמע ב-URL של ה-checkout, חוזר ב-webhook (בגוף או ב-?token=)
ונמחק ברגע המימוש. מימוש = DELETE ... RETURNING, כך ששני משלוחים
מקבילים לא יכולים לממש את אותו טוקן פעמיים.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.checkout_token import CheckoutToken
from app.domain.services.user_state_service import UserStateService

logger = get_logger(__name__)

TOKEN_BYTES = 16


@dataclass(frozen=True)
class IssuedCheckoutToken:
    token: str
    user_id: int
    expires_at: datetime
    checkout_url: str | None = None


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def build_checkout_url(token: str, template: str | None = None) -> str | None:
    template = settings.CHECKOUT_URL_TEMPLATE if template is None else template
    if not template or "{token}" not in template:
        return None
    return template.replace("{token}", token)


class CheckoutTokenService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def issue(
        self,
        user_id: int,
        ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> IssuedCheckoutToken:
        """הנפקת טוקן חדש. מותר כמה טוקנים פעילים לאותו משתמש."""
        ttl = ttl if ttl is not None else timedelta(hours=settings.CHECKOUT_TOKEN_TTL_HOURS)
        created_at = now or utcnow()

        # FK ל-users - השורה נוצרת בעצלות אם המשתמש עוד לא קיים
        await UserStateService(self.db).get_or_create(user_id)

        token = generate_token()
        self.db.add(CheckoutToken(
            token=token,
            user_id=user_id,
            expires_at=created_at + ttl,
            created_at=created_at,
        ))
        await self.db.commit()

        logger.info(
            "Checkout token issued",
            extra_data={"user_id": user_id, "ttl_seconds": int(ttl.total_seconds())},
        )
        return IssuedCheckoutToken(
            token=token,
            user_id=user_id,
            expires_at=created_at + ttl,
            checkout_url=build_checkout_url(token),
        )

    async def redeem(self, token: str, now: datetime | None = None) -> int | None:
        """
        Consume a token and return its user id.

        The row is deleted whether or not it has expired; an expired token
        yields None. The caller owns the transaction: nothing is committed here.
        """
        token = (token or "").strip()
        if not token:
            return None

        result = await self.db.execute(
            delete(CheckoutToken)
            .where(CheckoutToken.token == token)
            .returning(CheckoutToken.user_id, CheckoutToken.expires_at)
        )
        row = result.first()
        if row is None:
            logger.info("Checkout token not found or already used")
            return None

        current = now or utcnow()
        if row.expires_at < current:
            logger.info(
                "Checkout token expired",
                extra_data={"user_id": row.user_id},
            )
            return None

        return int(row.user_id)

    async def revoke_for_user(self, user_id: int) -> int:
        result = await self.db.execute(
            delete(CheckoutToken).where(CheckoutToken.user_id == user_id)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def purge_expired(self, now: datetime | None = None) -> int:
        result = await self.db.execute(
            delete(CheckoutToken).where(CheckoutToken.expires_at < (now or utcnow()))
        )
        await self.db.commit()
        return result.rowcount or 0
