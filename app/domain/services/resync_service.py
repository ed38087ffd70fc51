"""
Resync Service - סנכרון יזום (pull) של מצב הזכאות מול הספק.

משמש כשמשתמש טוען ששילם אבל ה-webhook לא הגיע/לא קושר. תנאים מקדימים
נבדקים לפי הסדר, וכל דילוג מוחזר עם קוד סיבה:
payments_disabled, no_api_key, no_user, already_active, cooldown.

קריאות הספק רצות מחוץ לכל טרנזקציה; שגיאת ספק שמיצתה retries
מתפשטת החוצה והמצב נשאר כמו שהוא.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.user_state import UserState
from app.domain.services.provider_client import ProviderClient
from app.domain.services.user_state_service import UserStateService
from app.state_machine.states import RESYNC_CANDIDATE_STATES, SubscriptionState
from app.state_machine.transitions import map_subscription_to_state

logger = get_logger(__name__)

SKIP_PAYMENTS_DISABLED = "payments_disabled"
SKIP_NO_API_KEY = "no_api_key"
SKIP_NO_USER = "no_user"
SKIP_ALREADY_ACTIVE = "already_active"
SKIP_COOLDOWN = "cooldown"
SKIP_NO_CONTACT = "no_contact"
SKIP_NO_SUBSCRIPTION_DATA = "no_subscription_data"
SKIP_NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"


@dataclass(frozen=True)
class ResyncResult:
    attempted: bool
    skipped: str | None = None
    next_state: SubscriptionState | None = None

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "skipped": self.skipped,
            "next_state": self.next_state.value if self.next_state else None,
        }


class ResyncService:
    def __init__(
        self,
        db: AsyncSession,
        provider: ProviderClient,
        *,
        payments_enabled: bool | None = None,
        cooldown: timedelta | None = None,
    ):
        self.db = db
        self.provider = provider
        self.users = UserStateService(db)
        self.payments_enabled = (
            settings.ENABLE_PAYMENTS if payments_enabled is None else payments_enabled
        )
        self.cooldown = (
            timedelta(minutes=settings.RESYNC_COOLDOWN_MINUTES) if cooldown is None else cooldown
        )

    async def resync(
        self,
        user_id: int,
        *,
        force: bool = False,
        source: str = "command",
        now: datetime | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResyncResult:
        log_ctx = {"user_id": user_id, "source": source, "force": force}

        if not self.payments_enabled:
            logger.info("Resync skipped (payments disabled)", extra_data=log_ctx)
            return ResyncResult(attempted=False, skipped=SKIP_PAYMENTS_DISABLED)

        if not self.provider.configured:
            logger.info("Resync skipped (no provider API key; webhook-only mode)", extra_data=log_ctx)
            return ResyncResult(attempted=False, skipped=SKIP_NO_API_KEY)

        user = await self.users.get_user(user_id)
        if user is None:
            logger.warning("Resync skipped (user missing)", extra_data=log_ctx)
            return ResyncResult(attempted=False, skipped=SKIP_NO_USER)

        if user.state.has_access:
            logger.info(
                "Resync skipped (state already active)",
                extra_data={**log_ctx, "state": user.state.value},
            )
            return ResyncResult(attempted=False, skipped=SKIP_ALREADY_ACTIVE)

        current = now or utcnow()
        if (
            not force
            and self.cooldown > timedelta(0)
            and user.last_resync_at is not None
            and current - user.last_resync_at < self.cooldown
        ):
            logger.info(
                "Resync skipped (cooldown)",
                extra_data={
                    **log_ctx,
                    "last_resync_at": user.last_resync_at.isoformat(),
                    "cooldown_seconds": int(self.cooldown.total_seconds()),
                },
            )
            return ResyncResult(attempted=False, skipped=SKIP_COOLDOWN)

        # סוגרים את טרנזקציית הקריאה לפני קריאות רשת
        await self.db.commit()

        logger.info(
            "Resync started",
            extra_data={
                **log_ctx,
                "state": user.state.value,
                "has_contact_id": bool(user.external_contact_id),
            },
        )

        try:
            contact = await self.provider.find_contact_by_user_id(
                user_id, cancel_event=cancel_event
            )
            if contact is None:
                logger.warning("Resync: no provider contact found", extra_data=log_ctx)
                return ResyncResult(attempted=True, skipped=SKIP_NO_CONTACT)

            await self.users.set_external_contact_id(user_id, contact.contact_id)

            subscription = await self.provider.get_subscription_status(
                contact.contact_id, cancel_event=cancel_event
            )
        finally:
            # גם כשהספק לא זמין - ה-cooldown מתחיל
            await self.users.set_last_resync_at(user_id, current)

        if subscription is None:
            logger.warning(
                "Resync: subscription lookup returned no data",
                extra_data={**log_ctx, "contact_id": contact.contact_id},
            )
            return ResyncResult(attempted=True, skipped=SKIP_NO_SUBSCRIPTION_DATA)

        next_state = map_subscription_to_state(
            subscription.is_active,
            subscription.cancel_at_period_end,
            subscription.ended,
        )
        if next_state is None:
            logger.info(
                "Resync: no active subscription found",
                extra_data={
                    **log_ctx,
                    "contact_id": contact.contact_id,
                    "subscription_count": subscription.count,
                    "subscription_source": subscription.source,
                },
            )
            return ResyncResult(attempted=True, skipped=SKIP_NO_ACTIVE_SUBSCRIPTION)

        outcome = await self.users.apply_transition(
            user_id,
            next_state,
            event_at=None,
            external_contact_id=contact.contact_id,
        )
        logger.info(
            "Resync: state evaluation complete",
            extra_data={
                **log_ctx,
                "contact_id": contact.contact_id,
                "next_state": next_state.value,
                "applied": outcome.applied,
                "subscription_source": subscription.source,
                "subscription_count": subscription.count,
            },
        )
        return ResyncResult(
            attempted=True,
            next_state=next_state if outcome.applied else None,
        )

    async def find_lapsed_user_ids(
        self, limit: int, now: datetime | None = None
    ) -> list[int]:
        """
        משתמשים שכדאי לסנכרן במשימה המתוזמנת: ללא גישה, עם contact id ידוע,
        ושה-cooldown שלהם עבר.
        """
        cutoff = (now or utcnow()) - self.cooldown
        result = await self.db.execute(
            select(UserState.user_id)
            .where(
                UserState.state.in_(RESYNC_CANDIDATE_STATES),
                UserState.external_contact_id.is_not(None),
                (UserState.last_resync_at.is_(None)) | (UserState.last_resync_at < cutoff),
            )
            .order_by(UserState.last_resync_at.asc().nulls_first(), UserState.user_id)
            .limit(limit)
        )
        return [row[0] for row in result.all()]
