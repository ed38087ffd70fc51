"""
User State Service - אחסון מצב הזכאות והחלת מעברים.

כל מעבר רץ בטרנזקציה אחת: יצירה עצלה של השורה, נעילת שורה (ב-PostgreSQL),
סינון אירועים ישנים לפי ה-watermark, עדכון מצב וקידום ה-watermark.

פער סדר ידוע: אירוע בלי חותמת זמן מוחל תמיד, ועלול לדרוס אירוע מאוחר
יותר שכבר הוחל. ה-watermark עצמו לא זז במקרה כזה.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import UserNotFoundError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.user_state import UserState
from app.state_machine.states import SubscriptionState

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    """תוצאת החלת מעבר. bool(result) == applied"""

    applied: bool
    previous_state: SubscriptionState | None = None
    new_state: SubscriptionState | None = None

    def __bool__(self) -> bool:
        return self.applied

    @property
    def changed(self) -> bool:
        return self.applied and self.previous_state != self.new_state


class UserStateService:
    """Service for entitlement records"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: int) -> UserState | None:
        result = await self.db.execute(
            select(UserState)
            .where(UserState.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require_user(self, user_id: int) -> UserState:
        user = await self.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def _get_or_create_locked(self, user_id: int) -> UserState:
        """
        Fetch the row with FOR UPDATE, inserting it first if missing.

        Caller owns the transaction. SQLite ignores FOR UPDATE.
        """
        stmt = (
            select(UserState)
            .where(UserState.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = (await self.db.execute(stmt)).scalar_one_or_none()
        if user is not None:
            return user

        try:
            async with self.db.begin_nested():
                self.db.add(UserState(
                    user_id=user_id,
                    state=SubscriptionState.NOT_SUBSCRIBED,
                ))
        except IntegrityError:
            # נוצר במקביל ע"י בקשה אחרת
            logger.debug(
                "User row created concurrently",
                extra_data={"user_id": user_id},
            )

        return (await self.db.execute(stmt)).scalar_one()

    async def get_or_create(self, user_id: int) -> UserState:
        user = await self._get_or_create_locked(user_id)
        await self.db.commit()
        return user

    async def apply_transition(
        self,
        user_id: int,
        next_state: SubscriptionState,
        event_at: int | None,
        external_contact_id: str | None = None,
    ) -> TransitionResult:
        """
        החלת מעבר מצב בטרנזקציה אחת.

        Args:
            user_id: מזהה המשתמש בפלטפורמת הצ'אט
            next_state: המצב החדש
            event_at: חותמת זמן האירוע (epoch millis), None אם לא ידועה
            external_contact_id: מזהה איש הקשר אצל הספק (COALESCE - לא מוחק קיים)

        Returns:
            TransitionResult - applied=False אם האירוע ישן מה-watermark
        """
        try:
            user = await self._get_or_create_locked(user_id)
            previous = user.state
            watermark = user.last_event_at

            if event_at is not None and watermark is not None and event_at < watermark:
                await self.db.rollback()
                logger.warning(
                    "Transition suppressed (out of order)",
                    extra_data={
                        "user_id": user_id,
                        "event_at": event_at,
                        "last_event_at": watermark,
                        "attempted_state": next_state.value,
                    },
                )
                return TransitionResult(applied=False, previous_state=previous)

            user.state = next_state
            if external_contact_id:
                user.external_contact_id = external_contact_id
            if event_at is not None:
                user.last_event_at = event_at
            user.updated_at = utcnow()

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "User state updated",
            extra_data={
                "user_id": user_id,
                "from": previous.value if previous else None,
                "to": next_state.value,
                "event_at": event_at,
            },
        )
        return TransitionResult(applied=True, previous_state=previous, new_state=next_state)

    async def _update_fields(self, user_id: int, **values) -> bool:
        result = await self.db.execute(
            update(UserState)
            .where(UserState.user_id == user_id)
            .values(updated_at=utcnow(), **values)
        )
        await self.db.commit()
        return result.rowcount > 0

    async def set_last_resync_at(self, user_id: int, when: datetime | None = None) -> bool:
        return await self._update_fields(user_id, last_resync_at=when or utcnow())

    async def set_external_contact_id(self, user_id: int, contact_id: str) -> bool:
        return await self._update_fields(user_id, external_contact_id=contact_id)

    async def set_cancel_reason(self, user_id: int, reason: str) -> bool:
        return await self._update_fields(user_id, cancel_reason=reason)
