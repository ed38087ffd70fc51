"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה של webhooks מהספק.

מספק:
- בונה payload לאירועי subscription/payment
- fixtures לאימות DB (מספר אירועים, מצב משתמש)
"""
import itertools

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.webhook_event import WebhookEvent
from app.domain.services.user_state_service import UserStateService

# מונה גלובלי - webhookId ייחודי לכל אירוע שנבנה
_webhook_counter = itertools.count(1)

_BASE_TS = 1_700_000_000_000


def build_event(
    event_type: str,
    *,
    user_id: int | None = None,
    ts_offset: int = 0,
    webhook_id: str | None = None,
    **fields,
) -> dict:
    """payload של אירוע בפורמט הספק (timestamp במילישניות)"""
    payload = {
        "webhookId": webhook_id or f"wh-{next(_webhook_counter)}",
        "type": event_type,
        "timestamp": _BASE_TS + ts_offset,
    }
    if user_id is not None:
        payload["telegram_user_id"] = str(user_id)
    payload.update(fields)
    return payload


@pytest.fixture
def event_builder():
    return build_event


@pytest.fixture
def count_webhook_events(db_session: AsyncSession):
    async def _count() -> int:
        return await db_session.scalar(select(func.count()).select_from(WebhookEvent))

    return _count


@pytest.fixture
def user_state(db_session: AsyncSession):
    """מצב המשתמש כפי שנשמר ב-DB (או None)"""
    async def _get(user_id: int):
        user = await UserStateService(db_session).get_user(user_id)
        return user.state if user else None

    return _get
