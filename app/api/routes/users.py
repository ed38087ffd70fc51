"""
User Entitlement Admin Routes

כל ה-endpoints דורשים X-Admin-API-Key.
"""
from datetime import datetime, timedelta
from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Path, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import get_notifier, get_provider_client
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.checkout_token_service import CheckoutTokenService
from app.domain.services.notification_service import TelegramNotifier, resync_notification
from app.domain.services.provider_client import ProviderClient
from app.domain.services.resync_service import ResyncService
from app.domain.services.user_state_service import UserStateService

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

MAX_USER_ID = 2**63 - 1
UserId = Annotated[int, Path(gt=0, le=MAX_USER_ID, description="מזהה משתמש הצ'אט")]


class UserStateResponse(BaseModel):
    user_id: int
    state: str
    has_access: bool
    external_contact_id: Optional[str]
    cancel_reason: Optional[str]
    last_event_at: Optional[int]
    last_resync_at: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]


class CheckoutTokenRequest(BaseModel):
    ttl_hours: Optional[int] = Field(default=None, ge=1, le=24 * 30)


class CheckoutTokenResponse(BaseModel):
    token: str
    user_id: int
    expires_at: datetime
    checkout_url: Optional[str]


class ResyncResponse(BaseModel):
    attempted: bool
    skipped: Optional[str]
    next_state: Optional[str]


class CancelReasonRequest(BaseModel):
    reason: str = Field(..., max_length=500)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason must not be empty")
        return v


@router.get(
    "/{user_id}",
    response_model=UserStateResponse,
    summary="מצב הזכאות של משתמש",
    responses={404: {"description": "המשתמש לא נמצא"}},
)
async def get_user_state(
    user_id: UserId,
    db: AsyncSession = Depends(get_db),
):
    user = await UserStateService(db).require_user(user_id)
    return user.to_dict()


@router.post(
    "/{user_id}/checkout-token",
    response_model=CheckoutTokenResponse,
    summary="הנפקת checkout token",
    description="טוקן חד-פעמי שמוטמע ב-URL של ה-checkout ומקשר את התשלום למשתמש.",
)
async def issue_checkout_token(
    user_id: UserId,
    body: Optional[CheckoutTokenRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    ttl = timedelta(hours=body.ttl_hours) if body and body.ttl_hours else None
    issued = await CheckoutTokenService(db).issue(user_id, ttl=ttl)
    return CheckoutTokenResponse(
        token=issued.token,
        user_id=issued.user_id,
        expires_at=issued.expires_at,
        checkout_url=issued.checkout_url,
    )


@router.post(
    "/{user_id}/resync",
    response_model=ResyncResponse,
    summary="סנכרון יזום מול הספק",
    description=(
        "בודק אצל הספק אם למשתמש יש מנוי פעיל ומעדכן את המצב. "
        "force=true עוקף את ה-cooldown. 503 אם הספק לא זמין אחרי retries."
    ),
)
async def resync_user(
    user_id: UserId,
    background_tasks: BackgroundTasks,
    force: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
    provider: ProviderClient = Depends(get_provider_client),
    notifier: TelegramNotifier = Depends(get_notifier),
):
    result = await ResyncService(db, provider).resync(user_id, force=force, source="admin")
    if result.next_state is not None:
        background_tasks.add_task(
            notifier.deliver, resync_notification(user_id, result.next_state)
        )
    return result.to_dict()


@router.post(
    "/{user_id}/cancel-reason",
    summary="שמירת סיבת ביטול",
    responses={404: {"description": "המשתמש לא נמצא"}},
)
async def set_cancel_reason(
    user_id: UserId,
    body: CancelReasonRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    users = UserStateService(db)
    await users.require_user(user_id)
    await users.set_cancel_reason(user_id, body.reason)
    logger.info("Cancel reason recorded", extra_data={"user_id": user_id})
    return {"ok": True}
