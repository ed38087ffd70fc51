"""
Provider Webhook Handler - עדכוני מנוי מספק החיוב/CRM.

הגוף נקרא כ-bytes גולמיים (החתימה מחושבת עליהם), מאומת ע"י
authenticate_provider_webhook ומועבר ל-WebhookProcessor.
הודעות למשתמש נשלחות כ-background task, אחרי שהתשובה חזרה לספק.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.services import get_notifier, get_provider_client
from app.api.dependencies.webhook_auth import authenticate_provider_webhook
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.notification_service import TelegramNotifier
from app.domain.services.provider_client import ProviderClient
from app.domain.services.webhook_processor import WebhookProcessor

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/provider",
    summary="Webhook עדכוני מנוי מהספק",
    description=(
        "מקבל אירועי subscription/payment. "
        "200 גם לכפילויות, אירועים לא מקושרים ואירועים ישנים (כדי שהספק לא ינסה שוב). "
        "401 באימות כושל, 400 בגוף לא תקין, 429 בחריגה מ-rate limit."
    ),
    responses={
        200: {"content": {"application/json": {"example": {"ok": True}}}},
        400: {"content": {"application/json": {"example": {"ok": False, "error": "Invalid JSON"}}}},
        401: {"content": {"application/json": {"example": {"ok": False}}}},
    },
)
async def provider_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    raw_body: bytes = Depends(authenticate_provider_webhook),
    db: AsyncSession = Depends(get_db),
    provider: ProviderClient = Depends(get_provider_client),
    notifier: TelegramNotifier = Depends(get_notifier),
) -> dict:
    processor = WebhookProcessor(db, provider)
    outcome = await processor.process(raw_body, request.query_params.get("token"))

    for notification in outcome.notifications:
        background_tasks.add_task(notifier.deliver, notification)

    logger.info(
        "Provider webhook handled",
        extra_data={
            "user_id": outcome.user_id,
            "reason": outcome.reason,
            "notifications": len(outcome.notifications),
        },
    )
    return outcome.body
