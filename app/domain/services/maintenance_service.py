"""
Maintenance Service - ניקוי תקופתי של טבלאות שגדלות ללא הגבלה.

- webhook_events: מחיקת רשומות ישנות מחלון ה-retention (ברירת מחדל 30 יום).
  אחרי המחיקה משלוח חוזר של אותו אירוע ייחשב חדש - ולכן החלון ארוך
  בהרבה מחלון ה-retry של הספק.
- checkout_tokens: מחיקת טוקנים שפג תוקפם.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger, log_async_operation
from app.db.database import utcnow
from app.db.models.webhook_event import WebhookEvent
from app.domain.services.checkout_token_service import CheckoutTokenService

logger = get_logger(__name__)


@dataclass(frozen=True)
class MaintenanceResult:
    now: datetime
    webhook_events_cutoff: datetime
    deleted_expired_checkout_tokens: int
    deleted_old_webhook_events: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["now"] = self.now.isoformat()
        data["webhook_events_cutoff"] = self.webhook_events_cutoff.isoformat()
        return data


@log_async_operation("db_maintenance")
async def run_db_maintenance(
    db: AsyncSession,
    retention_days: int | None = None,
    now: datetime | None = None,
) -> MaintenanceResult:
    current = now or utcnow()
    days = settings.WEBHOOK_EVENTS_RETENTION_DAYS if retention_days is None else retention_days
    days = max(1, int(days))
    cutoff = current - timedelta(days=days)

    try:
        deleted_tokens = await CheckoutTokenService(db).purge_expired(current)
        events_result = await db.execute(
            delete(WebhookEvent).where(WebhookEvent.received_at < cutoff)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    result = MaintenanceResult(
        now=current,
        webhook_events_cutoff=cutoff,
        deleted_expired_checkout_tokens=deleted_tokens,
        deleted_old_webhook_events=events_result.rowcount or 0,
    )
    logger.info(
        "DB maintenance completed",
        extra_data={
            "expired_checkouts_deleted": result.deleted_expired_checkout_tokens,
            "webhook_events_deleted": result.deleted_old_webhook_events,
            "retention_days": days,
        },
    )
    return result
