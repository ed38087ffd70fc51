"""
שירות בדיקת בריאות - בדיקות תלויות (DB, Celery broker).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקת התלויות שהשירות לא יכול לעבוד בלעדיהן
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות - ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_BROKER = "error: broker_unavailable"


async def _check_db(session_factory: async_sessionmaker | None = None) -> str:
    """בדיקת חיבור למסד הנתונים באמצעות שאילתה קלה."""
    factory = session_factory or AsyncSessionLocal
    try:
        async with factory() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_broker(broker_url: str | None = None) -> str:
    """PING ל-Redis שמשמש broker ל-Celery (משימות תחזוקה וסנכרון)."""
    try:
        client = aioredis.from_url(broker_url or settings.CELERY_BROKER_URL)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Broker health check failed", extra_data={"error": str(e)})
        return _ERROR_BROKER


async def check_readiness(
    session_factory: async_sessionmaker | None = None,
    broker_url: str | None = None,
) -> dict[str, Any]:
    """
    בדיקת מוכנות.

    - status: "healthy" אם הכל תקין, "degraded" אם אחת התלויות נכשלה
    - db / broker: "ok" או "error: ..."
    - provider_api: "configured" / "not_configured" (מידע בלבד, לא משפיע על status)
    """
    checks = {
        "db": await _check_db(session_factory),
        "broker": await _check_broker(broker_url),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {
        "status": overall_status,
        **checks,
        "provider_api": "configured" if settings.PROVIDER_API_KEY else "not_configured",
    }
