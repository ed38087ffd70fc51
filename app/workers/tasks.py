"""
Celery Tasks - תחזוקה וסנכרון מתוזמן

כל task מריץ קוד async ב-event loop משלו (run_async) עם engine משלו
(get_task_session), כדי לא לשתף חיבורים בין loops.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.exceptions import AppException
from app.core.logging import get_logger, log_async_operation, set_correlation_id
from app.db.database import get_task_session
from app.domain.services import maintenance_service
from app.domain.services.notification_service import TelegramNotifier, resync_notification
from app.domain.services.provider_client import build_provider_client
from app.domain.services.resync_service import ResyncService

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.run_db_maintenance")
def run_db_maintenance(retention_days: int | None = None) -> dict:
    """מחיקת טוקנים שפגו ואירועי webhook שעברו את חלון השמירה"""

    async def _run():
        async with get_task_session() as db:
            result = await maintenance_service.run_db_maintenance(db, retention_days)
            return result.to_dict()

    return run_async(_run())


@log_async_operation("resync_batch")
async def _resync_users(user_ids: list[int] | None, *, force: bool, source: str) -> dict:
    provider = build_provider_client(settings)
    notifier = TelegramNotifier()
    summary = {"candidates": 0, "attempted": 0, "changed": 0, "failed": 0}
    try:
        async with get_task_session() as db:
            service = ResyncService(db, provider)
            if user_ids is None:
                user_ids = await service.find_lapsed_user_ids(settings.RESYNC_BATCH_SIZE)
            summary["candidates"] = len(user_ids)

            for user_id in user_ids:
                try:
                    result = await service.resync(user_id, force=force, source=source)
                except AppException as e:
                    # ספק לא זמין - המצב נשאר כמו שהוא, ממשיכים למשתמש הבא
                    await db.rollback()
                    summary["failed"] += 1
                    logger.warning(
                        "Resync failed",
                        extra_data={
                            "user_id": user_id,
                            "error_code": e.error_code.value,
                            "error": e.message,
                        },
                    )
                    continue

                if result.attempted:
                    summary["attempted"] += 1
                if result.next_state is not None:
                    summary["changed"] += 1
                    await notifier.deliver(resync_notification(user_id, result.next_state))
    finally:
        await provider.http.aclose()

    logger.info("Resync batch finished", extra_data={"source": source, **summary})
    return summary


@celery_app.task(name="app.workers.tasks.resync_lapsed_users")
def resync_lapsed_users() -> dict:
    """סנכרון תקופתי של משתמשים ללא גישה (cooldown נאכף)"""
    if not settings.ENABLE_PAYMENTS or not settings.PROVIDER_API_KEY:
        logger.info("Scheduled resync skipped (payments disabled or no provider API key)")
        return {"skipped": True}
    return run_async(_resync_users(None, force=False, source="scheduled"))


@celery_app.task(name="app.workers.tasks.resync_user")
def resync_user(user_id: int, force: bool = False) -> dict:
    """סנכרון משתמש בודד (למשל מפקודת resync בבוט)"""
    return run_async(_resync_users([user_id], force=force, source="command"))
