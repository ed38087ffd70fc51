"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "entitlement_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # מחיקת checkout tokens שפגו + אירועי webhook ישנים מחלון השמירה
    "run-db-maintenance-daily": {
        "task": "app.workers.tasks.run_db_maintenance",
        "schedule": crontab(hour="3", minute="15"),
    },
    # סנכרון יזום למשתמשים בלי גישה שיש להם contact id אצל הספק
    "resync-lapsed-users-every-30-minutes": {
        "task": "app.workers.tasks.resync_lapsed_users",
        "schedule": 1800.0,  # 30 דקות
    },
}
