"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "tradie_marketplace",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.BUSINESS_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-outbox-every-10-seconds": {
        "task": "app.workers.tasks.process_outbox_messages",
        "schedule": 10.0,
    },
    "expire-jobs-every-5-minutes": {
        "task": "app.workers.tasks.process_expired_jobs",
        "schedule": 300.0,
    },
    # includes recovery of policies stuck in processing
    "process-auto-topups-every-10-minutes": {
        "task": "app.workers.tasks.process_auto_topups",
        "schedule": 600.0,
    },
    "expire-credits-hourly": {
        "task": "app.workers.tasks.process_expired_credits",
        "schedule": 3600.0,
    },
    "warn-expiring-credits-daily": {
        "task": "app.workers.tasks.send_expiring_credit_warnings",
        "schedule": crontab(hour="9", minute="0"),
    },
    "monthly-credit-summary": {
        "task": "app.workers.tasks.send_monthly_summaries",
        "schedule": crontab(day_of_month="1", hour="3", minute="0"),
    },
    "cleanup-old-messages-daily": {
        "task": "app.workers.tasks.cleanup_old_messages",
        "schedule": 86400.0,  # 24 hours
    },
}
