"""Celery application and beat schedule for journal maintenance."""

from celery import Celery
from celery.schedules import crontab

from pawnshop.config import settings

celery_app = Celery("pawnshop", broker=settings.redis_url)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    task_ignore_result=True,
    # A sweep that dies mid-run is safe to repeat
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    timezone="Africa/Harare",
    enable_utc=True,
)

celery_app.conf.beat_schedule = {
    "reconcile-pending-ledger": {
        "task": "pawnshop.tasks.journal_tasks.reconcile_ledger",
        "schedule": crontab(minute="*/15"),
    },
    "poll-pending-payments": {
        "task": "pawnshop.tasks.journal_tasks.poll_pending_payments",
        "schedule": crontab(minute="*/5"),
    },
}

from pawnshop.tasks.journal_tasks import *  # noqa: E402,F401,F403
