"""Celery task definitions for scheduled ledger work."""

from celery import Celery
from celery.schedules import crontab

from lendledger.config import settings

celery_app = Celery(
    "lendledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["lendledger.tasks.ledger_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)

# Periodic beat schedule
celery_app.conf.beat_schedule = {
    "assess-late-fees-daily": {
        "task": "lendledger.tasks.ledger_tasks.assess_late_fees",
        "schedule": crontab(hour=0, minute=30),
    },
    "verify-balances-daily": {
        "task": "lendledger.tasks.ledger_tasks.verify_balances",
        "schedule": crontab(hour=1, minute=0),
    },
}
