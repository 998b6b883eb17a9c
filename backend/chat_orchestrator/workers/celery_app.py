"""
Celery application instance.

Imported by task modules and by the worker process:
    celery -A chat_orchestrator.workers.celery_app worker --queues maintenance -l info
    celery -A chat_orchestrator.workers.celery_app beat -l info
"""

from celery import Celery
from celery.schedules import crontab

from chat_orchestrator.core.config import get_settings

settings = get_settings()

celery = Celery(
    "chat_orchestrator",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["chat_orchestrator.workers.tasks"],
)

celery.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "chat_orchestrator.workers.tasks.cleanup_checkpoints":  {"queue": "maintenance"},
        "chat_orchestrator.workers.tasks.cleanup_expired_data": {"queue": "maintenance"},
    },
    # Both cleanups are idempotent; staggered so they do not contend for the pool
    beat_schedule={
        "cleanup-checkpoints-daily": {
            "task": "chat_orchestrator.workers.tasks.cleanup_checkpoints",
            "schedule": crontab(hour=3, minute=0),
        },
        "cleanup-expired-data-daily": {
            "task": "chat_orchestrator.workers.tasks.cleanup_expired_data",
            "schedule": crontab(hour=3, minute=30),
        },
    },
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)
