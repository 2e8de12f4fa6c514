"""Celery application and beat schedule for the sync workers.

Start a worker with beat embedded:

    celery -A erpsync.workers.celery_app worker --beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from ..config import settings
from ..observability.logging_config import configure_logging

configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

celery_app = Celery(
    "erpsync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["erpsync.workers.sync_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    worker_hijack_root_logger=False,
)

celery_app.conf.beat_schedule = {
    'sync-process-queue': {
        'task': 'sync.process_queue',
        'schedule': 60.0,
        'options': {
            'expires': 55,  # Skip ticks a busy worker could not pick up in time
        },
    },
    'sync-recover-stale': {
        'task': 'sync.recover_stale',
        'schedule': crontab(minute='*/10'),
    },
    'sync-cleanup-queue-daily': {
        'task': 'sync.cleanup_queue',
        'schedule': crontab(hour=3, minute=0),  # 03:00 UTC
    },
}
