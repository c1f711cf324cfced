import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import after_setup_logger

from mailsync.config import settings

# Create Celery app
celery_app = Celery(
    'mailsync',
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['mailsync.tasks.sync_tasks']
)

# Configure Celery
celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes max per task
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)


def every(minutes: int) -> crontab:
    """Crontab firing every ``minutes`` minutes (whole hours above 59)"""
    if minutes >= 60:
        return crontab(minute=0, hour=f'*/{minutes // 60}')
    return crontab(minute=f'*/{minutes}')


# Periodic task schedule
celery_app.conf.beat_schedule = {
    'sync-all-accounts': {
        'task': 'mailsync.tasks.sync_tasks.sync_all_accounts',
        'schedule': every(settings.SYNC_INTERVAL_MINUTES),
    },
    'renew-gmail-watches': {
        'task': 'mailsync.tasks.sync_tasks.renew_gmail_watches',
        'schedule': every(settings.WATCH_RENEWAL_INTERVAL_MINUTES),
    },
}


@after_setup_logger.connect
def setup_worker_logging(logger, **kwargs):
    logger.setLevel(settings.LOG_LEVEL)
    logging.getLogger('mailsync').setLevel(settings.LOG_LEVEL)
