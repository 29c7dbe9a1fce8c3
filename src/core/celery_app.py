# src/core/celery_app.py
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from src.config import settings


celery_app = Celery(
    'journey_export_tasks',  # Name of the Celery app
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['src.tasks.export_worker'] # List of modules containing tasks
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    # A job is acked only once it finished; a redelivered job that is already
    # running is failed by the worker rather than restarted.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    from src.logging_config import setup_logging
    setup_logging()
