"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend.

Optional out-of-process deployment of the migration queue drain and the
retry journal sweep, scheduled with celery beat:

    celery -A order_pipeline.celery_worker worker --beat --loglevel=info
"""

from celery import Celery

from order_pipeline.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    'order_pipeline_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['order_pipeline.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_concurrency=2,

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies

    broker_connection_retry_on_startup=True,

    # Periodic pipeline maintenance
    beat_schedule={
        'drain-migration-queue': {
            'task': 'order_pipeline.tasks.drain_migration_queue',
            'schedule': settings.queue_poll_interval_seconds,
        },
        'sweep-retry-journal': {
            'task': 'order_pipeline.tasks.sweep_retry_journal',
            'schedule': settings.journal_sweep_interval_seconds,
        },
    },
)


if __name__ == '__main__':
    celery_app.start()
