"""
Celery Tasks
Runs the pipeline's deferred migration paths outside the API process.

Both tasks are safe to run next to the in-process QueueWorker and
RetrySweeper: queue claims are atomic and journal entries are locked
per file.
"""

import asyncio
import logging
import time
from datetime import datetime

from order_pipeline.celery_worker import celery_app
from order_pipeline.database import create_engine, create_session_maker
from order_pipeline.services.migration import OrderMigrator
from order_pipeline.services.order_queue import DurableQueue, QueueWorker
from order_pipeline.services.retry_journal import RetryJournal, RetrySweeper

logger = logging.getLogger(__name__)


async def _drain_queue() -> int:
    # Fresh engine per run: each asyncio.run() gets its own event loop
    engine = create_engine()
    try:
        session_maker = create_session_maker(engine)
        queue = DurableQueue(session_maker)
        worker = QueueWorker(queue, OrderMigrator(session_maker))
        return await worker.drain()
    finally:
        await engine.dispose()


async def _sweep_journal() -> int:
    engine = create_engine()
    try:
        migrator = OrderMigrator(create_session_maker(engine))
        sweeper = RetrySweeper(RetryJournal(), migrator)
        return await sweeper.sweep()
    finally:
        await engine.dispose()


@celery_app.task(bind=True)
def drain_migration_queue(self) -> dict:
    """
    Migrate every due durable queue item.

    Returns:
        dict: Number of items processed and elapsed time
    """
    task_id = self.request.id
    start_time = time.time()

    processed = asyncio.run(_drain_queue())

    elapsed = round(time.time() - start_time, 3)
    if processed:
        logger.info(f"📋 Task {task_id}: processed {processed} queue item(s) in {elapsed}s")

    return {
        'processed': processed,
        'task_id': task_id,
        'processing_time_seconds': elapsed,
    }


@celery_app.task(bind=True)
def sweep_retry_journal(self) -> dict:
    """Retry journaled migrations whose backoff has elapsed."""
    task_id = self.request.id
    start_time = time.time()

    migrated = asyncio.run(_sweep_journal())

    elapsed = round(time.time() - start_time, 3)
    if migrated:
        logger.info(f"📋 Task {task_id}: migrated {migrated} journaled order(s) in {elapsed}s")

    return {
        'migrated': migrated,
        'task_id': task_id,
        'processing_time_seconds': elapsed,
    }


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
