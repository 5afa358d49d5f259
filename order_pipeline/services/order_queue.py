"""
Durable Migration Queue

Table-backed work list that guarantees every paid order eventually lands
in the permanent store, across restarts and downstream outages.

Item lifecycle:
    pending -> processing -> completed
                          -> pending (backoff)  while attempts < max_attempts
                          -> dead_letter        once attempts reach max_attempts,
                                                or immediately for bad data

Concurrency:
    claim() is atomic at the storage layer: the candidate row is locked with
    FOR UPDATE SKIP LOCKED where the database supports it, and the flip to
    processing is a conditional UPDATE keyed by (id, status='pending').
    Completion and failure writes are conditional on status='processing', so
    several workers (threads or processes) can share one table safely.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_pipeline.core.background import PeriodicTask
from order_pipeline.core.clock import Clock, backoff_delay, utcnow_naive
from order_pipeline.core.config import get_settings
from order_pipeline.core.exceptions import DataIntegrityError
from order_pipeline.models import OrderQueueItem, QueueStatus
from order_pipeline.schemas import StagedOrder
from order_pipeline.services.staging_store import StagingStore

logger = logging.getLogger(__name__)

MigrateFunction = Callable[[StagedOrder], Awaitable[int]]

# Candidates examined per claim() before giving up to a competing worker
CLAIM_CANDIDATES = 5


class DurableQueue:
    """
    Migration work items stored in the ``order_queue`` table.

    Example:
        >>> queue = DurableQueue(get_session_maker())
        >>> queue_id = await queue.enqueue(staged_order)
        >>> item = await queue.claim()
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        clock: Clock = utcnow_naive,
    ):
        settings = get_settings()
        self.session_maker = session_maker
        self.max_attempts = max_attempts or settings.queue_max_attempts
        self.base_delay = settings.queue_base_delay_seconds if base_delay is None else base_delay
        self.clock = clock

    async def enqueue(
        self,
        order: StagedOrder,
        caller_identity: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> int:
        """Insert a pending item for ``order``; returns the queue id."""
        now = self.clock()
        item = OrderQueueItem(
            order_data=order.model_dump(mode="json"),
            caller_identity=caller_identity,
            status=QueueStatus.PENDING.value,
            attempts=0,
            max_attempts=self.max_attempts,
            created_at=now,
            updated_at=now,
            next_attempt_at=now,
            correlation_id=correlation_id or uuid.uuid4().hex,
        )
        async with self.session_maker() as session:
            async with session.begin():
                session.add(item)
                await session.flush()
                queue_id = item.id

        logger.info(
            f"Queued staged order {order.id} for migration "
            f"(queue #{queue_id}, correlation={item.correlation_id})"
        )
        return queue_id

    async def claim(self) -> Optional[OrderQueueItem]:
        """
        Atomically take the oldest-due pending item.

        Flips it to processing, increments attempts and stamps
        processing_started_at. Returns None when nothing is due.
        """
        now = self.clock()
        skipped: list[int] = []

        for _ in range(CLAIM_CANDIDATES):
            async with self.session_maker() as session:
                async with session.begin():
                    query = (
                        select(OrderQueueItem.id)
                        .where(
                            OrderQueueItem.status == QueueStatus.PENDING.value,
                            OrderQueueItem.next_attempt_at <= now,
                        )
                        .order_by(
                            OrderQueueItem.next_attempt_at.asc(),
                            OrderQueueItem.created_at.asc(),
                        )
                        .limit(1)
                        .with_for_update(skip_locked=True)
                    )
                    if skipped:
                        query = query.where(OrderQueueItem.id.not_in(skipped))

                    item_id = await session.scalar(query)
                    if item_id is None:
                        return None

                    result = await session.execute(
                        update(OrderQueueItem)
                        .where(
                            OrderQueueItem.id == item_id,
                            OrderQueueItem.status == QueueStatus.PENDING.value,
                        )
                        .values(
                            status=QueueStatus.PROCESSING.value,
                            attempts=OrderQueueItem.attempts + 1,
                            processing_started_at=now,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        # Another worker won this row
                        skipped.append(item_id)
                        continue

                    item = await session.get(OrderQueueItem, item_id, populate_existing=True)

            logger.debug(f"Claimed queue item #{item.id} (attempt {item.attempts}/{item.max_attempts})")
            return item

        return None

    async def _transition(self, item_id: int, values: dict[str, Any]) -> bool:
        async with self.session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(OrderQueueItem)
                    .where(
                        OrderQueueItem.id == item_id,
                        OrderQueueItem.status == QueueStatus.PROCESSING.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def mark_completed(self, item: OrderQueueItem) -> bool:
        now = self.clock()
        done = await self._transition(
            item.id,
            {
                "status": QueueStatus.COMPLETED.value,
                "completed_at": now,
                "updated_at": now,
                "error_message": None,
            },
        )
        if not done:
            logger.warning(f"Queue item #{item.id} was not in processing; completion not recorded")
        return done

    async def mark_failed(
        self,
        item: OrderQueueItem,
        error: str,
        permanent: bool = False,
    ) -> QueueStatus:
        """
        Record a failed attempt.

        Dead-letters when the attempt budget is spent or ``permanent`` is
        set; otherwise schedules the next attempt with exponential backoff.
        """
        now = self.clock()

        if permanent or item.attempts >= item.max_attempts:
            status = QueueStatus.DEAD_LETTER
            values = {"status": status.value, "error_message": error, "updated_at": now}
        else:
            status = QueueStatus.PENDING
            values = {
                "status": status.value,
                "error_message": error,
                "updated_at": now,
                "next_attempt_at": now + backoff_delay(self.base_delay, item.attempts),
            }

        if not await self._transition(item.id, values):
            logger.warning(f"Queue item #{item.id} was not in processing; failure not recorded")
            return QueueStatus(item.status)

        if status == QueueStatus.DEAD_LETTER:
            logger.error(
                f"❌ Queue item #{item.id} dead-lettered after {item.attempts} attempt(s) "
                f"(correlation={item.correlation_id}): {error}"
            )
        else:
            logger.warning(
                f"Queue item #{item.id} failed attempt {item.attempts}/{item.max_attempts}, "
                f"retrying at {values['next_attempt_at'].isoformat()}: {error}"
            )
        return status

    async def requeue_stale(self, older_than: timedelta) -> int:
        """
        Recover items stuck in processing (crashed worker).

        Items that already used their last attempt are dead-lettered; the rest
        return to pending. Returns the number returned to pending.
        """
        now = self.clock()
        stale = (
            OrderQueueItem.status == QueueStatus.PROCESSING.value,
            OrderQueueItem.processing_started_at <= now - older_than,
        )
        async with self.session_maker() as session:
            async with session.begin():
                exhausted = await session.execute(
                    update(OrderQueueItem)
                    .where(*stale, OrderQueueItem.attempts >= OrderQueueItem.max_attempts)
                    .values(
                        status=QueueStatus.DEAD_LETTER.value,
                        updated_at=now,
                        error_message="Worker stopped during the final attempt",
                    )
                    .execution_options(synchronize_session=False)
                )
                dead_lettered = exhausted.rowcount

                result = await session.execute(
                    update(OrderQueueItem)
                    .where(*stale, OrderQueueItem.attempts < OrderQueueItem.max_attempts)
                    .values(
                        status=QueueStatus.PENDING.value,
                        next_attempt_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                count = result.rowcount

        if dead_lettered:
            logger.error(f"❌ Dead-lettered {dead_lettered} stale processing item(s) with no attempts left")
        if count:
            logger.warning(f"Returned {count} stale processing item(s) to pending")
        return count

    # =========================================================================
    # INSPECTION
    # =========================================================================

    async def get(self, queue_id: int) -> Optional[OrderQueueItem]:
        async with self.session_maker() as session:
            return await session.get(OrderQueueItem, queue_id)

    async def stats(self) -> dict[str, int]:
        async with self.session_maker() as session:
            rows = await session.execute(
                select(OrderQueueItem.status, func.count(OrderQueueItem.id))
                .group_by(OrderQueueItem.status)
            )
            counts = {status.value: 0 for status in QueueStatus}
            counts.update({status: count for status, count in rows.all()})
            return counts

    async def list_dead_letters(self, limit: int = 100) -> list[OrderQueueItem]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(OrderQueueItem)
                .where(OrderQueueItem.status == QueueStatus.DEAD_LETTER.value)
                .order_by(OrderQueueItem.updated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())


class QueueWorker:
    """
    Polls the durable queue and migrates claimed items.

    Each tick drains the queue (claim -> migrate -> record, until nothing
    is due) and then waits ``poll_interval`` seconds.
    """

    def __init__(
        self,
        queue: DurableQueue,
        migrate: MigrateFunction,
        staging_store: Optional[StagingStore] = None,
        poll_interval: Optional[float] = None,
        stale_after: Optional[float] = None,
    ):
        settings = get_settings()
        self.queue = queue
        self.migrate = migrate
        self.staging_store = staging_store
        self.poll_interval = poll_interval or settings.queue_poll_interval_seconds
        self.stale_after = timedelta(
            seconds=stale_after or settings.queue_stale_after_seconds
        )
        self._task: Optional[PeriodicTask] = None

    async def process_next(self) -> Optional[QueueStatus]:
        """Process one item; returns its resulting status, or None if the queue is idle."""
        item = await self.queue.claim()
        if item is None:
            return None

        try:
            order = StagedOrder.model_validate(item.order_data)
        except ValidationError as e:
            return await self.queue.mark_failed(
                item, f"Malformed order snapshot: {e.error_count()} validation error(s)", permanent=True
            )

        try:
            permanent_id = await self.migrate(order)
        except DataIntegrityError as e:
            return await self.queue.mark_failed(item, str(e), permanent=True)
        except Exception as e:
            return await self.queue.mark_failed(item, f"{type(e).__name__}: {e}")

        await self.queue.mark_completed(item)
        logger.info(
            f"✅ Queue item #{item.id} completed: {order.id} -> order #{permanent_id} "
            f"(correlation={item.correlation_id})"
        )
        if self.staging_store is not None:
            self.staging_store.mark_migrated(order.id, permanent_id)
        return QueueStatus.COMPLETED

    async def drain(self) -> int:
        """Process items until none is due. Returns how many were processed."""
        processed = 0
        while True:
            try:
                status = await self.process_next()
            except Exception as e:
                # Storage unreachable; the next tick tries again
                logger.error(f"Queue worker could not process next item: {e}")
                break
            if status is None:
                break
            processed += 1
        return processed

    async def start(self) -> None:
        await self.queue.requeue_stale(self.stale_after)
        self._task = PeriodicTask("order-queue-worker", self.poll_interval, self.drain)
        self._task.start()

    async def stop(self) -> None:
        if self._task is not None:
            await self._task.stop()
            self._task = None
