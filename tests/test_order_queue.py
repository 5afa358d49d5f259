import asyncio
from datetime import timedelta

import pytest

from order_pipeline.core.exceptions import DataIntegrityError
from order_pipeline.models import OrderQueueItem, QueueStatus
from order_pipeline.services.migration import OrderMigrator
from order_pipeline.services.order_queue import DurableQueue, QueueWorker
from tests.fakes import ScriptedMigrator


@pytest.fixture
def queue(session_maker, naive_clock):
    return DurableQueue(session_maker, max_attempts=3, base_delay=5, clock=naive_clock)


async def test_enqueue_inserts_pending_item(queue, staged_order, naive_clock):
    queue_id = await queue.enqueue(staged_order, caller_identity={"source": "webhook"})

    item = await queue.get(queue_id)
    assert item.status == QueueStatus.PENDING.value
    assert item.attempts == 0
    assert item.max_attempts == 3
    assert item.next_attempt_at == naive_clock.now
    assert item.order_data["id"] == staged_order.id
    assert item.caller_identity == {"source": "webhook"}
    assert item.correlation_id


async def test_claim_flips_to_processing(queue, staged_order, naive_clock):
    queue_id = await queue.enqueue(staged_order)

    item = await queue.claim()
    assert item.id == queue_id
    assert item.status == QueueStatus.PROCESSING.value
    assert item.attempts == 1
    assert item.processing_started_at == naive_clock.now

    assert await queue.claim() is None


async def test_claim_prefers_oldest_due(queue, store, draft, naive_clock):
    first = await queue.enqueue(store.put(draft))
    naive_clock.advance(seconds=1)
    second = await queue.enqueue(store.put(draft))

    assert (await queue.claim()).id == first
    assert (await queue.claim()).id == second


async def test_failure_schedules_backoff(queue, staged_order, naive_clock):
    queue_id = await queue.enqueue(staged_order)
    item = await queue.claim()

    status = await queue.mark_failed(item, "connection refused")

    assert status == QueueStatus.PENDING
    stored = await queue.get(queue_id)
    assert stored.next_attempt_at == naive_clock.now + timedelta(seconds=5)
    assert stored.error_message == "connection refused"

    # Not due yet
    assert await queue.claim() is None
    naive_clock.advance(seconds=5)
    assert (await queue.claim()).id == queue_id


async def test_backoff_is_strictly_increasing(session_maker, staged_order, naive_clock):
    queue = DurableQueue(session_maker, max_attempts=5, base_delay=5, clock=naive_clock)
    queue_id = await queue.enqueue(staged_order)

    delays = []
    for _ in range(4):
        item = await queue.claim()
        failed_at = naive_clock.now
        await queue.mark_failed(item, "timeout")
        stored = await queue.get(queue_id)
        delays.append((stored.next_attempt_at - failed_at).total_seconds())
        naive_clock.now = stored.next_attempt_at

    assert delays == [5, 10, 20, 40]


async def test_dead_letter_after_max_attempts(queue, staged_order, naive_clock):
    queue_id = await queue.enqueue(staged_order)

    statuses = []
    for _ in range(3):
        item = await queue.claim()
        statuses.append(await queue.mark_failed(item, "still down"))
        naive_clock.advance(minutes=10)

    assert statuses == [QueueStatus.PENDING, QueueStatus.PENDING, QueueStatus.DEAD_LETTER]
    stored = await queue.get(queue_id)
    assert stored.status == QueueStatus.DEAD_LETTER.value
    assert stored.attempts == 3

    naive_clock.advance(days=1)
    assert await queue.claim() is None
    assert [i.id for i in await queue.list_dead_letters()] == [queue_id]


async def test_transitions_require_processing(queue, staged_order):
    await queue.enqueue(staged_order)
    item = await queue.claim()
    assert await queue.mark_completed(item) is True

    # A second completion (or a late failure) must not overwrite the row
    assert await queue.mark_completed(item) is False
    assert await queue.mark_failed(item, "late failure") == QueueStatus.PROCESSING
    assert (await queue.get(item.id)).status == QueueStatus.COMPLETED.value


async def test_concurrent_claims_take_an_item_once(session_maker, staged_order, naive_clock):
    queue_a = DurableQueue(session_maker, clock=naive_clock)
    queue_b = DurableQueue(session_maker, clock=naive_clock)
    queue_id = await queue_a.enqueue(staged_order)

    results = await asyncio.gather(queue_a.claim(), queue_b.claim(), return_exceptions=True)

    claimed = [r for r in results if isinstance(r, OrderQueueItem)]
    assert len(claimed) == 1
    stored = await queue_a.get(queue_id)
    assert stored.status == QueueStatus.PROCESSING.value
    assert stored.attempts == 1


async def test_requeue_stale_processing(queue, staged_order, naive_clock):
    queue_id = await queue.enqueue(staged_order)
    await queue.claim()
    naive_clock.advance(minutes=11)

    assert await queue.requeue_stale(timedelta(minutes=10)) == 1
    assert (await queue.get(queue_id)).status == QueueStatus.PENDING.value


async def test_requeue_stale_dead_letters_spent_items(session_maker, staged_order, naive_clock):
    queue = DurableQueue(session_maker, max_attempts=1, base_delay=5, clock=naive_clock)
    queue_id = await queue.enqueue(staged_order)
    await queue.claim()
    naive_clock.advance(minutes=11)

    assert await queue.requeue_stale(timedelta(minutes=10)) == 0
    assert await queue.claim() is None

    item = await queue.get(queue_id)
    assert item.status == QueueStatus.DEAD_LETTER.value
    assert item.attempts == item.max_attempts == 1
    assert item.error_message
    assert [i.id for i in await queue.list_dead_letters()] == [queue_id]


async def test_requeue_stale_leaves_recent_items(queue, staged_order, naive_clock):
    queue_id = await queue.enqueue(staged_order)
    await queue.claim()
    naive_clock.advance(minutes=5)

    assert await queue.requeue_stale(timedelta(minutes=10)) == 0
    assert (await queue.get(queue_id)).status == QueueStatus.PROCESSING.value


async def test_stats_counts_every_status(queue, store, draft):
    await queue.enqueue(store.put(draft))
    await queue.enqueue(store.put(draft))
    item = await queue.claim()
    await queue.mark_completed(item)

    stats = await queue.stats()
    assert stats["pending"] == 1
    assert stats["completed"] == 1
    assert stats["dead_letter"] == 0


# =============================================================================
# WORKER
# =============================================================================

async def test_worker_completes_after_two_outages(queue, store, staged_order, naive_clock):
    migrator = ScriptedMigrator(failures=2, result=77)
    worker = QueueWorker(queue, migrator, staging_store=store, poll_interval=5)
    queue_id = await queue.enqueue(staged_order)

    assert await worker.process_next() == QueueStatus.PENDING
    naive_clock.advance(seconds=5)
    assert await worker.process_next() == QueueStatus.PENDING
    naive_clock.advance(seconds=10)
    assert await worker.process_next() == QueueStatus.COMPLETED

    item = await queue.get(queue_id)
    assert item.status == QueueStatus.COMPLETED.value
    assert item.attempts == 3
    assert item.completed_at == naive_clock.now

    migrated = store.get(staged_order.id)
    assert migrated.metadata.moved_to_permanent is True
    assert migrated.metadata.permanent_order_id == 77


async def test_worker_dead_letters_bad_data_immediately(queue, staged_order):
    migrator = ScriptedMigrator(failures=99, error=DataIntegrityError("Invalid price for menu item: Soup"))
    worker = QueueWorker(queue, migrator, poll_interval=5)
    queue_id = await queue.enqueue(staged_order)

    assert await worker.process_next() == QueueStatus.DEAD_LETTER
    item = await queue.get(queue_id)
    assert item.attempts == 1
    assert "Invalid price" in item.error_message


async def test_worker_dead_letters_malformed_snapshot(queue, session_maker, naive_clock):
    async with session_maker() as session:
        async with session.begin():
            bad = OrderQueueItem(
                order_data={"unexpected": "shape"},
                status=QueueStatus.PENDING.value,
                attempts=0,
                max_attempts=3,
                created_at=naive_clock.now,
                next_attempt_at=naive_clock.now,
            )
            session.add(bad)
    migrator = ScriptedMigrator()
    worker = QueueWorker(queue, migrator, poll_interval=5)

    assert await worker.process_next() == QueueStatus.DEAD_LETTER
    assert migrator.calls == []
    assert (await queue.get(bad.id)).status == QueueStatus.DEAD_LETTER.value


async def test_drain_keeps_going_past_failed_items(queue, store, draft):
    for _ in range(3):
        await queue.enqueue(store.put(draft))
    migrator = ScriptedMigrator(failures=1)
    worker = QueueWorker(queue, migrator, poll_interval=5)

    assert await worker.drain() == 3
    stats = await queue.stats()
    assert stats["completed"] == 2
    assert stats["pending"] == 1


async def test_worker_idle_returns_none(queue):
    worker = QueueWorker(queue, ScriptedMigrator(), poll_interval=5)
    assert await worker.process_next() is None
    assert await worker.drain() == 0


async def test_worker_migrates_orders_sharing_an_order_number(queue, store, draft, session_maker, price_calculator):
    first = store.put(draft)
    second = store.update(store.put(draft).id, {"order_number": first.order_number})
    migrator = OrderMigrator(session_maker, price_calculator)
    worker = QueueWorker(queue, migrator, staging_store=store, poll_interval=5)
    await queue.enqueue(first)
    await queue.enqueue(second)

    assert await worker.process_next() == QueueStatus.COMPLETED
    assert await worker.process_next() == QueueStatus.COMPLETED

    stats = await queue.stats()
    assert stats["completed"] == 2
    assert stats["dead_letter"] == 0
    assert store.get(second.id).metadata.moved_to_permanent is True
