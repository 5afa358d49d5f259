import json
from datetime import timedelta

import pytest
from filelock import FileLock

from order_pipeline.core.exceptions import DataIntegrityError
from order_pipeline.services.retry_journal import RetryJournal, RetrySweeper
from tests.fakes import ScriptedMigrator


@pytest.fixture
def journal(tmp_path, clock):
    return RetryJournal(directory=tmp_path / "failed-orders", max_retries=5, base_delay=30, clock=clock)


def test_add_failed_order_writes_snapshot(journal, staged_order, clock):
    path = journal.add_failed_order(staged_order, "connection refused", correlation_id="corr-1")

    assert path.name.startswith(f"failed-order-{staged_order.id}-")
    assert path.suffix == ".json"
    raw = json.loads(path.read_text())
    assert raw["order"]["id"] == staged_order.id
    assert raw["failure_reason"] == "connection refused"

    [(listed_path, entry)] = journal.list_entries()
    assert listed_path == path
    assert entry.retry_count == 0
    assert entry.correlation_id == "corr-1"
    assert entry.next_retry_time == clock.now + timedelta(seconds=30)


def test_due_entries_respect_backoff(journal, staged_order, clock):
    journal.add_failed_order(staged_order, "down")

    assert journal.due_entries() == []
    clock.advance(seconds=30)
    assert len(journal.due_entries()) == 1


async def test_sweep_success_deletes_entry_and_marks_store(journal, store, staged_order, clock):
    path = journal.add_failed_order(staged_order, "down")
    sweeper = RetrySweeper(journal, ScriptedMigrator(result=55), staging_store=store, interval=60)
    clock.advance(seconds=30)

    assert await sweeper.sweep() == 1
    assert not path.exists()
    assert journal.list_entries() == []
    assert store.get(staged_order.id).metadata.permanent_order_id == 55


async def test_sweep_failure_reschedules_with_backoff(journal, staged_order, clock):
    path = journal.add_failed_order(staged_order, "down")
    sweeper = RetrySweeper(journal, ScriptedMigrator(failures=10), interval=60)

    expected_delays = [60, 120, 240]
    for delay in expected_delays:
        clock.advance(seconds=3600)
        assert await sweeper.sweep() == 0
        entry = journal.read_entry(path)
        assert entry.last_retry_time == clock.now
        assert entry.next_retry_time - clock.now == timedelta(seconds=delay)

    assert journal.read_entry(path).retry_count == 3


async def test_exhausted_entries_stay_on_disk(journal, staged_order, clock):
    path = journal.add_failed_order(staged_order, "down")
    migrator = ScriptedMigrator(failures=100)
    sweeper = RetrySweeper(journal, migrator, interval=60)

    for _ in range(8):
        clock.advance(days=1)
        await sweeper.sweep()

    assert len(migrator.calls) == 5
    entry = journal.read_entry(path)
    assert entry.retry_count == 5
    assert journal.is_exhausted(entry)
    assert journal.due_entries() == []
    assert path.exists()


async def test_data_integrity_failure_exhausts_immediately(journal, staged_order, clock):
    path = journal.add_failed_order(staged_order, "down")
    migrator = ScriptedMigrator(failures=1, error=DataIntegrityError("Invalid price for menu item: Soup"))
    sweeper = RetrySweeper(journal, migrator, interval=60)

    clock.advance(minutes=1)
    await sweeper.sweep()
    clock.advance(days=1)
    await sweeper.sweep()

    assert len(migrator.calls) == 1
    assert journal.read_entry(path).retry_count == 5


async def test_sweep_skips_entries_locked_elsewhere(journal, staged_order, clock):
    path = journal.add_failed_order(staged_order, "down")
    migrator = ScriptedMigrator()
    sweeper = RetrySweeper(journal, migrator, interval=60)
    clock.advance(minutes=1)

    with FileLock(f"{path}.lock"):
        assert await sweeper.sweep() == 0
    assert migrator.calls == []

    assert await sweeper.sweep() == 1


async def test_one_bad_entry_does_not_stop_the_sweep(journal, store, draft, clock):
    journal.add_failed_order(store.put(draft), "down")
    journal.add_failed_order(store.put(draft), "down")
    (journal.directory / "failed-order-garbage-1.json").write_text("{not json")
    sweeper = RetrySweeper(journal, ScriptedMigrator(failures=1), interval=60)
    clock.advance(minutes=1)

    assert await sweeper.sweep() == 1
    assert len(journal.list_entries()) == 1
