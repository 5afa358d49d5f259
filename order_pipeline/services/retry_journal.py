"""
Retry Journal

File-based record of migrations that failed before a durable queue row
could be written (e.g. the database was unreachable). One JSON file per
failed order:

    {data_directory}/failed-orders/failed-order-{staging_id}-{timestamp}.json

The RetrySweeper re-runs the migration for entries whose backoff has
elapsed. Successful entries are deleted; entries that reach max_retries
stay on disk as operator-visible dead letters.
"""

import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from filelock import FileLock, Timeout
from pydantic import ValidationError

from order_pipeline.core.background import PeriodicTask
from order_pipeline.core.clock import Clock, backoff_delay, utcnow
from order_pipeline.core.config import get_settings
from order_pipeline.core.exceptions import DataIntegrityError
from order_pipeline.schemas import RetryJournalEntry, StagedOrder
from order_pipeline.services.staging_store import StagingStore

logger = logging.getLogger(__name__)

ENTRY_GLOB = "failed-order-*.json"


class RetryJournal:
    def __init__(
        self,
        directory: Optional[Union[str, Path]] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        settings = get_settings()
        self.directory = Path(directory) if directory else settings.journal_directory
        self.max_retries = max_retries or settings.journal_max_retries
        self.base_delay = settings.journal_base_delay_seconds if base_delay is None else base_delay
        self.clock = clock

        self.directory.mkdir(parents=True, exist_ok=True)

    def _write_entry(self, path: Path, entry: RetryJournalEntry) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(entry.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def add_failed_order(
        self,
        order: StagedOrder,
        reason: str,
        caller_identity: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> Path:
        """
        Persist a snapshot of ``order`` with the failure reason.

        Raises:
            OSError: If the entry cannot be written
        """
        now = self.clock()
        entry = RetryJournalEntry(
            order=order,
            caller_identity=caller_identity,
            correlation_id=correlation_id or uuid.uuid4().hex,
            failure_reason=reason,
            retry_count=0,
            next_retry_time=now + backoff_delay(self.base_delay, 1),
            created_at=now,
        )
        path = self.directory / f"failed-order-{order.id}-{int(time.time() * 1000)}.json"
        self._write_entry(path, entry)

        logger.warning(f"Journaled failed migration for {order.id} at {path.name}: {reason}")
        return path

    def read_entry(self, path: Path) -> Optional[RetryJournalEntry]:
        try:
            return RetryJournalEntry.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            logger.error(f"Unreadable retry journal entry {path.name}: {e}")
            return None

    def list_entries(self) -> list[tuple[Path, RetryJournalEntry]]:
        entries = []
        for path in sorted(self.directory.glob(ENTRY_GLOB)):
            entry = self.read_entry(path)
            if entry is not None:
                entries.append((path, entry))
        return entries

    def is_exhausted(self, entry: RetryJournalEntry) -> bool:
        return entry.retry_count >= self.max_retries

    def due_entries(self) -> list[tuple[Path, RetryJournalEntry]]:
        """Entries whose backoff has elapsed and that still have retries left."""
        now = self.clock()
        return [
            (path, entry)
            for path, entry in self.list_entries()
            if not self.is_exhausted(entry)
            and (entry.next_retry_time is None or entry.next_retry_time <= now)
        ]

    def record_success(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def record_failure(
        self,
        path: Path,
        entry: RetryJournalEntry,
        reason: str,
        exhausted: bool = False,
    ) -> RetryJournalEntry:
        """
        Rewrite the entry with one more retry and the next backoff time.

        ``exhausted`` jumps straight to max_retries (data that no retry can fix).
        """
        now = self.clock()
        retry_count = self.max_retries if exhausted else entry.retry_count + 1
        updated = entry.model_copy(
            update={
                "failure_reason": reason,
                "retry_count": retry_count,
                "last_retry_time": now,
                "next_retry_time": now + backoff_delay(self.base_delay, retry_count + 1),
            }
        )
        self._write_entry(path, updated)

        if self.is_exhausted(updated):
            logger.error(
                f"❌ Retry journal entry {path.name} exhausted after {updated.retry_count} "
                f"retries; left for operator review: {reason}"
            )
        else:
            logger.warning(
                f"Retry {updated.retry_count}/{self.max_retries} failed for {entry.order.id}, "
                f"next attempt at {updated.next_retry_time.isoformat()}: {reason}"
            )
        return updated


class RetrySweeper:
    """
    Periodically re-runs migrations recorded in the retry journal.

    Each entry is worked on under a non-blocking per-file lock; entries held
    by another sweeper are skipped until the next sweep.
    """

    def __init__(
        self,
        journal: RetryJournal,
        migrate: Callable[[StagedOrder], Awaitable[int]],
        staging_store: Optional[StagingStore] = None,
        interval: Optional[float] = None,
    ):
        self.journal = journal
        self.migrate = migrate
        self.staging_store = staging_store
        self.interval = interval or get_settings().journal_sweep_interval_seconds
        self._task: Optional[PeriodicTask] = None

    async def sweep(self) -> int:
        """Retry every due entry. Returns the number migrated."""
        migrated = 0
        for path, _ in self.journal.due_entries():
            lock = FileLock(f"{path}.lock", timeout=0)
            try:
                lock.acquire()
            except Timeout:
                logger.debug(f"Retry journal entry {path.name} is locked by another sweeper")
                continue

            try:
                if await self._retry_entry(path):
                    migrated += 1
            except OSError as e:
                logger.error(f"Could not update retry journal entry {path.name}: {e}")
            finally:
                lock.release()

        if migrated:
            logger.info(f"Retry sweep migrated {migrated} journaled order(s)")
        return migrated

    async def _retry_entry(self, path: Path) -> bool:
        # Re-read under the lock; another sweeper may have finished it
        entry = self.journal.read_entry(path)
        if entry is None or self.journal.is_exhausted(entry):
            return False

        try:
            permanent_id = await self.migrate(entry.order)
        except DataIntegrityError as e:
            self.journal.record_failure(path, entry, str(e), exhausted=True)
            return False
        except Exception as e:
            self.journal.record_failure(path, entry, f"{type(e).__name__}: {e}")
            return False

        self.journal.record_success(path)
        Path(f"{path}.lock").unlink(missing_ok=True)
        logger.info(f"✅ Journaled order {entry.order.id} migrated as order #{permanent_id}")

        if self.staging_store is not None:
            self.staging_store.mark_migrated(entry.order.id, permanent_id)
        return True

    async def start(self) -> None:
        self._task = PeriodicTask("retry-journal-sweeper", self.interval, self.sweep)
        self._task.start()

    async def stop(self) -> None:
        if self._task is not None:
            await self._task.stop()
            self._task = None
