"""
Staging Store

Keyed transient storage for orders awaiting payment:
- Memory-resident map, the authoritative copy for the process lifetime
- Disk mirror: one JSON file per order plus a regenerated index.json
- Time-based expiry (48h by default), swept hourly
- Periodic full flush (every 5 minutes) and a final flush on stop()

Disk I/O failures are logged and swallowed. The mirror bounds data loss on
restart; it is not a crash-safe log.

Version: 1.0.0
"""

import json
import logging
import os
import random
import re
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Union

from filelock import FileLock, Timeout
from pydantic import BaseModel, ValidationError

from order_pipeline.core.background import PeriodicTask
from order_pipeline.core.clock import Clock, utcnow
from order_pipeline.core.config import get_settings
from order_pipeline.schemas import OrderDraft, StagedOrder

logger = logging.getLogger(__name__)

ID_PREFIX = "TEMP"
_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class StagingStore:
    """
    Thread-safe staged order store with a disk mirror.

    All mutation goes through put() / update() / delete(), which hold an
    internal lock. Returned orders are copies; mutate them via update().

    Example:
        >>> store = StagingStore(directory=tmp_path)
        >>> staged = store.put(draft)
        >>> store.update(staged.id, {"metadata": {"payment_status": "paid"}})
    """

    INDEX_FILENAME = "index.json"

    def __init__(
        self,
        directory: Optional[Union[str, Path]] = None,
        ttl: Optional[timedelta] = None,
        sweep_interval: Optional[float] = None,
        flush_interval: Optional[float] = None,
        lock_timeout: Optional[float] = None,
        order_number_prefix: Optional[str] = None,
        clock: Clock = utcnow,
    ):
        settings = get_settings()
        self.directory = Path(directory) if directory else settings.staging_directory
        self.ttl = ttl or timedelta(hours=settings.staging_ttl_hours)
        self.sweep_interval = sweep_interval or settings.staging_sweep_interval_seconds
        self.flush_interval = flush_interval or settings.staging_flush_interval_seconds
        self.lock_timeout = settings.file_lock_timeout if lock_timeout is None else lock_timeout
        self.order_number_prefix = order_number_prefix or settings.order_number_prefix
        self.clock = clock

        self._orders: dict[str, StagedOrder] = {}
        self._lock = threading.RLock()
        self._tasks: list[PeriodicTask] = []

        self._ensure_directory()

    # =========================================================================
    # PATHS
    # =========================================================================

    @property
    def index_path(self) -> Path:
        return self.directory / self.INDEX_FILENAME

    @property
    def _index_lock_path(self) -> Path:
        return self.directory / f"{self.INDEX_FILENAME}.lock"

    def _order_path(self, order_id: str) -> Path:
        return self.directory / f"{order_id}.json"

    def _ensure_directory(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Could not create staging directory {self.directory}: {e}")

    # =========================================================================
    # IDENTITY
    # =========================================================================

    def _generate_id(self) -> str:
        while True:
            candidate = f"{ID_PREFIX}-{int(time.time() * 1000)}-{random.randint(0, 9999):04d}"
            if candidate not in self._orders:
                return candidate

    def _generate_order_number(self, now: datetime) -> str:
        return f"{self.order_number_prefix}-{now:%Y%m%d}-{random.randint(0, 99999):05d}"

    # =========================================================================
    # DISK MIRROR
    # =========================================================================

    def _write_json_atomic(self, path: Path, payload: str) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, path)

    def _write_order(self, order: StagedOrder) -> None:
        try:
            self._write_json_atomic(self._order_path(order.id), order.model_dump_json())
        except OSError as e:
            logger.error(f"Failed to write staged order {order.id} to disk: {e}")

    def _write_index(self) -> None:
        try:
            with FileLock(str(self._index_lock_path), timeout=self.lock_timeout):
                self._write_json_atomic(self.index_path, json.dumps(sorted(self._orders)))
        except (OSError, Timeout) as e:
            logger.error(f"Failed to write staging index: {e}")

    def _remove_file(self, order_id: str) -> None:
        try:
            self._order_path(order_id).unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to delete staged order file {order_id}: {e}")

    def _read_order(self, order_id: str) -> Optional[StagedOrder]:
        if not _SAFE_ID.match(order_id):
            return None
        path = self._order_path(order_id)
        if not path.exists():
            return None
        try:
            return StagedOrder.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error(f"Failed to read staged order {order_id} from disk: {e}")
            return None

    def load_from_disk(self) -> int:
        """
        Populate memory from the index, dropping expired records.

        Returns:
            Number of orders loaded
        """
        try:
            order_ids = json.loads(self.index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return 0
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read staging index: {e}")
            return 0

        now = self.clock()
        loaded = 0
        with self._lock:
            for order_id in order_ids:
                order = self._read_order(order_id)
                if order is None:
                    continue
                if order.is_expired(now):
                    self._remove_file(order_id)
                    continue
                self._orders[order_id] = order
                loaded += 1

        logger.info(f"Loaded {loaded} staged orders from disk")
        return loaded

    def flush(self) -> None:
        """Write every in-memory order and the index to disk."""
        with self._lock:
            for order in self._orders.values():
                self._write_order(order)
            self._write_index()
        logger.debug(f"Flushed {len(self._orders)} staged orders to disk")

    # =========================================================================
    # CONTRACT
    # =========================================================================

    def put(self, draft: OrderDraft) -> StagedOrder:
        """Stage an order: assign identity and expiry, then persist."""
        now = self.clock()
        with self._lock:
            order = StagedOrder(
                **draft.model_dump(),
                id=self._generate_id(),
                order_number=self._generate_order_number(now),
                created_at=now,
                expires_at=now + self.ttl,
            )
            self._orders[order.id] = order
            self._write_order(order)
            self._write_index()

        logger.info(
            f"Staged order {order.id} ({order.order_number}) for {order.customer_name} "
            f"- ${order.total:.2f}, expires {order.expires_at.isoformat()}"
        )
        return order.model_copy(deep=True)

    def _get_locked(self, order_id: str) -> Optional[StagedOrder]:
        now = self.clock()
        order = self._orders.get(order_id)

        if order is None:
            order = self._read_order(order_id)
            if order is None:
                return None
            if order.is_expired(now):
                self._remove_file(order_id)
                return None
            self._orders[order_id] = order
            logger.info(f"Recovered staged order {order_id} from disk")
            return order

        if order.is_expired(now):
            self._purge_locked(order_id)
            return None
        return order

    def get(self, order_id: str) -> Optional[StagedOrder]:
        with self._lock:
            order = self._get_locked(order_id)
            return order.model_copy(deep=True) if order else None

    def update(self, order_id: str, changes: dict[str, Any]) -> Optional[StagedOrder]:
        """
        Merge ``changes`` into a staged order.

        Top-level fields are replaced; the ``metadata`` key is merged one
        level deep so writers touching different metadata keys do not clobber
        each other. Returns the merged order, or None when absent.
        """
        changes = dict(changes)
        changes.pop("id", None)
        metadata_changes = changes.pop("metadata", None)
        if isinstance(metadata_changes, BaseModel):
            metadata_changes = metadata_changes.model_dump(exclude_unset=True)

        with self._lock:
            current = self._get_locked(order_id)
            if current is None:
                return None

            data = current.model_dump()
            data.update(changes)
            if metadata_changes:
                data["metadata"] = {**data["metadata"], **metadata_changes}

            updated = StagedOrder.model_validate(data)
            self._orders[order_id] = updated
            self._write_order(updated)

        return updated.model_copy(deep=True)

    def mark_migrated(self, order_id: str, permanent_id: int) -> Optional[StagedOrder]:
        """Record that the order now lives in the permanent store."""
        return self.update(
            order_id,
            {
                "metadata": {
                    "moved_to_permanent": True,
                    "permanent_order_id": permanent_id,
                    "moved_to_permanent_at": self.clock(),
                }
            },
        )

    def _purge_locked(self, order_id: str) -> bool:
        existed = self._orders.pop(order_id, None) is not None
        on_disk = self._order_path(order_id).exists() if _SAFE_ID.match(order_id) else False
        if on_disk:
            self._remove_file(order_id)
        if existed or on_disk:
            self._write_index()
        return existed or on_disk

    def delete(self, order_id: str) -> bool:
        with self._lock:
            deleted = self._purge_locked(order_id)
        if deleted:
            logger.info(f"Deleted staged order {order_id}")
        return deleted

    def list_orders(self) -> list[StagedOrder]:
        now = self.clock()
        with self._lock:
            return [
                order.model_copy(deep=True)
                for order in self._orders.values()
                if not order.is_expired(now)
            ]

    def count(self) -> int:
        return len(self.list_orders())

    def find_by_payment_link(self, payment_link_id: str) -> Optional[StagedOrder]:
        for order in self.list_orders():
            link = order.metadata.payment_link
            if link is not None and link.id == payment_link_id:
                return order
        return None

    # =========================================================================
    # BACKGROUND MAINTENANCE
    # =========================================================================

    def sweep_expired(self) -> int:
        """Remove expired orders from memory and disk."""
        now = self.clock()
        with self._lock:
            expired = [oid for oid, order in self._orders.items() if order.is_expired(now)]
            for order_id in expired:
                self._orders.pop(order_id, None)
                self._remove_file(order_id)
            if expired:
                self._write_index()

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired staged orders")
        return len(expired)

    async def start(self) -> None:
        self.load_from_disk()
        self._tasks = [
            PeriodicTask("staging-expiry-sweep", self.sweep_interval, self.sweep_expired),
            PeriodicTask(
                "staging-flush", self.flush_interval, self.flush, run_immediately=False
            ),
        ]
        for task in self._tasks:
            task.start()

    async def stop(self) -> None:
        for task in reversed(self._tasks):
            await task.stop()
        self._tasks = []
        self.flush()
        logger.info("Staging store flushed and stopped")
