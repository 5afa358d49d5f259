"""
Supervised periodic tasks.

Every background loop in the pipeline (expiry sweep, disk flush, queue
worker, retry sweeper) runs through PeriodicTask. Shutdown is explicit:
stop() sets an event and awaits the running task, so the iteration in
progress always completes before the loop exits.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TickFunction = Callable[[], Union[Awaitable[object], object]]


class PeriodicTask:
    """
    Run ``func`` every ``interval`` seconds until stopped.

    ``func`` may be sync or async. Exceptions raised by a tick are logged and
    the loop continues with the next tick.

    Example:
        >>> task = PeriodicTask("expiry-sweep", 3600, store.sweep_expired)
        >>> task.start()
        >>> ...
        >>> await task.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: TickFunction,
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"Background task '{self.name}' started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info(f"Background task '{self.name}' stopped")

    async def _tick(self) -> None:
        try:
            result = self.func()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.exception(f"Background task '{self.name}' tick failed: {e}")

    async def _run(self) -> None:
        if self.run_immediately:
            await self._tick()

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self._tick()
