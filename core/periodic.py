"""
Cancellable periodic task on the running event loop.

    task = PeriodicTask("batch-flush", 30.0, writer.flush)
    task.start()
    ...
    await task.stop()

The callable may be sync or async. A failing run is logged and the next
run still happens on schedule.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``func`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Union[Any, Awaitable[Any]]],
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval = interval
        self._func = func
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Schedule the loop. Must be called with a running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.debug(f"Periodic task {self.name} started (every {self.interval}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug(f"Periodic task {self.name} stopped")

    async def run_once(self):
        """Invoke the callable now, outside the schedule. Errors are logged."""
        self.runs += 1
        try:
            result = self._func()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(f"Periodic task {self.name} failed: {e}", exc_info=True)

    async def _loop(self):
        if self._run_immediately:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()
