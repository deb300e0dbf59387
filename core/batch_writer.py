"""
Batched write-back to the durable store.

Ingestion queues writes and returns immediately; the writer flushes them
in grouped transactions, on a timer or as soon as a full batch is waiting.

Flush policy:
- One flush at a time. A flush requested while another runs is a no-op.
- Up to ``max_batch_size`` oldest writes per flush, grouped by
  (table, operation) in arrival order, applied in one transaction on a
  worker thread.
- Leftovers trigger a continuation flush shortly after.
- A failed batch goes back to the head of the queue, unless the queue
  would then exceed 3x the batch size, in which case it is dropped.
- Once the queue holds 2x the batch size, every further write forces a
  flush first.

Usage:
    writer = BatchWriter(store, max_batch_size=100, batch_interval=30)
    writer.start()
    writer.queue_write("insert", "ping_history", reading.to_row())
    ...
    await writer.shutdown()
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from core.models import WriteCallback, WriteRequest
from core.periodic import PeriodicTask
from core.storage import TelemetryStore
from core.timestamps import isonow

logger = logging.getLogger(__name__)


class BatchWriter:
    """Queue of pending durable writes with a single-flight flush."""

    def __init__(
        self,
        store: TelemetryStore,
        max_batch_size: int = 100,
        batch_interval: float = 30.0,
        continuation_delay: float = 0.1,
    ):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")

        self.store = store
        self.max_batch_size = max_batch_size
        self.batch_interval = batch_interval
        self.continuation_delay = continuation_delay

        self._queue: Deque[WriteRequest] = deque()
        self._flushing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._flush_task: Optional[asyncio.Task] = None
        self._continuation: Optional[asyncio.TimerHandle] = None
        self._closing = False
        self._timer = PeriodicTask("batch-writer-flush", batch_interval, self.flush)

        self._stats = {
            "total_writes": 0,
            "total_batches": 0,
            "avg_batch_size": 0.0,
            "last_flush_time": None,
            "last_flush_duration_ms": None,
            "total_queue_overflows": 0,
            "total_failed_batches": 0,
            "total_dropped": 0,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        self._closing = False
        self._timer.start()
        logger.info(
            f"BatchWriter started with {self.batch_interval}s interval, "
            f"max batch size: {self.max_batch_size}"
        )

    async def stop(self):
        await self._timer.stop()

    async def shutdown(self):
        """Stop scheduling, wait for any in-flight flush, then drain the queue."""
        logger.info(f"BatchWriter shutting down, {len(self._queue)} writes pending")
        self._closing = True
        await self.stop()
        self._cancel_continuation()
        await self._idle.wait()

        while self._queue:
            before = len(self._queue)
            await self.flush()
            if len(self._queue) >= before:
                logger.error(f"BatchWriter drain made no progress, {before} writes left unwritten")
                break

        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        logger.info("BatchWriter shutdown complete")

    # =========================================================================
    # Enqueue
    # =========================================================================

    def queue_write(
        self,
        operation: str,
        table: str,
        payload: dict,
        callback: Optional[WriteCallback] = None,
    ):
        """
        Queue a write and return immediately.

        Raises:
            ValueError: if the store has no such table/operation
        """
        if not self.store.supports(table, operation):
            raise ValueError(f"Unsupported operation: {operation} on table: {table}")

        if len(self._queue) >= self.max_batch_size * 2:
            self._stats["total_queue_overflows"] += 1
            logger.warning(f"Queue overflow detected ({len(self._queue)} items), forcing flush")
            self._schedule_flush()

        self._queue.append(WriteRequest(operation, table, payload, callback))

        if len(self._queue) >= self.max_batch_size:
            self._schedule_flush()

    def _schedule_flush(self):
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Queued from sync code; the timer or shutdown drain picks it up
            return
        self._flush_task = asyncio.create_task(self.flush(), name="batch-writer-flush-now")

    def _cancel_continuation(self):
        if self._continuation is not None:
            self._continuation.cancel()
            self._continuation = None

    # =========================================================================
    # Flush
    # =========================================================================

    async def flush(self) -> int:
        """Write one batch. Returns the number of writes applied (0 on no-op or failure)."""
        if self._flushing or not self._queue:
            return 0

        self._flushing = True
        self._idle.clear()
        batch = [self._queue.popleft() for _ in range(min(self.max_batch_size, len(self._queue)))]
        started = time.monotonic()

        try:
            try:
                await asyncio.to_thread(self.store.write_batch, self._group(batch))
            except Exception as e:
                self._on_failure(batch, e)
                await self._run_callbacks(batch, e, False)
                return 0

            duration_ms = round((time.monotonic() - started) * 1000, 2)
            self._record_success(len(batch), duration_ms)
            logger.debug(f"Flushed {len(batch)} writes in {duration_ms}ms")
            await self._run_callbacks(batch, None, True)
        finally:
            self._flushing = False
            self._idle.set()

        if self._queue and not self._closing:
            self._cancel_continuation()
            loop = asyncio.get_running_loop()
            self._continuation = loop.call_later(self.continuation_delay, self._schedule_flush)

        return len(batch)

    @staticmethod
    def _group(batch: List[WriteRequest]) -> List[Tuple[str, str, List[dict]]]:
        groups: Dict[Tuple[str, str], List[dict]] = {}
        for request in batch:
            groups.setdefault((request.table, request.operation), []).append(request.payload)
        return [(table, operation, payloads) for (table, operation), payloads in groups.items()]

    def _record_success(self, size: int, duration_ms: float):
        stats = self._stats
        stats["total_writes"] += size
        stats["total_batches"] += 1
        n = stats["total_batches"]
        stats["avg_batch_size"] = round((stats["avg_batch_size"] * (n - 1) + size) / n, 2)
        stats["last_flush_time"] = isonow()
        stats["last_flush_duration_ms"] = duration_ms

    def _on_failure(self, batch: List[WriteRequest], error: Exception):
        self._stats["total_failed_batches"] += 1
        logger.error(f"Error flushing batch of {len(batch)} writes: {error}")

        if len(self._queue) + len(batch) > self.max_batch_size * 3:
            self._stats["total_dropped"] += len(batch)
            logger.error(f"Too many failed writes, dropping batch of {len(batch)}")
            return

        self._queue.extendleft(reversed(batch))

    @staticmethod
    async def _run_callbacks(batch: List[WriteRequest], error: Optional[Exception], success: bool):
        for request in batch:
            if request.callback is None:
                continue
            try:
                result = request.callback(error, success)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Write callback error ({request.table}): {e}", exc_info=True)

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "queue_size": len(self._queue),
            "is_flushing": self._flushing,
            "max_batch_size": self.max_batch_size,
            "batch_interval": self.batch_interval,
        }

    def clear_queue(self) -> int:
        """Emergency drop of every pending write. Returns how many were dropped."""
        cleared = len(self._queue)
        self._queue.clear()
        logger.warning(f"Queue cleared, {cleared} items dropped")
        return cleared

    @property
    def queue_size(self) -> int:
        return len(self._queue)
