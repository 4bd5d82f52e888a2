"""
Run Monitor
===========
Counters for one engine run plus a periodic progress reporter.

Tracks:
- Work items done / failed / retried
- Batches processed, records emitted and dropped
- Rate-limit waits and page stalls
- Worker utilization
- Elapsed time and stop reason

All methods use an asyncio.Lock for safe concurrent access.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class RunMetrics:
    """Snapshot of all run metrics at a point in time."""
    items_done: int = 0
    items_failed: int = 0
    items_retried: int = 0
    total_enqueued: int = 0

    batches: int = 0
    records_emitted: int = 0
    records_dropped: int = 0

    rate_limit_waits: int = 0
    rate_limit_wait_sec: float = 0.0
    stalls: int = 0

    queue_size: int = 0
    active_workers: int = 0
    max_workers: int = 0

    items_per_min: float = 0.0
    elapsed_sec: float = 0.0
    stop_reason: str = ""


class RunMonitor:
    """
    Async-safe metrics for the scheduler.

    Usage::

        monitor = RunMonitor(max_workers=4)
        await monitor.start()
        await monitor.record_item("ok")
        metrics = await monitor.snapshot()
        await monitor.stop("completed")
    """

    def __init__(self, max_workers: int = 1, report_interval: float = 30.0):
        self._lock = asyncio.Lock()
        self._start_time: float = 0.0
        self._max_workers = max_workers
        self.report_interval = report_interval

        self._items_done = 0
        self._items_failed = 0
        self._items_retried = 0
        self._total_enqueued = 0
        self._batches = 0
        self._records_emitted = 0
        self._records_dropped = 0
        self._rate_limit_waits = 0
        self._rate_limit_wait_sec = 0.0
        self._stalls = 0
        self._queue_size = 0
        self._active_workers = 0

        self._progress_callback: Optional[Callable] = None
        self._reporter_task: Optional[asyncio.Task] = None
        self._running = False
        self._stop_reason = ""

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @max_workers.setter
    def max_workers(self, value: int) -> None:
        self._max_workers = value

    def set_progress_callback(self, callback: Callable) -> None:
        """Set callback: callback(metrics: RunMetrics)"""
        self._progress_callback = callback

    async def start(self) -> None:
        """Start the clock and the periodic reporter."""
        self._start_time = time.monotonic()
        self._running = True
        if self.report_interval > 0:
            self._reporter_task = asyncio.create_task(self._reporter_loop())

    async def stop(self, reason: str = "completed") -> None:
        self._running = False
        self._stop_reason = reason
        if self._reporter_task:
            self._reporter_task.cancel()
            try:
                await self._reporter_task
            except asyncio.CancelledError:
                pass
            self._reporter_task = None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    async def record_item(self, status: str) -> None:
        """Record a finished work item: ``ok`` or ``failed``."""
        async with self._lock:
            if status == "ok":
                self._items_done += 1
            else:
                self._items_failed += 1

    async def record_retry(self) -> None:
        async with self._lock:
            self._items_retried += 1

    def record_enqueue(self, count: int = 1) -> None:
        # Synchronous: the queue is fed from plain functions and user hooks
        self._total_enqueued += count

    async def record_batch(self, emitted: int, dropped: int = 0) -> None:
        async with self._lock:
            self._batches += 1
            self._records_emitted += emitted
            self._records_dropped += dropped

    def record_rate_limit_wait(self, delay: float) -> None:
        # Synchronous: called from the backoff controller's on_wait hook
        self._rate_limit_waits += 1
        self._rate_limit_wait_sec += delay

    async def record_stall(self) -> None:
        async with self._lock:
            self._stalls += 1

    async def update_queue_size(self, size: int) -> None:
        async with self._lock:
            self._queue_size = size

    async def worker_started(self) -> None:
        async with self._lock:
            self._active_workers += 1

    async def worker_finished(self) -> None:
        async with self._lock:
            self._active_workers = max(0, self._active_workers - 1)

    async def snapshot(self) -> RunMetrics:
        """Take a consistent snapshot of all metrics."""
        now = time.monotonic()
        async with self._lock:
            elapsed = now - self._start_time if self._start_time else 0.0
            finished = self._items_done + self._items_failed
            per_min = finished / (elapsed / 60.0) if elapsed > 0 else 0.0
            return RunMetrics(
                items_done=self._items_done,
                items_failed=self._items_failed,
                items_retried=self._items_retried,
                total_enqueued=self._total_enqueued,
                batches=self._batches,
                records_emitted=self._records_emitted,
                records_dropped=self._records_dropped,
                rate_limit_waits=self._rate_limit_waits,
                rate_limit_wait_sec=round(self._rate_limit_wait_sec, 1),
                stalls=self._stalls,
                queue_size=self._queue_size,
                active_workers=self._active_workers,
                max_workers=self._max_workers,
                items_per_min=round(per_min, 2),
                elapsed_sec=round(elapsed, 2),
                stop_reason=self._stop_reason,
            )

    async def _reporter_loop(self) -> None:
        """Periodically log progress."""
        while self._running:
            await asyncio.sleep(self.report_interval)
            if not self._running:
                break
            try:
                m = await self.snapshot()
                logger.info(
                    f"[MONITOR] "
                    f"done={m.items_done} "
                    f"fail={m.items_failed} "
                    f"retry={m.items_retried} "
                    f"queue={m.queue_size} "
                    f"workers={m.active_workers}/{m.max_workers} "
                    f"emitted={m.records_emitted} "
                    f"batches={m.batches} "
                    f"rate_limits={m.rate_limit_waits} "
                    f"elapsed={m.elapsed_sec:.0f}s"
                )
                if self._progress_callback:
                    self._progress_callback(m)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.debug(f"[MONITOR] Reporter error: {e}")

    def format_summary(self, metrics: RunMetrics) -> str:
        """Format a human-readable summary string."""
        lines = [
            "=" * 60,
            "  RUN SUMMARY",
            "=" * 60,
            f"  Items done:          {metrics.items_done}",
            f"  Items failed:        {metrics.items_failed}",
            f"  Items retried:       {metrics.items_retried}",
            f"  Total enqueued:      {metrics.total_enqueued}",
            "-" * 60,
            f"  Batches:             {metrics.batches}",
            f"  Records emitted:     {metrics.records_emitted:,}",
            f"  Records dropped:     {metrics.records_dropped:,}",
            "-" * 60,
            f"  Rate-limit waits:    {metrics.rate_limit_waits} "
            f"({metrics.rate_limit_wait_sec:.0f} s)",
            f"  Page stalls:         {metrics.stalls}",
            f"  Workers:             {metrics.max_workers}",
            f"  Throughput:          {metrics.items_per_min:.1f} items/min",
            "-" * 60,
            f"  Elapsed time:        {metrics.elapsed_sec:.1f} s",
            f"  Stop reason:         {metrics.stop_reason}",
            "=" * 60,
        ]
        return "\n".join(lines)
