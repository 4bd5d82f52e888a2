"""
Work Queue
==========
FIFO of ``WorkItem`` with dedup-by-URL.

``enqueue`` drops a URL that was already accepted once; ``reclaim`` puts a
failed item back for another attempt and bypasses that check, giving
at-least-once delivery for retried work.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from .models import WorkItem
from .utils import URLNormalizer

logger = logging.getLogger(__name__)


class WorkQueue:
    """In-memory queue shared by the scheduler's workers."""

    def __init__(self, normalizer: Optional[URLNormalizer] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._seen: Set[str] = set()
        self._normalizer = normalizer or URLNormalizer()
        self.peak = 0

    def key_for(self, item: WorkItem) -> str:
        return self._normalizer.normalize(item.url) or item.url.strip()

    def enqueue(self, item: WorkItem) -> bool:
        """Add *item* unless its URL was enqueued before. Returns True if added."""
        key = self.key_for(item)
        if key in self._seen:
            logger.debug(f"[QUEUE] Skipping duplicate {item.url}")
            return False
        self._seen.add(key)
        self._put(item)
        return True

    def reclaim(self, item: WorkItem) -> None:
        """Requeue *item* for another attempt."""
        self._put(item)

    def _put(self, item: WorkItem) -> None:
        self._queue.put_nowait(item)
        self.peak = max(self.peak, self._queue.qsize())

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[WorkItem]:
        """Next item, or None if nothing arrived within *timeout* seconds."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def drain(self) -> int:
        """Discard everything still queued. Returns how many items were dropped."""
        dropped = 0
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
                self._queue.task_done()
                dropped += 1
            except asyncio.QueueEmpty:
                break
        return dropped

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()
