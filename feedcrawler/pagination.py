"""
Pagination Engine
=================
Per-entity state machine::

    Idle → LoadingPage → Merging → {Continue → LoadingPage, Stopped}

``run`` loops "load page → dedup/range filter → emit → checkpoint → decide"
until a stop condition fires. Stop conditions are checked after every batch
in this order:

    1. seen ids reached the entity limit        → LIMIT
    2. the site reported no further page        → EXHAUSTED
    3. the whole last batch fell outside range  → BOUNDARY
    4. too many consecutive no-new-item batches → DUPLICATES

A duplicate-only batch alone is never exhaustion; pagination continues
until the duplicate threshold. Besides those, the loop ends on run abort
(checked between batches only), on idle timeout, and when rate limiting
outlasts the Backoff Controller. A page driver that makes no progress for
``max_stall_attempts`` consecutive attempts raises ``PageStalled`` so the
scheduler can retry the work item from a fresh context. A batch that has
started merging always finishes emitting and checkpointing, even when its
caller is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .adapters.base import Batch, SiteAdapter
from .backoff import BackoffController
from .checkpoint import CheckpointStore
from .dedup import DedupFilter, DedupResult, ExtractFn
from .drivers.base import AdvanceResult, AdvanceStatus, PageDriver
from .errors import PageStalled, RateLimited
from .models import Entity, StopReason
from .pipeline import HookContext, OutputPipeline
from .utils import PacingPolicy

logger = logging.getLogger(__name__)


@dataclass
class PaginationSettings:
    advance_timeout: float = 30.0
    max_stall_attempts: int = 5
    stall_retry_delay: float = 3.5
    max_duplicate_batches: int = 25
    idle_timeout: float = 300.0


@dataclass
class BatchOutcome:
    """Result of merging one batch."""
    dedup: DedupResult
    written: int = 0


@dataclass
class PaginationOutcome:
    """How one entity's pagination loop ended."""
    entity_id: str
    stop_reason: Optional[StopReason] = None
    batches: int = 0
    accepted: int = 0
    written: int = 0


class PaginationEngine:
    """Drives the page driver for one entity at a time; shared by all workers."""

    def __init__(
        self,
        checkpoint: CheckpointStore,
        dedup: DedupFilter,
        backoff: BackoffController,
        pipeline: OutputPipeline,
        settings: Optional[PaginationSettings] = None,
        pacing: Optional[PacingPolicy] = None,
        abort_event: Optional[asyncio.Event] = None,
        monitor=None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.checkpoint = checkpoint
        self.dedup = dedup
        self.backoff = backoff
        self.pipeline = pipeline
        self.settings = settings or PaginationSettings()
        self.pacing = pacing
        self.abort_event = abort_event
        self.monitor = monitor
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._duplicate_streaks: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Page loading
    # ------------------------------------------------------------------

    async def _advance_once(self, driver: PageDriver, handle: Any, mode: str) -> AdvanceResult:
        try:
            result = await asyncio.wait_for(
                driver.advance(handle, mode), timeout=self.settings.advance_timeout
            )
        except asyncio.TimeoutError:
            return AdvanceResult.timeout(
                f"advance took longer than {self.settings.advance_timeout}s"
            )
        if result.status == AdvanceStatus.RATE_LIMITED:
            raise RateLimited(result.detail or "rate limited")
        return result

    async def load_next_page(
        self,
        entity: Entity,
        driver: PageDriver,
        handle: Any,
        mode: str = "scroll",
    ) -> Optional[AdvanceResult]:
        """Advance the page until a batch arrives.

        Returns None when rate limiting outlasted the backoff budget.
        Raises ``PageStalled`` after ``max_stall_attempts`` attempts without
        a response.
        """
        attempts = self.settings.max_stall_attempts
        for attempt in range(attempts):
            backoff_result = await self.backoff.with_backoff(
                lambda: self._advance_once(driver, handle, mode),
                label=entity.label,
            )
            if backoff_result.gave_up:
                return None

            result = backoff_result.value
            if result.is_batch:
                return result

            if self.monitor:
                await self.monitor.record_stall()
            if attempt + 1 < attempts:
                delay = (attempt + 1) * self.settings.stall_retry_delay
                logger.info(
                    f"[PAGINATION] {entity.label}: no response "
                    f"({result.detail or 'timeout'}), retrying in {delay:.1f}s "
                    f"({attempt + 1}/{attempts})"
                )
                await self._sleep(delay)

        raise PageStalled(
            f"{entity.label}: no page progress after {attempts} attempts",
            attempts=attempts,
        )

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    async def process_batch(
        self,
        entity: Entity,
        batch: Batch,
        adapter: SiteAdapter,
        hook_context: Optional[HookContext] = None,
        extract_fn: Optional[ExtractFn] = None,
    ) -> BatchOutcome:
        """Dedup *batch*, emit accepted records and checkpoint the entity.

        Batches of one entity are serialised; the checkpoint is saved before
        the lock is released. *extract_fn* defaults to ``adapter.extract``.

        Cancelling the caller does not interrupt a batch: the merge runs to
        completion first, then ``CancelledError`` propagates. Ids marked seen
        are therefore always emitted and checkpointed.
        """
        task = asyncio.ensure_future(
            self._merge_batch(entity, batch, adapter, hook_context, extract_fn)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                logger.warning(
                    f"[PAGINATION] {entity.label}: batch failed after cancel: "
                    f"{task.exception()}"
                )
            raise

    async def _merge_batch(self, entity, batch, adapter, hook_context, extract_fn) -> BatchOutcome:
        async with self.checkpoint.lock_for(entity.entity_id):
            state = self.checkpoint.get_or_create(entity.entity_id)
            result = self.dedup.apply(entity, batch.items, extract_fn or adapter.extract)
            state.has_next_page = bool(batch.has_next_page)

            written = 0
            for record in result.accepted:
                written += await self.pipeline.emit(record, hook_context)

            if result.accepted_count:
                self._duplicate_streaks[entity.entity_id] = 0
            else:
                self._duplicate_streaks[entity.entity_id] = (
                    self._duplicate_streaks.get(entity.entity_id, 0) + 1
                )

            await self.checkpoint.persist()

        limit = entity.limit if entity.limit is not None else "all"
        logger.info(
            f"[PAGINATION] {entity.label}: {len(batch.items)} items loaded, "
            f"{len(state.seen_ids)}/{limit} scraped"
        )
        if self.monitor:
            await self.monitor.record_batch(
                written, dropped=max(0, result.accepted_count - written)
            )
        return BatchOutcome(dedup=result, written=written)

    def duplicate_streak(self, entity: Entity) -> int:
        return self._duplicate_streaks.get(entity.entity_id, 0)

    def check_stop(self, entity: Entity) -> Optional[StopReason]:
        state = self.checkpoint.get_or_create(entity.entity_id)
        if state.reached_limit or entity.limit_reached(len(state.seen_ids)):
            return StopReason.LIMIT
        if not state.has_next_page:
            return StopReason.EXHAUSTED
        if state.reached_boundary:
            return StopReason.BOUNDARY
        if self.duplicate_streak(entity) >= self.settings.max_duplicate_batches:
            return StopReason.DUPLICATES
        return None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _aborted(self) -> bool:
        return self.abort_event is not None and self.abort_event.is_set()

    async def run(
        self,
        entity: Entity,
        driver: PageDriver,
        handle: Any,
        adapter: SiteAdapter,
        hook_context: Optional[HookContext] = None,
        initial_batch: Optional[Batch] = None,
        mode: str = "scroll",
    ) -> PaginationOutcome:
        outcome = PaginationOutcome(entity_id=entity.entity_id)
        self._duplicate_streaks[entity.entity_id] = 0

        reason = self.check_stop(entity)
        if reason is not None:
            logger.info(f"[PAGINATION] {entity.label}: already finished ({reason.value})")
            outcome.stop_reason = reason
            return outcome

        if initial_batch is not None:
            await self._merge(entity, initial_batch, adapter, hook_context, outcome)
            reason = self.check_stop(entity)

        last_progress = self._clock()
        while reason is None:
            if self._aborted():
                reason = StopReason.ABORTED
                break
            if self._clock() - last_progress >= self.settings.idle_timeout:
                logger.warning(
                    f"[PAGINATION] {entity.label}: no new items for "
                    f"{self.settings.idle_timeout:.0f}s, stopping"
                )
                reason = StopReason.IDLE
                break

            if self.pacing is not None:
                state = self.checkpoint.get_or_create(entity.entity_id)
                await self.pacing.wait(len(state.seen_ids))

            result = await self.load_next_page(entity, driver, handle, mode)
            if result is None:
                logger.warning(
                    f"[PAGINATION] {entity.label}: giving up after repeated rate limits"
                )
                reason = StopReason.RATE_LIMITED
                break

            batch = adapter.extract_batch(result.response)
            batch_outcome = await self._merge(entity, batch, adapter, hook_context, outcome)
            if batch_outcome.dedup.accepted_count:
                last_progress = self._clock()
            reason = self.check_stop(entity)

        outcome.stop_reason = reason
        logger.info(
            f"[PAGINATION] {entity.label}: stopped ({reason.value}) after "
            f"{outcome.batches} batches, {outcome.accepted} new items"
        )
        return outcome

    async def _merge(self, entity, batch, adapter, hook_context, outcome) -> BatchOutcome:
        batch_outcome = await self.process_batch(entity, batch, adapter, hook_context)
        outcome.batches += 1
        outcome.accepted += batch_outcome.dedup.accepted_count
        outcome.written += batch_outcome.written
        return batch_outcome


async def collect_cursor_pages(
    fetch: Callable[[Optional[str]], Any],
    limit: Optional[int] = None,
    backoff: Optional[BackoffController] = None,
    label: str = "",
) -> List[Any]:
    """Follow a cursor-paged query until *limit* items or the last page.

    ``fetch(cursor)`` returns ``(items, next_cursor)`` and signals rate
    limiting by raising ``RateLimited``. When the backoff budget runs out
    the items collected so far are returned.
    """
    backoff = backoff or BackoffController()
    items: List[Any] = []
    cursor: Optional[str] = None

    while True:
        result = await backoff.with_backoff(lambda: fetch(cursor), label=label)
        if result.gave_up:
            logger.warning(f"[PAGINATION] {label or 'cursor query'}: stopped early, rate limited")
            break

        page_items, next_cursor = _split_page(result.value)
        items.extend(page_items)
        logger.debug(f"[PAGINATION] {label or 'cursor query'}: {len(items)} items so far")

        if limit is not None and len(items) >= limit:
            break
        if not page_items or not next_cursor or next_cursor == cursor:
            break
        cursor = next_cursor

    return items[:limit] if limit is not None else items


def _split_page(value: Any) -> Tuple[List[Any], Optional[str]]:
    if value is None:
        return [], None
    page_items, next_cursor = value
    return list(page_items or []), next_cursor
