"""
Execution Scheduler
===================
Bounded worker pool over the work queue.

- Pool size is ``concurrency``, capped by the identity count when
  identities are required
- Each worker owns one ``ExecutionContext`` and runs one work item at a
  time to completion, including its full pagination loop
- Failed items are reclaimed up to ``max_request_retries`` times, then
  written to the sink as failure records; the run continues
- Session failures are reported to the credential pool and an exhausted
  identity is unbound from the context
- No usable identity left while identities are required aborts the run:
  in-flight loops stop after their current batch, checkpoints and
  credential state are saved, then ``NoCredentialsError`` is re-raised
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional, Union

from .adapters.base import Batch, PageInfo
from .adapters.registry import AdapterRegistry
from .auth.credential_pool import Credential, CredentialPool
from .auth.session_store import CredentialStateStore
from .backoff import BackoffController
from .checkpoint import (
    CheckpointStore,
    JsonFileCheckpointBackend,
    MemoryCheckpointBackend,
)
from .dedup import DedupFilter
from .drivers.base import PageDriver
from .errors import (
    CrawlError,
    NoCredentialsError,
    NonRetryableError,
    RunAborted,
    SessionInvalid,
    is_retryable,
)
from .models import (
    Entity,
    ExecutionContext,
    FailureRecord,
    PageType,
    RunSummary,
    WorkItem,
    parse_time_unit,
)
from .monitor import RunMonitor
from .pagination import PaginationEngine
from .pipeline import OutputPipeline
from .queue import WorkQueue
from .run_config import EngineRunConfig
from .sinks import Sink
from .utils import PacingPolicy

logger = logging.getLogger(__name__)

hook_logger = logging.getLogger("feedcrawler.hooks")


class ExecutionScheduler:
    """Runs seeds through the page driver, site adapters and pagination engine."""

    poll_interval = 1.0

    def __init__(
        self,
        config: EngineRunConfig,
        driver: PageDriver,
        registry: AdapterRegistry,
        pool: Optional[CredentialPool] = None,
        checkpoint: Optional[CheckpointStore] = None,
        pipeline: Optional[OutputPipeline] = None,
        sink: Optional[Sink] = None,
        queue: Optional[WorkQueue] = None,
        monitor: Optional[RunMonitor] = None,
        credential_store: Optional[CredentialStateStore] = None,
        pacing: Optional[PacingPolicy] = None,
        sleep=None,
    ):
        if pipeline is None and sink is None:
            raise ValueError("ExecutionScheduler needs a sink or a pipeline")

        self.config = config
        self.driver = driver
        self.registry = registry
        if pool is None:
            pool = CredentialPool(config.max_error_count)
            pool.load(config.credentials, required=config.require_credentials)
        self.pool = pool
        self.checkpoint = checkpoint or CheckpointStore(run_id=config.run_id)
        self.sink = sink if sink is not None else pipeline.sink
        self.queue = queue or WorkQueue()
        self.monitor = monitor or RunMonitor()
        self.credential_store = credential_store

        helpers = {
            "enqueue": self.enqueue,
            "parse_time_unit": parse_time_unit,
            "log": hook_logger,
        }
        if pipeline is None:
            pipeline = OutputPipeline.from_config(config, self.sink, helpers=helpers)
        else:
            for name, helper in helpers.items():
                pipeline.helpers.setdefault(name, helper)
        self.pipeline = pipeline

        self._abort_event = asyncio.Event()
        self._abort_reason = ""
        self._fatal: Optional[BaseException] = None
        self._stopping = False
        self._summary = RunSummary()

        self.backoff = BackoffController(
            base_delay=config.rate_limit_base_delay,
            max_retries=config.rate_limit_retries,
            sleep=sleep,
            on_wait=self.monitor.record_rate_limit_wait,
        )
        if pacing is None:
            pacing = PacingPolicy(
                enabled=config.pacing_enabled,
                scroll_wait=config.scroll_wait,
                sleep=sleep,
            )
        self.pagination = PaginationEngine(
            checkpoint=self.checkpoint,
            dedup=DedupFilter(self.checkpoint, config.time_range()),
            backoff=self.backoff,
            pipeline=self.pipeline,
            settings=config.pagination_settings(),
            pacing=pacing,
            abort_event=self._abort_event,
            monitor=self.monitor,
            sleep=sleep,
        )

    @classmethod
    def from_config(
        cls,
        config: EngineRunConfig,
        driver: PageDriver,
        registry: AdapterRegistry,
        sink: Sink,
        **kwargs,
    ) -> "ExecutionScheduler":
        """Wire checkpoints, credential state and hooks from *config*."""
        if config.debug_log:
            logging.getLogger("feedcrawler").setLevel(logging.DEBUG)

        if config.checkpoint_dir:
            backend = JsonFileCheckpointBackend(config.checkpoint_dir)
        else:
            backend = MemoryCheckpointBackend()

        credential_store = None
        if config.credential_state_path:
            credential_store = CredentialStateStore(config.credential_state_path)

        return cls(
            config,
            driver,
            registry,
            checkpoint=CheckpointStore(backend, run_id=config.run_id),
            sink=sink,
            credential_store=credential_store,
            **kwargs,
        )

    def run_sync(self, seeds: Iterable[Union[str, WorkItem]]) -> RunSummary:
        """Sync wrapper: run the engine from synchronous code."""
        return asyncio.run(self.run(seeds))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def pool_size(self) -> int:
        return self.config.effective_concurrency(self.pool.count())

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    def abort(self, reason: str = "abort requested") -> None:
        """Stop the run; in-flight pagination loops end after their current batch."""
        if self._abort_event.is_set():
            return
        self._abort_reason = reason
        logger.warning(f"[SCHEDULER] Aborting run: {reason}")
        self._abort_event.set()

    def enqueue(
        self,
        url: str,
        page_type: Optional[Union[PageType, str]] = None,
        label: str = "",
        user_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Queue another target (also exposed to user hooks)."""
        hint = PageType(page_type) if page_type else None
        item = WorkItem(url=url, page_type_hint=hint, label=label, user_data=dict(user_data or {}))
        return self._enqueue(item)

    def _enqueue(self, item: WorkItem) -> bool:
        added = self.queue.enqueue(item)
        if added:
            self.monitor.record_enqueue()
        return added

    async def run(self, seeds: Iterable[Union[str, WorkItem]]) -> RunSummary:
        """Process *seeds* (and everything they enqueue) until the queue drains."""
        if self.credential_store is not None:
            self.credential_store.restore(self.pool)

        size = self.pool_size()
        if size < 1:
            raise NoCredentialsError("Login identities are required but none are configured")

        seeds = list(seeds)
        self.config.log_summary(seeds=len(seeds))

        self.checkpoint.load()
        self._summary = RunSummary()
        self._stopping = False

        for seed in seeds:
            item = seed if isinstance(seed, WorkItem) else WorkItem(url=seed)
            self._enqueue(item)

        logger.info(
            f"[SCHEDULER] Starting {size} workers for {self.queue.qsize()} seeds"
            f"{f' with {self.pool.count()} identities' if self.pool.count() else ''}"
        )

        self.monitor.max_workers = size
        await self.monitor.start()
        await self.driver.start()
        await self.pipeline.lifecycle("START", self.pipeline.make_context(label="START"))

        workers = [
            asyncio.create_task(self._worker(i))
            for i in range(size)
        ]
        stop_reason = "completed"
        try:
            drained = asyncio.create_task(self.queue.join())
            aborted = asyncio.create_task(self._abort_event.wait())
            await asyncio.wait({drained, aborted}, return_when=asyncio.FIRST_COMPLETED)
            for task in (drained, aborted):
                if not task.done():
                    task.cancel()

            self._stopping = True
            if self.aborted:
                stop_reason = f"aborted: {self._abort_reason}"
                # Let in-flight loops reach their next safe point
                await asyncio.gather(*workers, return_exceptions=True)
            else:
                for w in workers:
                    w.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
        finally:
            self._stopping = True
            for w in workers:
                if not w.done():
                    w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

            dropped = self.queue.drain()
            if dropped:
                logger.warning(f"[SCHEDULER] {dropped} queued items left unprocessed")

            self.checkpoint.save()
            if self.credential_store is not None:
                self.credential_store.save(self.pool)

            await self.pipeline.lifecycle("FINISH", self.pipeline.make_context(label="FINISH"))
            await self.monitor.stop(stop_reason)
            await self.driver.stop()

        summary = self._summary
        summary.records_emitted = self.pipeline.emitted
        summary.aborted = self.aborted
        summary.abort_reason = self._abort_reason

        metrics = await self.monitor.snapshot()
        logger.info("\n" + self.monitor.format_summary(metrics))

        if self._fatal is not None:
            raise self._fatal
        return summary

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _worker(self, worker_id: int) -> None:
        """Worker coroutine: pulls work items and runs them to completion."""
        context = ExecutionContext(context_id=worker_id)
        while not self._stopping and not self.aborted:
            item = await self.queue.dequeue(timeout=self.poll_interval)
            if item is None:
                continue
            await self.monitor.update_queue_size(self.queue.qsize())
            try:
                await self._handle_item(context, item)
            except Exception as e:
                logger.error(f"[WORKER-{worker_id}] Unexpected error: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    def _bind_credential(self, context: ExecutionContext) -> Optional[Credential]:
        if self.pool.count() == 0:
            return None
        if context.credential_index is not None and self.pool.is_usable(context):
            return self.pool.get(context)
        context.unbind()
        return self.pool.acquire(context)

    async def _handle_item(self, context: ExecutionContext, item: WorkItem) -> None:
        credential = self._bind_credential(context)
        if credential is None and self.config.require_credentials:
            error = NoCredentialsError("All login identities exhausted their error budget")
            if self._fatal is None:
                self._fatal = error
            self.abort(str(error))
            await self._record_failure(item, RunAborted(str(error)))
            return

        await self.monitor.worker_started()
        try:
            await asyncio.wait_for(
                self._process(context, item, credential),
                timeout=self.config.item_timeout,
            )
        except asyncio.TimeoutError:
            await self._handle_failure(
                item, CrawlError(f"Work item timed out after {self.config.item_timeout:g}s")
            )
        except SessionInvalid as e:
            if credential is not None:
                self.pool.report_failure(context)
                if not self.pool.is_usable(context):
                    logger.warning(
                        f"[SCHEDULER] Context {context.context_id} dropped "
                        f"identity {credential.index}"
                    )
                    context.unbind()
            await self._handle_failure(item, e)
        except Exception as e:
            await self._handle_failure(item, e)
        else:
            if credential is not None:
                self.pool.report_success(context)
            self._summary.items_processed += 1
            await self.monitor.record_item("ok")
        finally:
            context.items_processed += 1
            await self.monitor.worker_finished()
            await self.pipeline.lifecycle(
                "HANDLE",
                self.pipeline.make_context(
                    label="HANDLE", url=item.url, retry_count=item.retry_count
                ),
            )

    async def _handle_failure(self, item: WorkItem, error: BaseException) -> None:
        if (is_retryable(error)
                and item.retry_count < self.config.max_request_retries
                and not self.aborted):
            item.retry_count += 1
            logger.warning(
                f"[SCHEDULER] {item.url} failed ({type(error).__name__}: {error}), "
                f"retry {item.retry_count}/{self.config.max_request_retries}"
            )
            await self.monitor.record_retry()
            self.queue.reclaim(item)
            return
        await self._record_failure(item, error)

    async def _record_failure(self, item: WorkItem, error: BaseException) -> None:
        record = FailureRecord.from_error(item, error)
        logger.error(
            f"[SCHEDULER] {item.url} failed permanently after "
            f"{item.retry_count} retries: {record.error}"
        )
        self._summary.failures.append(record)
        self._summary.items_failed += 1
        await self.monitor.record_item("failed")
        await self.pipeline.emit_failure(record.to_dict())

    # ------------------------------------------------------------------
    # One work item
    # ------------------------------------------------------------------

    async def _process(
        self,
        context: ExecutionContext,
        item: WorkItem,
        credential: Optional[Credential],
    ) -> None:
        handle = await self.driver.open_context(item, credential)
        try:
            state = await self.driver.snapshot(handle)
            adapter = self.registry.resolve(item)
            info = adapter.classify(state)
            self._check_page_type(item, info)

            specific = self.registry.for_page_type(info.page_type)
            if specific is not None:
                adapter = specific

            hook_context = self.pipeline.make_context(
                label=item.label or info.page_type.value,
                entity_id=info.entity_id,
                page_type=info.page_type.value,
                url=item.url,
                retry_count=item.retry_count,
            )

            if info.expands_details:
                self._expand(item, info)
                return

            entity = Entity(
                entity_id=info.entity_id or item.url,
                page_type=info.page_type,
                limit=self._limit_for(item, info),
            )

            if not info.paginated:
                record = adapter.extract_record(state)
                await self.pagination.process_batch(
                    entity,
                    Batch(items=[record], has_next_page=False),
                    adapter,
                    hook_context,
                    extract_fn=lambda raw, position: dict(raw),
                )
                self._summary.stop_reasons[entity.entity_id] = "single"
                return

            outcome = await self.pagination.run(
                entity,
                self.driver,
                handle,
                adapter,
                hook_context=hook_context,
                initial_batch=adapter.initial_batch(state),
                mode=info.advance_mode,
            )
            self._summary.stop_reasons[entity.entity_id] = outcome.stop_reason.value
        finally:
            await self.driver.close(handle)

    def _check_page_type(self, item: WorkItem, info: PageInfo) -> None:
        if info.page_type == PageType.CHALLENGE:
            raise SessionInvalid(f"Challenge page served for {item.url}")
        if info.page_type == PageType.AGE_GATED:
            raise NonRetryableError(f"Page is age restricted: {item.url}")
        if info.page_type == PageType.NOT_FOUND:
            raise NonRetryableError(f"Page does not exist: {item.url}")

    def _expand(self, item: WorkItem, info: PageInfo) -> None:
        added = 0
        for url in info.detail_urls:
            child = WorkItem(
                url=url,
                page_type_hint=info.detail_page_type,
                label="detail",
                user_data={"parent": item.url},
                limit=item.limit,
            )
            if self._enqueue(child):
                added += 1
        logger.info(
            f"[SCHEDULER] {item.url}: enqueued {added} detail pages "
            f"({len(info.detail_urls) - added} already seen)"
        )

    def _limit_for(self, item: WorkItem, info: PageInfo) -> Optional[int]:
        for limit in (info.limit, item.limit, self.config.results_limit):
            if limit is not None:
                return limit
        return None
