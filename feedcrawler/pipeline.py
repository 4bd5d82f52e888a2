"""
Output Pipeline
===============
Two user-configurable stages around every record the engine produces:

    map(raw, context)            -> record | list[record] | None
    filter(raw, mapped, context) -> bool

A ``None`` from map suppresses the record; a list fans out into one
emission per element. Unset stages behave as identity / always-true.

User code only ever sees a ``HookContext``: the record's origin, the
run's ``custom_data`` and a fixed dict of helpers. Synchronous hooks run
in a worker thread so they cannot block the event loop; every call is
bounded by ``timeout``. A hook that raises or times out drops the record
and is logged together with it.

The optional lifecycle hook is called with ``START``, ``HANDLE`` (after
every work item) and ``FINISH``; its failures are logged, never fatal.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .sinks import Sink
from .utils import load_symbol

logger = logging.getLogger(__name__)

MapFn = Callable[..., Any]
FilterFn = Callable[..., Any]
LifecycleFn = Callable[..., Any]

LIFECYCLE_LABELS = ("START", "HANDLE", "FINISH")


@dataclass
class HookContext:
    """Everything a user hook is allowed to see about a record."""
    label: str = ""
    entity_id: str = ""
    page_type: str = ""
    url: str = ""
    retry_count: int = 0
    custom_data: Dict[str, Any] = field(default_factory=dict)
    helpers: Dict[str, Any] = field(default_factory=dict)

    def debug_info(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "label": self.label,
            "entity_id": self.entity_id,
            "page_type": self.page_type,
            "retry_count": self.retry_count,
        }


def _describe(record: Any, limit: int = 200) -> str:
    text = repr(record)
    return text if len(text) <= limit else text[:limit] + "..."


class OutputPipeline:
    """map → filter → sink, with user code isolated behind a timeout."""

    def __init__(
        self,
        sink: Sink,
        map_fn: Optional[MapFn] = None,
        filter_fn: Optional[FilterFn] = None,
        timeout: float = 30.0,
        helpers: Optional[Dict[str, Any]] = None,
        custom_data: Optional[Dict[str, Any]] = None,
        lifecycle_fn: Optional[LifecycleFn] = None,
        include_debug: bool = False,
    ):
        self.sink = sink
        self.map_fn = map_fn
        self.filter_fn = filter_fn
        self.timeout = timeout
        self.helpers = dict(helpers or {})
        self.custom_data = dict(custom_data or {})
        self.lifecycle_fn = lifecycle_fn
        self.include_debug = include_debug

        self.emitted = 0
        self.dropped = 0
        self.hook_errors = 0

    @classmethod
    def from_config(cls, config, sink: Sink, helpers: Optional[Dict[str, Any]] = None) -> "OutputPipeline":
        """Build a pipeline, resolving dotted hook paths from *config*."""
        return cls(
            sink=sink,
            map_fn=load_symbol(config.map_hook) if config.map_hook else None,
            filter_fn=load_symbol(config.filter_hook) if config.filter_hook else None,
            timeout=config.hook_timeout,
            helpers=helpers,
            custom_data=config.custom_data,
            lifecycle_fn=load_symbol(config.lifecycle_hook) if config.lifecycle_hook else None,
            include_debug=config.include_debug,
        )

    def make_context(self, **kwargs) -> HookContext:
        return HookContext(
            custom_data=self.custom_data,
            helpers=self.helpers,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # User code
    # ------------------------------------------------------------------
    async def _call_user(self, fn: Callable, *args) -> Any:
        if inspect.iscoroutinefunction(fn):
            return await asyncio.wait_for(fn(*args), timeout=self.timeout)
        result = await asyncio.wait_for(
            asyncio.to_thread(fn, *args), timeout=self.timeout
        )
        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout=self.timeout)
        return result

    @staticmethod
    def _fan_out(mapped: Any) -> List[Any]:
        if mapped is None:
            return []
        if isinstance(mapped, (list, tuple)):
            return [m for m in mapped if m is not None]
        return [mapped]

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------
    async def emit(self, raw: Any, context: Optional[HookContext] = None) -> int:
        """Run *raw* through map/filter and write survivors to the sink.

        Returns the number of records written.
        """
        context = context or self.make_context()

        if self.map_fn is None:
            mapped = raw
        else:
            try:
                mapped = await self._call_user(self.map_fn, raw, context)
            except asyncio.TimeoutError:
                self.hook_errors += 1
                self.dropped += 1
                logger.error(
                    f"[PIPELINE] map hook timed out after {self.timeout}s, "
                    f"dropping record {_describe(raw)}"
                )
                return 0
            except Exception as e:
                self.hook_errors += 1
                self.dropped += 1
                logger.error(
                    f"[PIPELINE] map hook failed: {e}, dropping record {_describe(raw)}"
                )
                return 0

        outputs = self._fan_out(mapped)
        if not outputs:
            self.dropped += 1
            logger.debug(f"[PIPELINE] {context.label}: record suppressed by map hook")
            return 0

        written = 0
        for out in outputs:
            if self.filter_fn is not None:
                try:
                    keep = await self._call_user(self.filter_fn, raw, out, context)
                except asyncio.TimeoutError:
                    self.hook_errors += 1
                    self.dropped += 1
                    logger.error(
                        f"[PIPELINE] filter hook timed out after {self.timeout}s, "
                        f"dropping record {_describe(out)}"
                    )
                    continue
                except Exception as e:
                    self.hook_errors += 1
                    self.dropped += 1
                    logger.error(
                        f"[PIPELINE] filter hook failed: {e}, dropping record {_describe(out)}"
                    )
                    continue
                if not keep:
                    self.dropped += 1
                    continue

            if self.include_debug and isinstance(out, dict):
                out = {**out, "#debug": context.debug_info()}

            await self.sink.emit(out)
            written += 1

        self.emitted += written
        return written

    async def emit_failure(self, record: Dict[str, Any]) -> None:
        """Failure records bypass the user stages."""
        await self.sink.emit(record)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def lifecycle(self, label: str, context: Optional[HookContext] = None) -> None:
        if self.lifecycle_fn is None:
            return
        context = context or self.make_context(label=label)
        try:
            await self._call_user(self.lifecycle_fn, label, context)
        except asyncio.TimeoutError:
            logger.warning(f"[PIPELINE] lifecycle hook timed out on {label}")
        except Exception as e:
            logger.warning(f"[PIPELINE] lifecycle hook failed on {label}: {e}")
