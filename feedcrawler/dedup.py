"""
Dedup & Range Filter
====================
Decides which candidates of a batch are new, within the result limit and
inside the configured time window, updating the entity's ``ScrollState``.

Per item, in input order:
    1. id already seen                → skip
    2. limit already reached          → stop processing the batch
    3. outside the time window        → mark seen, do not emit
    4. otherwise                      → mark seen, accept

The limit counts seen ids, so out-of-window items consume it too. A
timestamp that cannot be parsed is treated as inside the window.

When every item of a non-empty batch lies outside the window the entity is
flagged ``reached_boundary``. This relies on the site adapter delivering
candidates newest-first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .checkpoint import CheckpointStore
from .errors import MissingIdError
from .models import Entity, TimeRange

logger = logging.getLogger(__name__)

ExtractFn = Callable[[Any, int], Dict[str, Any]]


@dataclass
class DedupResult:
    """Outcome of one ``DedupFilter.apply`` call."""
    accepted: List[Dict[str, Any]] = field(default_factory=list)
    duplicates: int = 0
    out_of_range: int = 0
    reached_limit: bool = False
    reached_boundary: bool = False

    @property
    def accepted_count(self) -> int:
        return len(self.accepted)


class DedupFilter:
    """Stateless over its inputs; all state lives in the checkpoint store."""

    def __init__(self, checkpoint: CheckpointStore, time_range: Optional[TimeRange] = None):
        self.checkpoint = checkpoint
        self.time_range = time_range if time_range and time_range.is_set else None

    def apply(
        self,
        entity: Entity,
        raw_items: Sequence[Any],
        extract_fn: ExtractFn,
    ) -> DedupResult:
        state = self.checkpoint.get_or_create(entity.entity_id)
        result = DedupResult()

        # Extract everything first so a missing id leaves the state untouched
        position = len(state.seen_ids)
        parsed: List[Dict[str, Any]] = []
        for index, raw in enumerate(raw_items or []):
            item = extract_fn(raw, position + index + 1)
            item_id = item.get("id") if isinstance(item, dict) else None
            if item_id is None or item_id == "":
                raise MissingIdError(
                    f"{entity.label}: item at position {index} has no id"
                )
            item["id"] = str(item_id)
            parsed.append(item)

        if self.time_range and parsed:
            result.reached_boundary = all(self._outside(entity, item) for item in parsed)

        for item in parsed:
            item_id = item["id"]
            if item_id in state.seen_ids:
                result.duplicates += 1
                continue

            if entity.limit_reached(len(state.seen_ids)):
                result.reached_limit = True
                break

            state.mark_seen(item_id)

            if self._outside(entity, item):
                result.out_of_range += 1
                continue

            state.emitted_count += 1
            result.accepted.append(item)

        if entity.limit_reached(len(state.seen_ids)):
            result.reached_limit = True
            if not state.reached_limit:
                logger.info(
                    f"[DEDUP] {entity.label}: reached provided limit of "
                    f"{entity.limit} results"
                )
            state.reached_limit = True

        if result.reached_boundary:
            logger.info(f"[DEDUP] {entity.label}: time boundary has been reached")
            state.reached_boundary = True

        state.all_duplicates_last_batch = result.accepted_count == 0

        logger.debug(
            f"[DEDUP] {entity.label}: {len(parsed)} candidates, "
            f"{result.accepted_count} accepted, {result.duplicates} duplicates, "
            f"{result.out_of_range} out of range"
        )
        return result

    def _outside(self, entity: Entity, item: Dict[str, Any]) -> bool:
        if self.time_range is None:
            return False
        try:
            return self.time_range.is_outside(item.get("timestamp"))
        except (TypeError, ValueError, OverflowError) as exc:
            logger.warning(
                f"[DEDUP] {entity.label}: unparseable timestamp on item "
                f"{item.get('id')!r} ({exc}), keeping it"
            )
            return False
