"""
Data Model
==========
Plain dataclasses shared by every engine component.

    - ``PageType``         closed set of page variants
    - ``Entity``           one logical paginated collection
    - ``ScrollState``      per-entity progress record (checkpointed)
    - ``TimeRange``        normalised [min, max] window
    - ``WorkItem``         unit of queued work
    - ``ExecutionContext`` a worker's session (credential binding)
    - ``FailureRecord``    structured terminal failure written to the sink
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .errors import ConfigError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Page types
# ---------------------------------------------------------------------------

class PageType(str, Enum):
    """Page variants the engine can be asked to process."""
    PROFILE = "user"
    HASHTAG = "hashtag"
    PLACE = "location"
    POST = "post"
    STORY = "story"
    # Terminal classifications, never paginated
    CHALLENGE = "challenge"
    AGE_GATED = "age"
    NOT_FOUND = "dont"

    @property
    def is_terminal(self) -> bool:
        return self in (PageType.CHALLENGE, PageType.AGE_GATED, PageType.NOT_FOUND)

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()


class StopReason(str, Enum):
    """Why an entity's pagination loop ended."""
    LIMIT = "limit"
    EXHAUSTED = "exhausted"
    BOUNDARY = "boundary"
    STALLED = "stalled"
    RATE_LIMITED = "rate_limited"
    DUPLICATES = "duplicates"
    IDLE = "idle"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Entity + scroll state
# ---------------------------------------------------------------------------

@dataclass
class Entity:
    """One logical collection to paginate (a profile's posts, a post's comments)."""
    entity_id: str
    page_type: PageType
    limit: Optional[int] = None     # None = unbounded
    label: str = ""

    def __post_init__(self):
        if not self.entity_id:
            raise ConfigError("Entity requires a non-empty entity_id")
        if not self.label:
            self.label = f"{self.page_type.label} {self.entity_id}"

    def limit_reached(self, count: int) -> bool:
        return self.limit is not None and count >= self.limit


@dataclass
class ScrollState:
    """Progress of one entity.

    ``seen_ids`` only ever grows. Once ``reached_boundary`` is set or
    ``has_next_page`` is cleared, no further page loads are scheduled.
    """
    seen_ids: Set[str] = field(default_factory=set)
    has_next_page: bool = True
    reached_boundary: bool = False
    all_duplicates_last_batch: bool = False
    reached_limit: bool = False
    emitted_count: int = 0

    @property
    def is_finished(self) -> bool:
        return self.reached_limit or self.reached_boundary or not self.has_next_page

    def mark_seen(self, item_id: str) -> None:
        self.seen_ids.add(item_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seen_ids": sorted(self.seen_ids),
            "has_next_page": self.has_next_page,
            "reached_boundary": self.reached_boundary,
            "all_duplicates_last_batch": self.all_duplicates_last_batch,
            "reached_limit": self.reached_limit,
            "emitted_count": self.emitted_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScrollState":
        seen = data.get("seen_ids") or []
        return cls(
            seen_ids=set(str(i) for i in seen),
            has_next_page=bool(data.get("has_next_page", True)),
            reached_boundary=bool(data.get("reached_boundary", False)),
            all_duplicates_last_batch=bool(data.get("all_duplicates_last_batch", False)),
            reached_limit=bool(data.get("reached_limit", False)),
            emitted_count=int(data.get("emitted_count", len(seen))),
        )


# ---------------------------------------------------------------------------
# Time range
# ---------------------------------------------------------------------------

_RELATIVE_RE = re.compile(
    r"^(\d+)\s?(minute|second|day|hour|month|year|week)s?$", re.IGNORECASE
)

# No calendar arithmetic: months and years are fixed-length approximations
_UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
    "year": 365 * 86400,
}


def to_datetime(value: Any) -> Optional[datetime]:
    """Coerce a timestamp (datetime, epoch seconds/ms, ISO string) to aware UTC.

    Returns None for empty values. Raises ``ValueError`` when the value has
    a type or format that cannot be interpreted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e12 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if re.fullmatch(r"\d+(\.\d+)?", text):
            return to_datetime(float(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Not a timestamp: {value!r}")


def parse_time_unit(value: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse a date bound.

    Accepts ``today``/``yesterday`` (start of day), relative amounts such as
    ``"3 days"`` or ``"12 hours"`` (subtracted from *now*), epoch numbers,
    ISO-8601 strings and datetimes.
    """
    if value is None or value == "":
        return None

    now = to_datetime(now) if now is not None else datetime.now(timezone.utc)

    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("today", "yesterday"):
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            return start if text == "today" else start - timedelta(days=1)

        m = _RELATIVE_RE.match(text)
        if m and int(m.group(1)):
            amount, unit = int(m.group(1)), m.group(2).lower()
            return now - timedelta(seconds=amount * _UNIT_SECONDS[unit])

    try:
        return to_datetime(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Cannot parse date bound {value!r}: {e}") from e


@dataclass
class TimeRange:
    """Inclusive time window. Inverted bounds are swapped, never rejected."""
    min: Optional[datetime] = None
    max: Optional[datetime] = None

    def __post_init__(self):
        self.min = to_datetime(self.min)
        self.max = to_datetime(self.max)
        if self.min and self.max and self.min > self.max:
            logger.warning(
                f"[TIME-RANGE] min {self.min.isoformat()} is after "
                f"max {self.max.isoformat()}, swapping bounds"
            )
            self.min, self.max = self.max, self.min

    @classmethod
    def from_values(cls, min_value: Any = None, max_value: Any = None,
                    now: Optional[datetime] = None) -> "TimeRange":
        return cls(parse_time_unit(min_value, now), parse_time_unit(max_value, now))

    @property
    def is_set(self) -> bool:
        return self.min is not None or self.max is not None

    def contains(self, timestamp: Any) -> bool:
        """True if *timestamp* lies inside the window (or cannot be judged)."""
        ts = to_datetime(timestamp)
        if ts is None:
            return True
        if self.min and ts < self.min:
            return False
        if self.max and ts > self.max:
            return False
        return True

    def is_outside(self, timestamp: Any) -> bool:
        return not self.contains(timestamp)


# ---------------------------------------------------------------------------
# Work + execution
# ---------------------------------------------------------------------------

@dataclass
class WorkItem:
    """A queued target. ``retry_count`` is bumped on every reclaim."""
    url: str
    page_type_hint: Optional[PageType] = None
    label: str = ""
    user_data: Dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    limit: Optional[int] = None


@dataclass
class ExecutionContext:
    """A worker's session. The Credential Pool binds an identity to it."""
    context_id: int
    credential_index: Optional[int] = None
    items_processed: int = 0

    def unbind(self) -> None:
        self.credential_index = None


@dataclass
class FailureRecord:
    """Terminal failure of a WorkItem, written to the sink."""
    url: str
    error: str
    error_type: str = ""
    label: str = ""
    retry_count: int = 0

    @classmethod
    def from_error(cls, item: WorkItem, error: BaseException) -> "FailureRecord":
        return cls(
            url=item.url,
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            label=item.label,
            retry_count=item.retry_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "#url": self.url,
            "#error": self.error,
            "#debug": {
                "label": self.label,
                "retry_count": self.retry_count,
                "error_type": self.error_type,
            },
        }


@dataclass
class RunSummary:
    """What a scheduler run produced."""
    items_processed: int = 0
    items_failed: int = 0
    records_emitted: int = 0
    stop_reasons: Dict[str, str] = field(default_factory=dict)
    failures: List[FailureRecord] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str = ""
