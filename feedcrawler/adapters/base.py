"""
Site Adapter Interface
======================
Site-specific classification and extraction, consumed by the engine.

Adapters never drive the browser: they turn the raw page state and the
raw responses handed over by the page driver into ``PageInfo`` and
``Batch`` values. Candidates must be delivered newest-first; the time
boundary check relies on it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Protocol, Union

from ..errors import NonRetryableError
from ..models import PageType


@dataclass
class PageInfo:
    """What ``classify`` learned about an opened page."""
    page_type: PageType
    entity_id: str = ""
    paginated: bool = True
    advance_mode: str = "scroll"        # opaque to the engine, passed to the driver
    detail_urls: List[str] = field(default_factory=list)
    detail_page_type: Optional[PageType] = None
    limit: Optional[int] = None         # overrides the run-wide results limit
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def expands_details(self) -> bool:
        return bool(self.detail_urls)


@dataclass
class Batch:
    """One page worth of raw candidates."""
    items: List[Any] = field(default_factory=list)
    has_next_page: bool = True
    cursor: Optional[str] = None

    def __len__(self) -> int:
        return len(self.items)


class SiteAdapter(Protocol):
    """
    Interface for site-specific extraction logic.
    Keep this small and stable so adapters rarely break across site changes.
    """

    name: str
    page_types: List[PageType]
    url_pattern: Optional[Union[str, Pattern[str]]]

    def matches(self, url: str) -> bool:
        ...

    def classify(self, state: Any) -> PageInfo:
        """Inspect the raw page state. Raises ``SessionInvalid`` on a login redirect."""
        ...

    def extract_batch(self, response: Any) -> Batch:
        ...

    def extract_id(self, item: Any) -> Optional[str]:
        ...

    def extract_timestamp(self, item: Any) -> Any:
        ...

    def extract(self, item: Any, position: int) -> Dict[str, Any]:
        """Normalise one raw candidate into a record carrying ``id`` and ``timestamp``."""
        ...

    def initial_batch(self, state: Any) -> Optional[Batch]:
        ...

    def extract_record(self, state: Any) -> Dict[str, Any]:
        ...


class BaseSiteAdapter:
    """Defaults for the optional parts of ``SiteAdapter``.

    Subclasses implement ``classify`` and ``extract_batch``; items are
    expected to be dicts unless ``extract_id``/``extract_timestamp`` are
    overridden.
    """

    name = "base"
    page_types: List[PageType] = []
    url_pattern: Optional[Union[str, Pattern[str]]] = None

    def matches(self, url: str) -> bool:
        if self.url_pattern is None:
            return False
        return re.search(self.url_pattern, url) is not None

    def classify(self, state: Any) -> PageInfo:  # pragma: no cover - interface
        raise NotImplementedError

    def extract_batch(self, response: Any) -> Batch:  # pragma: no cover - interface
        raise NotImplementedError

    def extract_id(self, item: Any) -> Optional[str]:
        value = item.get("id") if isinstance(item, dict) else None
        return None if value is None else str(value)

    def extract_timestamp(self, item: Any) -> Any:
        return item.get("timestamp") if isinstance(item, dict) else None

    def extract(self, item: Any, position: int) -> Dict[str, Any]:
        record = dict(item) if isinstance(item, dict) else {"raw": item}
        record["id"] = self.extract_id(item)
        record["timestamp"] = self.extract_timestamp(item)
        record["position"] = position
        return record

    def initial_batch(self, state: Any) -> Optional[Batch]:
        return None

    def extract_record(self, state: Any) -> Dict[str, Any]:
        raise NonRetryableError(f"{self.name} adapter cannot extract single records")
