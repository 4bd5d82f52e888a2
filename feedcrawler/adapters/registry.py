from __future__ import annotations

import logging
from importlib import metadata
from typing import Dict, List, Optional

from ..errors import NonRetryableError
from ..models import PageType, WorkItem
from ..utils import load_symbol
from .base import SiteAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Maps page types and URLs to site adapters.
    Supports adapters registered in code, dotted-path classes from config,
    and entry-point plugins.
    """

    def __init__(self, adapters: Optional[List[SiteAdapter]] = None) -> None:
        self._adapters: List[SiteAdapter] = []
        self._by_type: Dict[PageType, SiteAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    # ---- Introspection / Management ----

    def register(self, adapter: SiteAdapter) -> None:
        self._adapters.append(adapter)
        for page_type in getattr(adapter, "page_types", []):
            self._by_type[PageType(page_type)] = adapter

    def register_path(self, dotted: str) -> SiteAdapter:
        """Instantiate and register an adapter class given as ``module:Class``."""
        adapter = load_symbol(dotted)()
        self.register(adapter)
        return adapter

    @property
    def adapters(self) -> List[SiteAdapter]:
        return list(self._adapters)

    def for_page_type(self, page_type: PageType) -> Optional[SiteAdapter]:
        return self._by_type.get(page_type)

    def match(self, url: str) -> Optional[SiteAdapter]:
        for adapter in self._adapters:
            if adapter.matches(url):
                return adapter
        return None

    def resolve(self, item: WorkItem) -> SiteAdapter:
        """Adapter for a work item: page-type hint first, then URL detection."""
        adapter = None
        if item.page_type_hint is not None:
            adapter = self.for_page_type(item.page_type_hint)
        if adapter is None:
            adapter = self.match(item.url)
        if adapter is None:
            raise NonRetryableError(f"No site adapter handles {item.url}")
        return adapter

    # ---- Discovery ----

    def discover_entry_points(self, group: str = "feedcrawler.adapters") -> int:
        """
        Discover third-party adapters installed as entry points.
        Returns count of newly registered adapters.
        """
        added = 0
        for ep in metadata.entry_points().select(group=group):
            try:
                adapter_cls = ep.load()
                self.register(adapter_cls())
                added += 1
            except Exception as e:
                logger.warning(f"[ADAPTERS] Could not load plugin '{ep.name}': {e}")
        return added
