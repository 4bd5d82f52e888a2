"""
Site adapters: page classification and item extraction per page type.
"""

from .base import Batch, BaseSiteAdapter, PageInfo, SiteAdapter
from .registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "BaseSiteAdapter",
    "Batch",
    "PageInfo",
    "SiteAdapter",
]
