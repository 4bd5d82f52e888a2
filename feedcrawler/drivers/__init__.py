"""
Page drivers: the browser/transport layer behind the engine.

The Playwright implementation lives in
``feedcrawler.drivers.playwright_driver``.
"""

from .base import AdvanceResult, AdvanceStatus, PageDriver

__all__ = [
    "AdvanceResult",
    "AdvanceStatus",
    "PageDriver",
]
