"""
Utility Functions
URL normalization, pacing between page loads, dotted-path loading and
logging setup.
"""

import importlib
import logging
import os
import random
import re
import asyncio
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

logger = logging.getLogger(__name__)


class URLNormalizer:
    """
    Canonical form of a target URL, used to dedup the work queue.
    Lowercases scheme and host, drops fragments and tracking params, sorts
    the query and strips a trailing slash.
    """

    TRACKING_PARAMS = {
        'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
        'fbclid', 'gclid', 'igshid', 'ref', '_ga', '_gid',
    }

    def __init__(self, remove_tracking_params: bool = True, strip_www: bool = True):
        self.remove_tracking_params = remove_tracking_params
        self.strip_www = strip_www

    def normalize(self, url: str) -> Optional[str]:
        """
        Normalize a URL for consistent comparison.

        Returns:
            Normalized URL string or None if it is not an http(s) URL
        """
        if not url:
            return None

        url = url.strip()
        try:
            parsed = urlparse(url)
        except ValueError:
            return None

        if parsed.scheme.lower() not in ('http', 'https') or not parsed.netloc:
            return None

        netloc = parsed.netloc.lower()
        if self.strip_www and netloc.startswith('www.'):
            netloc = netloc[4:]

        path = re.sub(r'/+', '/', parsed.path or '/')
        if path != '/' and path.endswith('/'):
            path = path.rstrip('/')

        query = parsed.query
        if query:
            params = parse_qs(query, keep_blank_values=True)
            if self.remove_tracking_params:
                params = {
                    k: v for k, v in params.items()
                    if k.lower() not in self.TRACKING_PARAMS
                }
            query = urlencode(sorted(params.items()), doseq=True)

        return urlunparse((parsed.scheme.lower(), netloc, path, parsed.params, query, ''))


class PacingPolicy:
    """
    Anti-throttling delays between page loads.

    - a micro delay of 200-600 ms before every page load
    - past ``heavy_after`` collected items, whenever the count sits in the
      first ``heavy_window`` of each hundred, an extra
      ``scroll_wait + uniform(1, 11)`` seconds

    Tunable policy, not correctness: ``enabled=False`` turns it off and both
    the random source and the sleep function can be injected.
    """

    def __init__(
        self,
        enabled: bool = True,
        scroll_wait: float = 0.0,
        heavy_after: int = 1000,
        heavy_window: int = 12,
        rng: Optional[random.Random] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.enabled = enabled
        self.scroll_wait = scroll_wait
        self.heavy_after = heavy_after
        self.heavy_window = heavy_window
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep

    def delay_for(self, collected: int) -> float:
        """Seconds to wait before the next page load after *collected* items."""
        if not self.enabled:
            return 0.0

        delay = 0.2 * (self._rng.random() * 2 + 1)
        if collected > self.heavy_after and collected % 100 < self.heavy_window:
            extra = self.scroll_wait + self._rng.uniform(1.0, 11.0)
            logger.info(f"Sleeping for {extra:.1f} seconds to prevent getting rate limited")
            delay += extra
        return delay

    async def wait(self, collected: int) -> float:
        delay = self.delay_for(collected)
        if delay > 0:
            await self._sleep(delay)
        return delay


def load_symbol(dotted: str) -> Any:
    """
    Load a class or function from a dotted path.
    Supports both "package.module:name" and "package.module.name".
    """
    if ":" in dotted:
        module_name, symbol_name = dotted.split(":", 1)
    else:
        module_name, symbol_name = dotted.rsplit(".", 1)

    module = importlib.import_module(module_name)
    return getattr(module, symbol_name)


_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def setup_logging(level=None) -> None:
    """Configure root logging for a crawl run."""
    if level is None:
        level = os.getenv("FEEDCRAWL_LOG_LEVEL", "INFO")

    if isinstance(level, str):
        level = _LEVELS.get(level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S'
    )
