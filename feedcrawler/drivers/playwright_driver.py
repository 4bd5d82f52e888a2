"""
Playwright Page Driver
======================
Reference ``PageDriver`` on top of async Playwright.

- One shared Chromium browser, one browser context per work item
- The bound identity's cookies are injected into the new context
- Images, media, fonts and tracking scripts are blocked for speed
- ``advance`` scrolls (or clicks a "load more" selector) and waits for the
  next network response whose URL matches ``response_pattern``

HTTP 429 on a matching response is reported as ``RATE_LIMITED``; 401/403
or a redirect to a login URL raise ``SessionInvalid``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError

from ..auth.credential_pool import Credential
from ..errors import RateLimited, SessionInvalid
from ..models import WorkItem
from .base import AdvanceResult

logger = logging.getLogger(__name__)

# Resource types to block for speed
_BLOCKED_RESOURCE_TYPES = frozenset([
    "image", "media", "font",
])

# URL patterns for analytics/tracking scripts to block
_BLOCKED_URL_PATTERNS = [
    re.compile(r"google[-_]?analytics", re.IGNORECASE),
    re.compile(r"googletagmanager", re.IGNORECASE),
    re.compile(r"facebook\.net", re.IGNORECASE),
    re.compile(r"doubleclick\.net", re.IGNORECASE),
    re.compile(r"hotjar\.", re.IGNORECASE),
    re.compile(r"sentry\.io", re.IGNORECASE),
]

_COOKIE_KEYS = {
    "name", "value", "url", "domain", "path", "expires",
    "httpOnly", "secure", "sameSite",
}

_SAME_SITE = {
    "strict": "Strict",
    "lax": "Lax",
    "none": "None",
    "no_restriction": "None",
}


@dataclass
class PlaywrightDriverConfig:
    """Configuration for the Playwright page driver."""
    headless: bool = True
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    )
    viewport_width: int = 1280
    viewport_height: int = 900
    navigation_timeout_ms: int = 60000
    response_timeout: float = 20.0          # seconds to wait for a batch response
    response_pattern: str = r"graphql/query|/api/v1/"
    load_more_selector: Optional[str] = None
    login_url_fragments: List[str] = field(default_factory=lambda: ["/accounts/login"])
    block_resources: bool = True
    blocked_url_fragments: List[str] = field(default_factory=list)


def cookies_from_payload(payload: Any, url: str) -> List[Dict[str, Any]]:
    """Convert exported browser cookies into Playwright ``add_cookies`` input.

    Cookies without a domain are scoped to *url*. ``expirationDate`` becomes
    ``expires``; unknown keys are dropped.
    """
    if isinstance(payload, dict):
        payload = [payload]

    cookies = []
    for raw in payload or []:
        if not isinstance(raw, dict) or "name" not in raw or "value" not in raw:
            continue
        cookie = {k: v for k, v in raw.items() if k in _COOKIE_KEYS}
        if "expires" not in cookie and raw.get("expirationDate") is not None:
            cookie["expires"] = float(raw["expirationDate"])

        same_site = str(raw.get("sameSite") or "").lower()
        if same_site in _SAME_SITE:
            cookie["sameSite"] = _SAME_SITE[same_site]
        else:
            cookie.pop("sameSite", None)

        if not cookie.get("domain") and not cookie.get("url"):
            cookie["url"] = url
        if cookie.get("domain") and "path" not in cookie:
            cookie["path"] = "/"
        cookies.append(cookie)
    return cookies


@dataclass
class PageHandle:
    """Per-work-item browser state."""
    item: WorkItem
    context: BrowserContext
    page: Page
    responses: asyncio.Queue = field(default_factory=asyncio.Queue)
    status: Optional[int] = None


class PlaywrightPageDriver:
    """Async Playwright implementation of the page driver protocol."""

    def __init__(self, config: Optional[PlaywrightDriverConfig] = None):
        self.config = config or PlaywrightDriverConfig()
        self._response_re = re.compile(self.config.response_pattern)
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    # ------------------------------------------------------------------
    # Browser lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._browser is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=[
                '--disable-gpu',
                '--no-sandbox',
                '--disable-dev-shm-usage',
                '--disable-background-networking',
                '--disable-default-apps',
                '--disable-extensions',
                '--no-first-run',
            ]
        )
        logger.info(
            f"[DRIVER] Playwright browser started "
            f"(headless={self.config.headless}, "
            f"blocking={'images,fonts,media,analytics' if self.config.block_resources else 'none'})"
        )

    async def stop(self) -> None:
        if self._browser:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.debug(f"[DRIVER] Error closing browser: {e}")
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    async def open_context(self, item: WorkItem, credential: Optional[Credential] = None) -> PageHandle:
        if self._browser is None:
            await self.start()

        context = await self._browser.new_context(
            user_agent=self.config.user_agent,
            viewport={
                'width': self.config.viewport_width,
                'height': self.config.viewport_height,
            },
            locale='en-US',
        )
        if credential is not None:
            cookies = cookies_from_payload(credential.payload, item.url)
            if cookies:
                await context.add_cookies(cookies)
            logger.debug(
                f"[DRIVER] Injected {len(cookies)} cookies for identity {credential.index}"
            )
        if self.config.block_resources:
            await context.route("**/*", self._route_handler)

        page = await context.new_page()
        handle = PageHandle(item=item, context=context, page=page)
        page.on('response', lambda resp: self._on_response(handle, resp))

        try:
            response = await page.goto(
                item.url,
                timeout=self.config.navigation_timeout_ms,
                wait_until='domcontentloaded',
            )
            handle.status = response.status if response else None
            if handle.status == 429:
                raise RateLimited(f"HTTP 429 opening {item.url}")
            if self.is_login_url(page.url):
                raise SessionInvalid(f"Redirected to login page: {page.url}")
        except BaseException:
            await self.close(handle)
            raise

        return handle

    async def snapshot(self, handle: PageHandle) -> Dict[str, Any]:
        page = handle.page
        return {
            "url": page.url,
            "status": handle.status,
            "html": await page.content(),
        }

    async def advance(self, handle: PageHandle, mode: str) -> AdvanceResult:
        page = handle.page
        if mode == "click" and self.config.load_more_selector:
            try:
                await page.click(self.config.load_more_selector, timeout=5000)
            except PlaywrightError as e:
                logger.debug(f"[DRIVER] Load-more click failed: {e}")
                return AdvanceResult.timeout("load-more button not clickable")
        else:
            await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")

        try:
            response = await asyncio.wait_for(
                handle.responses.get(), timeout=self.config.response_timeout
            )
        except asyncio.TimeoutError:
            return AdvanceResult.timeout("no matching response")

        status = response.status
        if status == 429:
            return AdvanceResult.rate_limited(f"HTTP 429 from {response.url}")
        if status in (401, 403) or self.is_login_url(response.url):
            raise SessionInvalid(f"HTTP {status} from {response.url}")
        if status >= 400:
            return AdvanceResult.timeout(f"HTTP {status} from {response.url}")

        try:
            body = await response.json()
        except (PlaywrightError, ValueError) as e:
            logger.debug(f"[DRIVER] Unparseable response from {response.url}: {e}")
            return AdvanceResult.timeout("unparseable response")
        return AdvanceResult.batch(body)

    async def close(self, handle: PageHandle) -> None:
        try:
            await handle.page.close()
            await handle.context.close()
        except PlaywrightError as e:
            logger.debug(f"[DRIVER] Error closing context: {e}")

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def is_login_url(self, url: str) -> bool:
        return any(fragment in url for fragment in self.config.login_url_fragments)

    def _on_response(self, handle: PageHandle, response) -> None:
        if self._response_re.search(response.url):
            handle.responses.put_nowait(response)

    def should_block(self, resource_type: str, url: str) -> bool:
        if resource_type in _BLOCKED_RESOURCE_TYPES:
            return True
        if resource_type == "script":
            if any(p.search(url) for p in _BLOCKED_URL_PATTERNS):
                return True
        return any(fragment in url for fragment in self.config.blocked_url_fragments)

    async def _route_handler(self, route) -> None:
        """Block unnecessary resources for speed."""
        request = route.request
        if self.should_block(request.resource_type, request.url):
            await route.abort()
            return
        await route.continue_()
