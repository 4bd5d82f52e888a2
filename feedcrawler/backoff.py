"""
Backoff Controller
==================
Wraps a fetch/interaction with rate-limit handling.

An operation signals rate limiting by raising ``RateLimited``. The
controller then sleeps ``(attempt + 1) * base_delay`` and tries again, up to
``max_retries`` retries. Any other exception propagates untouched; whether
generic failures are retried is the caller's decision.

Exhausting the retries is not an error: rate limiting is expected on this
kind of site, so the controller returns ``BackoffResult(gave_up=True)`` and
lets the caller log and move on.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from .errors import RateLimited

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class BackoffResult:
    """Result of ``with_backoff``. ``value`` is None when ``gave_up``."""
    value: Any = None
    gave_up: bool = False
    attempts: int = 0
    waits: List[float] = field(default_factory=list)

    @property
    def total_wait(self) -> float:
        return sum(self.waits)


class BackoffController:
    """Linear backoff on rate limits, bounded by ``max_retries``."""

    def __init__(
        self,
        base_delay: float = 10.0,
        max_retries: int = 10,
        sleep: Optional[SleepFn] = None,
        on_wait: Optional[Callable[[float], Any]] = None,
    ):
        self.base_delay = base_delay
        self.max_retries = max_retries
        self._sleep = sleep or asyncio.sleep
        self._on_wait = on_wait

    def delay_for(self, attempt: int) -> float:
        """Delay after the rate-limited attempt number *attempt* (0-indexed)."""
        return (attempt + 1) * self.base_delay

    async def with_backoff(
        self,
        op: Callable[[], Any],
        max_retries: Optional[int] = None,
        label: str = "",
    ) -> BackoffResult:
        retries = self.max_retries if max_retries is None else max_retries
        result = BackoffResult()
        prefix = f"{label} - " if label else ""

        for attempt in range(retries + 1):
            result.attempts = attempt + 1
            try:
                value = op()
                if inspect.isawaitable(value):
                    value = await value
                result.value = value
                return result
            except RateLimited:
                if attempt >= retries:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    f"[BACKOFF] {prefix}Encountered rate limit, "
                    f"waiting {delay:.1f} seconds"
                )
                result.waits.append(delay)
                if self._on_wait:
                    self._on_wait(delay)
                await self._sleep(delay)

        logger.warning(
            f"[BACKOFF] {prefix}Still rate limited after {result.attempts} "
            f"attempts, giving up"
        )
        result.gave_up = True
        return result
