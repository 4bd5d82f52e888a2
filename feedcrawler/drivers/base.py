"""
Page Driver Interface
=====================
The browser/transport layer that performs the actual fetches. The engine
never inspects DOM or selectors; it only opens contexts, reads the raw
page state, asks for "the next page" and closes contexts again.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

from ..auth.credential_pool import Credential
from ..models import WorkItem


class AdvanceStatus(str, Enum):
    BATCH = "batch"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"


@dataclass
class AdvanceResult:
    """Outcome of one ``advance`` call."""
    status: AdvanceStatus
    response: Any = None
    detail: str = ""

    @classmethod
    def batch(cls, response: Any) -> "AdvanceResult":
        return cls(AdvanceStatus.BATCH, response=response)

    @classmethod
    def timeout(cls, detail: str = "") -> "AdvanceResult":
        return cls(AdvanceStatus.TIMEOUT, detail=detail)

    @classmethod
    def rate_limited(cls, detail: str = "") -> "AdvanceResult":
        return cls(AdvanceStatus.RATE_LIMITED, detail=detail)

    @property
    def is_batch(self) -> bool:
        return self.status == AdvanceStatus.BATCH


class PageDriver(Protocol):

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    async def open_context(self, item: WorkItem, credential: Optional[Credential] = None) -> Any:
        """Open an execution context on *item*'s URL and return a handle."""
        ...

    async def snapshot(self, handle: Any) -> Any:
        """Raw page state handed to ``SiteAdapter.classify``."""
        ...

    async def advance(self, handle: Any, mode: str) -> AdvanceResult:
        ...

    async def close(self, handle: Any) -> None:
        ...
