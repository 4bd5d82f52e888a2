"""
Output Sinks
============
Append-only destinations for emitted records and failure records.
Writes may arrive interleaved from many workers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Protocol

logger = logging.getLogger(__name__)


class Sink(Protocol):
    async def emit(self, record: Dict[str, Any]) -> None:
        ...


class MemorySink:
    """Collects records in a list."""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []

    async def emit(self, record: Dict[str, Any]) -> None:
        self.records.append(record)

    @property
    def items(self) -> List[Dict[str, Any]]:
        return [r for r in self.records if "#error" not in r]

    @property
    def failures(self) -> List[Dict[str, Any]]:
        return [r for r in self.records if "#error" in r]


class JsonLinesSink:
    """Appends one JSON document per line to *path*."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self.count = 0

    async def emit(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False, default=str)
        async with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
            self.count += 1
