"""
Checkpoint Store
================
Owns the ``entity_id → ScrollState`` map for a run and persists it through a
pluggable backend so a restarted run resumes instead of re-emitting.

States are created lazily, mutated only by the dedup filter and the
pagination engine, and never deleted during a run. ``save()`` writes a full
snapshot; rewriting the same snapshot is harmless. ``persist()`` does the
same from a coroutine, writing in the default executor so file I/O never
blocks the event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from .errors import MissingIdError
from .models import ScrollState

logger = logging.getLogger(__name__)


class CheckpointBackend(Protocol):
    """Durable storage for checkpoint snapshots."""

    def load(self, run_id: str) -> Dict[str, Dict[str, Any]]:
        ...

    def save(self, run_id: str, states: Dict[str, Dict[str, Any]]) -> None:
        ...


class MemoryCheckpointBackend:
    """Keeps snapshots in process memory (tests, one-shot runs)."""

    def __init__(self):
        self.snapshots: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.save_count = 0

    def load(self, run_id: str) -> Dict[str, Dict[str, Any]]:
        return json.loads(json.dumps(self.snapshots.get(run_id, {})))

    def save(self, run_id: str, states: Dict[str, Dict[str, Any]]) -> None:
        self.snapshots[run_id] = json.loads(json.dumps(states))
        self.save_count += 1


_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class JsonFileCheckpointBackend:
    """One ``{run_id}.json`` file per run, replaced atomically on save."""

    def __init__(self, directory: str = "checkpoints"):
        self.directory = Path(directory)

    def path_for(self, run_id: str) -> Path:
        name = _SAFE_NAME_RE.sub("_", run_id) or "default"
        return self.directory / f"{name}.json"

    def load(self, run_id: str) -> Dict[str, Dict[str, Any]]:
        path = self.path_for(run_id)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning(f"[CHECKPOINT] Unreadable checkpoint {path}: {exc}")
            return {}
        return data.get("states", {}) if isinstance(data, dict) else {}

    def save(self, run_id: str, states: Dict[str, Dict[str, Any]]) -> None:
        path = self.path_for(run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(
            json.dumps({"run_id": run_id, "states": states}, ensure_ascii=False),
            encoding="utf-8",
        )
        os.replace(tmp, path)


class CheckpointStore:
    """In-memory scroll states for one run, backed by a ``CheckpointBackend``."""

    def __init__(self, backend: Optional[CheckpointBackend] = None, run_id: str = "default"):
        self.backend = backend or MemoryCheckpointBackend()
        self.run_id = run_id
        self._states: Dict[str, ScrollState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._save_lock = asyncio.Lock()

    @property
    def states(self) -> Dict[str, ScrollState]:
        return self._states

    def load(self) -> Dict[str, ScrollState]:
        """Replace the in-memory map with the backend's snapshot."""
        raw = self.backend.load(self.run_id)
        self._states = {
            entity_id: ScrollState.from_dict(data)
            for entity_id, data in raw.items()
        }
        if self._states:
            logger.info(
                f"[CHECKPOINT] Resumed {len(self._states)} entities "
                f"for run '{self.run_id}'"
            )
        return self._states

    def save(self) -> None:
        snapshot = {eid: state.to_dict() for eid, state in self._states.items()}
        self.backend.save(self.run_id, snapshot)
        logger.debug(f"[CHECKPOINT] Saved {len(snapshot)} entities")

    async def persist(self) -> None:
        """Async variant of ``save`` used between batches."""
        loop = asyncio.get_running_loop()
        async with self._save_lock:
            snapshot = {eid: state.to_dict() for eid, state in self._states.items()}
            await loop.run_in_executor(None, self.backend.save, self.run_id, snapshot)
        logger.debug(f"[CHECKPOINT] Saved {len(snapshot)} entities")

    def get(self, entity_id: str) -> Optional[ScrollState]:
        return self._states.get(entity_id)

    def get_or_create(self, entity_id: str) -> ScrollState:
        if not entity_id:
            raise MissingIdError("Cannot track scroll state without an entity id")
        state = self._states.get(entity_id)
        if state is None:
            state = ScrollState()
            self._states[entity_id] = state
        return state

    def lock_for(self, entity_id: str) -> asyncio.Lock:
        """Serialises batches of one entity across workers."""
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[entity_id] = lock
        return lock
