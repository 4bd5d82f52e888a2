"""
Credential State Store
======================
Persists the Credential Pool's counters across process restarts.

Only ``{index, uses, errors}`` is written; login payloads stay in memory.
On the next run the saved counters are applied back by index so an identity
that burned its error budget stays retired until the state expires.

Usage::

    store = CredentialStateStore("state/credentials.json")
    store.restore(pool)
    ...
    store.save(pool)
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .credential_pool import CredentialPool

logger = logging.getLogger(__name__)


_DEFAULT_STATE_PATH = "credential_state.json"
_MAX_STATE_AGE_HOURS = 24


class CredentialStateStore:
    """Saves and restores credential counters as JSON."""

    def __init__(
        self,
        state_path: str = _DEFAULT_STATE_PATH,
        *,
        max_age_hours: float = _MAX_STATE_AGE_HOURS,
    ):
        self.state_path = state_path
        self.max_age_hours = max_age_hours

    def read(self) -> Optional[List[Dict[str, Any]]]:
        """Return the saved snapshot, or None when missing, corrupt or stale."""
        path = Path(self.state_path)
        if not path.exists():
            logger.info("[CREDENTIALS] No saved credential state found")
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning(f"[CREDENTIALS] Corrupt credential state file: {exc}")
            return None

        age_hours = (time.time() - path.stat().st_mtime) / 3600
        if age_hours > self.max_age_hours:
            logger.info(
                f"[CREDENTIALS] Saved state is {age_hours:.1f}h old, ignoring "
                f"(max {self.max_age_hours}h)"
            )
            return None

        entries = data.get("credentials") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            logger.warning("[CREDENTIALS] Credential state has no 'credentials' list")
            return None
        return entries

    def restore(self, pool: CredentialPool) -> int:
        entries = self.read()
        if not entries:
            return 0
        return pool.restore(entries)

    def save(self, pool: CredentialPool) -> None:
        path = Path(self.state_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"saved_at": time.time(), "credentials": pool.snapshot()}
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, path)
        logger.info(f"[CREDENTIALS] State saved to {path}")
