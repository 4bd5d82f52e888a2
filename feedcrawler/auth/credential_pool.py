"""
Credential Pool
===============
Owns the configured login identities, tracks each identity's error budget
and binds identities to execution contexts.

Input shapes accepted by ``load()``:
    - a flat list (e.g. a list of cookie dicts)  → one identity
    - a list of lists                            → one identity per inner list

An identity is *usable* while ``errors < max_error_count``. Identities are
never removed, only left unusable. Counters are the only engine state touched
from several workers at once, so every mutation goes through one lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Optional

from ..errors import ConfigError, NoCredentialsError
from ..models import ExecutionContext

logger = logging.getLogger(__name__)


@dataclass
class Credential:
    """One login identity. ``payload`` is opaque to the engine."""
    index: int
    payload: Any
    uses: int = 0
    errors: int = 0

    def to_state(self) -> Dict[str, int]:
        """Counters only; payloads never leave the process."""
        return {"index": self.index, "uses": self.uses, "errors": self.errors}


class CredentialPool:
    """Thread-safe identity pool with per-identity error budgets."""

    def __init__(self, max_error_count: int = 3):
        if max_error_count < 1:
            raise ConfigError("max_error_count must be at least 1")
        self.max_error_count = max_error_count
        self._credentials: List[Credential] = []
        self._lock = Lock()

    # ── Loading ───────────────────────────────────────────────────

    def load(self, credentials: Any, required: bool = False) -> int:
        """Partition *credentials* into identities.

        Raises:
            ConfigError:        input is neither a flat list nor a list of lists
            NoCredentialsError: *required* and no usable identity results
        """
        if credentials is None:
            credentials = []
        if not isinstance(credentials, (list, tuple)):
            raise ConfigError(
                "Credentials have to be either a list or a list of lists, "
                f"got {type(credentials).__name__}"
            )

        nested = [isinstance(c, (list, tuple)) for c in credentials]
        if credentials and any(nested) and not all(nested):
            raise ConfigError("Credentials mix single values and lists")

        if credentials and all(nested):
            groups = [list(c) for c in credentials if len(c) > 0]
        elif credentials:
            groups = [list(credentials)]
        else:
            groups = []

        with self._lock:
            self._credentials = [
                Credential(index=i, payload=payload)
                for i, payload in enumerate(groups)
            ]

        logger.info(f"[CREDENTIALS] Loaded {len(groups)} identities")

        if required and self.usable_count() == 0:
            raise NoCredentialsError("No usable credentials were provided")
        return len(groups)

    # ── Binding ───────────────────────────────────────────────────

    def acquire(self, context: ExecutionContext) -> Optional[Credential]:
        """Bind the first identity under its error budget to *context*."""
        with self._lock:
            for cred in self._credentials:
                if cred.errors < self.max_error_count:
                    context.credential_index = cred.index
                    logger.debug(
                        f"[CREDENTIALS] Context {context.context_id} "
                        f"bound to identity {cred.index}"
                    )
                    return cred
        return None

    def get(self, context: ExecutionContext) -> Optional[Credential]:
        """Return the identity bound to *context*, if any."""
        if context.credential_index is None:
            return None
        with self._lock:
            return self._find(context.credential_index)

    def report_success(self, context: ExecutionContext) -> None:
        with self._lock:
            cred = self._bound(context)
            if cred is None:
                return
            if cred.errors > 0:
                cred.errors -= 1
            cred.uses += 1

    def report_failure(self, context: ExecutionContext) -> None:
        with self._lock:
            cred = self._bound(context)
            if cred is None:
                return
            cred.errors += 1
            cred.uses += 1
            exhausted = cred.errors >= self.max_error_count
        if exhausted:
            logger.warning(
                f"[CREDENTIALS] Identity {cred.index} exhausted its error "
                f"budget ({self.max_error_count}), retiring it"
            )

    def is_usable(self, context: ExecutionContext) -> bool:
        with self._lock:
            cred = self._bound(context)
            if cred is None:
                return True
            return cred.errors < self.max_error_count

    # ── Introspection ─────────────────────────────────────────────

    def count(self) -> int:
        return len(self._credentials)

    def usable_count(self) -> int:
        with self._lock:
            return sum(1 for c in self._credentials if c.errors < self.max_error_count)

    @property
    def credentials(self) -> List[Credential]:
        return list(self._credentials)

    def snapshot(self) -> List[Dict[str, int]]:
        with self._lock:
            return [c.to_state() for c in self._credentials]

    def restore(self, state: List[Dict[str, Any]]) -> int:
        """Apply saved counters by index. Unknown indexes are skipped."""
        restored = 0
        with self._lock:
            for entry in state or []:
                cred = self._find(entry.get("index"))
                if cred is None:
                    continue
                cred.uses = max(0, int(entry.get("uses", 0)))
                cred.errors = max(0, int(entry.get("errors", 0)))
                restored += 1
        if restored:
            logger.info(f"[CREDENTIALS] Restored counters for {restored} identities")
        return restored

    # ── Internal (caller holds the lock) ──────────────────────────

    def _find(self, index: Optional[int]) -> Optional[Credential]:
        if index is None:
            return None
        for cred in self._credentials:
            if cred.index == index:
                return cred
        return None

    def _bound(self, context: ExecutionContext) -> Optional[Credential]:
        return self._find(context.credential_index)
