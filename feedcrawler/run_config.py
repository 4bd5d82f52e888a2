"""
Engine Run Configuration
========================
Single source of truth for ALL engine defaults and runtime limits.

Scheduler, pagination engine, backoff controller, credential pool and
output pipeline are all built from this object. Hosts populate it from
keyword arguments, a JSON-like mapping (``from_dict``) or the environment
(``from_env``, which also reads a ``.env`` file).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .models import TimeRange

logger = logging.getLogger(__name__)

ENV_PREFIX = "FEEDCRAWL_"


# ---------------------------------------------------------------------------
# Canonical defaults, the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "concurrency": 4,
    "max_error_count": 3,            # per-identity error budget
    "results_limit": None,           # None = unbounded
    "min_date": None,
    "max_date": None,
    "max_request_retries": 3,        # per work item
    "rate_limit_retries": 10,
    "rate_limit_base_delay": 10.0,   # seconds, multiplied by attempt + 1
    "advance_timeout": 30.0,         # seconds per page-driver advance
    "max_stall_attempts": 5,
    "stall_retry_delay": 3.5,        # seconds, multiplied by attempt + 1
    "max_duplicate_batches": 25,     # consecutive duplicate-only batches
    "idle_timeout": 300.0,           # seconds without a new item
    "item_timeout": 5 * 3600.0,      # seconds per work item
    "scroll_wait": 0.0,              # extra anti-throttle pause
    "pacing_enabled": True,
    "require_credentials": False,
    "credential_state_path": None,
    "checkpoint_dir": None,          # None = in-memory checkpoints
    "run_id": "default",
    "map_hook": None,
    "filter_hook": None,
    "lifecycle_hook": None,
    "hook_timeout": 30.0,
    "include_debug": False,
    "debug_log": False,
}

_INT_FIELDS = {
    "concurrency", "max_error_count", "results_limit", "max_request_retries",
    "rate_limit_retries", "max_stall_attempts", "max_duplicate_batches",
}
_FLOAT_FIELDS = {
    "rate_limit_base_delay", "advance_timeout", "stall_retry_delay",
    "idle_timeout", "item_timeout", "scroll_wait", "hook_timeout",
}
_BOOL_FIELDS = {"pacing_enabled", "require_credentials", "include_debug", "debug_log"}
_JSON_FIELDS = {"credentials", "custom_data"}


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineRunConfig:
    """
    Unified configuration consumed by every engine component.

    Populate via:
      - ``EngineRunConfig()``                   → all defaults
      - ``EngineRunConfig(concurrency=8)``      → override one value
      - ``EngineRunConfig.from_dict(data)``     → from a JSON-like mapping
      - ``EngineRunConfig.from_env()``          → from FEEDCRAWL_* / .env
    """

    # ---- Concurrency + identities ----
    concurrency: int = _DEFAULTS["concurrency"]
    max_error_count: int = _DEFAULTS["max_error_count"]
    require_credentials: bool = _DEFAULTS["require_credentials"]
    credentials: List[Any] = field(default_factory=list)
    credential_state_path: Optional[str] = _DEFAULTS["credential_state_path"]

    # ---- Output bounds ----
    results_limit: Optional[int] = _DEFAULTS["results_limit"]
    min_date: Any = _DEFAULTS["min_date"]
    max_date: Any = _DEFAULTS["max_date"]

    # ---- Retries + timeouts ----
    max_request_retries: int = _DEFAULTS["max_request_retries"]
    rate_limit_retries: int = _DEFAULTS["rate_limit_retries"]
    rate_limit_base_delay: float = _DEFAULTS["rate_limit_base_delay"]
    advance_timeout: float = _DEFAULTS["advance_timeout"]
    max_stall_attempts: int = _DEFAULTS["max_stall_attempts"]
    stall_retry_delay: float = _DEFAULTS["stall_retry_delay"]
    max_duplicate_batches: int = _DEFAULTS["max_duplicate_batches"]
    idle_timeout: float = _DEFAULTS["idle_timeout"]
    item_timeout: float = _DEFAULTS["item_timeout"]

    # ---- Pacing ----
    scroll_wait: float = _DEFAULTS["scroll_wait"]
    pacing_enabled: bool = _DEFAULTS["pacing_enabled"]

    # ---- Checkpoints ----
    checkpoint_dir: Optional[str] = _DEFAULTS["checkpoint_dir"]
    run_id: str = _DEFAULTS["run_id"]

    # ---- User hooks (dotted "module:attr" paths) ----
    map_hook: Optional[str] = _DEFAULTS["map_hook"]
    filter_hook: Optional[str] = _DEFAULTS["filter_hook"]
    lifecycle_hook: Optional[str] = _DEFAULTS["lifecycle_hook"]
    hook_timeout: float = _DEFAULTS["hook_timeout"]
    custom_data: Dict[str, Any] = field(default_factory=dict)

    # ---- Diagnostics ----
    include_debug: bool = _DEFAULTS["include_debug"]
    debug_log: bool = _DEFAULTS["debug_log"]

    def __post_init__(self):
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_error_count < 1:
            raise ConfigError(f"max_error_count must be >= 1, got {self.max_error_count}")
        if self.results_limit is not None and self.results_limit < 0:
            raise ConfigError(f"results_limit must be >= 0, got {self.results_limit}")
        if self.max_request_retries < 0 or self.rate_limit_retries < 0:
            raise ConfigError("retry counts must be >= 0")
        if self.max_stall_attempts < 1:
            raise ConfigError(f"max_stall_attempts must be >= 1, got {self.max_stall_attempts}")

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineRunConfig":
        """Build config from a JSON-like mapping; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning(f"[CONFIG] Ignoring unknown option '{key}'")
                continue
            kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides) -> "EngineRunConfig":
        """Build config from ``FEEDCRAWL_*`` variables (after loading ``.env``).

        Keyword *overrides* win over the environment.
        """
        load_dotenv(env_file)

        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            try:
                if f.name in _BOOL_FIELDS:
                    kwargs[f.name] = _parse_bool(raw)
                elif f.name in _INT_FIELDS:
                    kwargs[f.name] = int(raw)
                elif f.name in _FLOAT_FIELDS:
                    kwargs[f.name] = float(raw)
                elif f.name in _JSON_FIELDS:
                    kwargs[f.name] = json.loads(raw)
                else:
                    kwargs[f.name] = raw
            except (ValueError, json.JSONDecodeError) as e:
                raise ConfigError(
                    f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {e}"
                ) from e

        kwargs.update(overrides)
        return cls(**kwargs)

    # -----------------------------------------------------------------------
    # Derived settings
    # -----------------------------------------------------------------------
    def time_range(self, now: Optional[datetime] = None) -> TimeRange:
        """Parse ``min_date``/``max_date`` into a normalised ``TimeRange``."""
        return TimeRange.from_values(self.min_date, self.max_date, now=now)

    def pagination_settings(self):
        """Return the ``PaginationSettings`` slice of this config."""
        # Import here to avoid circular dependency
        from .pagination import PaginationSettings
        return PaginationSettings(
            advance_timeout=self.advance_timeout,
            max_stall_attempts=self.max_stall_attempts,
            stall_retry_delay=self.stall_retry_delay,
            max_duplicate_batches=self.max_duplicate_batches,
            idle_timeout=self.idle_timeout,
        )

    def effective_concurrency(self, credential_count: int) -> int:
        """Worker pool size, capped by the identity count when identities are required."""
        if self.require_credentials:
            return max(0, min(self.concurrency, credential_count))
        return self.concurrency

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self, seeds: int = 0) -> None:
        """Emit a structured summary to the logger. Credential payloads are never logged."""
        time_range = self.time_range()
        logger.info("=" * 60)
        logger.info("ENGINE RUN CONFIG")
        logger.info("=" * 60)
        logger.info(f"  Run ID:           {self.run_id}")
        if seeds:
            logger.info(f"  Seeds:            {seeds}")
        logger.info(f"  Concurrency:      {self.concurrency}")
        logger.info(f"  Results Limit:    {self.results_limit if self.results_limit is not None else 'unbounded'}")
        if time_range.is_set:
            lo = time_range.min.isoformat() if time_range.min else "-"
            hi = time_range.max.isoformat() if time_range.max else "-"
            logger.info(f"  Time Range:       {lo} .. {hi}")
        logger.info(f"  Request Retries:  {self.max_request_retries}")
        logger.info(
            f"  Rate Limits:      {self.rate_limit_retries} retries, "
            f"{self.rate_limit_base_delay}s base delay"
        )
        logger.info(f"  Advance Timeout:  {self.advance_timeout}s ({self.max_stall_attempts} attempts)")
        logger.info(f"  Item Timeout:     {self.item_timeout:.0f}s")
        logger.info(f"  Pacing:           {'on' if self.pacing_enabled else 'off'}")
        if self.credentials or self.require_credentials:
            logger.info(
                f"  Credentials:      {len(self.credentials)} configured, "
                f"required={self.require_credentials}, "
                f"max errors={self.max_error_count}"
            )
        logger.info(f"  Checkpoints:      {self.checkpoint_dir or 'in-memory'}")
        for name in ("map_hook", "filter_hook", "lifecycle_hook"):
            value = getattr(self, name)
            if value:
                logger.info(f"  {name + ':':<18}{value}")
        logger.info("=" * 60)
