"""
Feed Crawler Engine
Incremental, resumable crawl orchestration for session-gated feeds
reachable only through a headless browser.

Usage:
    from feedcrawler import EngineRunConfig, ExecutionScheduler, JsonLinesSink

    config = EngineRunConfig.from_env()
    scheduler = ExecutionScheduler.from_config(
        config, driver, registry, JsonLinesSink("output/items.jsonl")
    )
    summary = scheduler.run_sync(["https://example.com/natgeo/"])
"""

from .adapters import AdapterRegistry, BaseSiteAdapter, Batch, PageInfo, SiteAdapter
from .auth import Credential, CredentialPool, CredentialStateStore
from .backoff import BackoffController, BackoffResult
from .checkpoint import CheckpointStore, JsonFileCheckpointBackend, MemoryCheckpointBackend
from .dedup import DedupFilter, DedupResult
from .drivers import AdvanceResult, AdvanceStatus, PageDriver
from .errors import (
    ConfigError,
    CrawlError,
    MissingIdError,
    NoCredentialsError,
    NonRetryableError,
    PageStalled,
    RateLimited,
    RunAborted,
    SessionInvalid,
)
from .models import (
    Entity,
    ExecutionContext,
    FailureRecord,
    PageType,
    RunSummary,
    ScrollState,
    StopReason,
    TimeRange,
    WorkItem,
    parse_time_unit,
)
from .monitor import RunMetrics, RunMonitor
from .pagination import PaginationEngine, PaginationOutcome, PaginationSettings, collect_cursor_pages
from .pipeline import HookContext, OutputPipeline
from .queue import WorkQueue
from .run_config import EngineRunConfig
from .scheduler import ExecutionScheduler
from .sinks import JsonLinesSink, MemorySink, Sink
from .utils import PacingPolicy, URLNormalizer, load_symbol, setup_logging

__version__ = "0.1.0"

__all__ = [
    'EngineRunConfig',
    'ExecutionScheduler',
    'PaginationEngine',
    'PaginationOutcome',
    'PaginationSettings',
    'collect_cursor_pages',
    'OutputPipeline',
    'HookContext',
    'DedupFilter',
    'DedupResult',
    'BackoffController',
    'BackoffResult',
    'CheckpointStore',
    'JsonFileCheckpointBackend',
    'MemoryCheckpointBackend',
    'Credential',
    'CredentialPool',
    'CredentialStateStore',
    'WorkQueue',
    'RunMonitor',
    'RunMetrics',
    # Interfaces
    'AdapterRegistry',
    'BaseSiteAdapter',
    'SiteAdapter',
    'PageInfo',
    'Batch',
    'PageDriver',
    'AdvanceResult',
    'AdvanceStatus',
    'Sink',
    'MemorySink',
    'JsonLinesSink',
    # Model
    'Entity',
    'ExecutionContext',
    'FailureRecord',
    'PageType',
    'RunSummary',
    'ScrollState',
    'StopReason',
    'TimeRange',
    'WorkItem',
    'parse_time_unit',
    # Errors
    'CrawlError',
    'ConfigError',
    'NoCredentialsError',
    'RateLimited',
    'PageStalled',
    'MissingIdError',
    'SessionInvalid',
    'NonRetryableError',
    'RunAborted',
    # Utilities
    'PacingPolicy',
    'URLNormalizer',
    'load_symbol',
    'setup_logging',
]
