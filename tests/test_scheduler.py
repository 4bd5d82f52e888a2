"""
End-to-end tests for the execution scheduler with a scripted page driver.

Covers:
  1. Pool sizing and identity requirements
  2. Paginated, single-record and detail-expanding pages
  3. Retries, failure records and non-retryable pages
  4. Session failures exhausting the credential pool
  5. Checkpoint resume, lifecycle hooks and from_config wiring
"""

import asyncio

import pytest

from feedcrawler.adapters.registry import AdapterRegistry
from feedcrawler.auth.credential_pool import CredentialPool
from feedcrawler.checkpoint import (
    CheckpointStore,
    JsonFileCheckpointBackend,
    MemoryCheckpointBackend,
)
from feedcrawler.errors import NoCredentialsError, RateLimited, SessionInvalid
from feedcrawler.models import ScrollState, WorkItem
from feedcrawler.monitor import RunMonitor
from feedcrawler.pipeline import OutputPipeline
from feedcrawler.run_config import EngineRunConfig
from feedcrawler.scheduler import ExecutionScheduler
from feedcrawler.sinks import MemorySink

from fakes import BASE, FakeAdapter, FakeDriver, SleepRecorder, page


PROFILE_URL = f"{BASE}/natgeo/"
PROFILE_STATE = {"page_type": "user", "entity_id": "natgeo"}


def make_config(**overrides):
    defaults = dict(pacing_enabled=False, concurrency=1, max_stall_attempts=1)
    defaults.update(overrides)
    return EngineRunConfig(**defaults)


def make_scheduler(driver, config=None, sink=None, **kwargs):
    if sink is None and "pipeline" not in kwargs:
        sink = MemorySink()
    scheduler = ExecutionScheduler(
        config or make_config(),
        driver,
        AdapterRegistry([FakeAdapter()]),
        sink=sink,
        monitor=RunMonitor(report_interval=0),
        sleep=SleepRecorder(),
        **kwargs,
    )
    scheduler.poll_interval = 0.05
    return scheduler


def ids(records):
    return [r["id"] for r in records]


# ====================================================================
# 1. Pool sizing
# ====================================================================

class TestPoolSizing:

    def test_concurrency_without_required_identities(self):
        pool = CredentialPool()
        pool.load([["a"], ["b"]])
        scheduler = make_scheduler(FakeDriver(), make_config(concurrency=4), pool=pool)
        assert scheduler.pool_size() == 4

    def test_capped_by_identity_count_when_required(self):
        pool = CredentialPool()
        pool.load([["a"], ["b"]])
        config = make_config(concurrency=4, require_credentials=True)
        assert make_scheduler(FakeDriver(), config, pool=pool).pool_size() == 2

    def test_required_but_none_configured(self):
        with pytest.raises(NoCredentialsError):
            make_scheduler(FakeDriver(), make_config(require_credentials=True))

    def test_required_with_empty_pool_never_starts(self):
        driver = FakeDriver()
        config = make_config(require_credentials=True)
        scheduler = make_scheduler(driver, config, pool=CredentialPool())
        with pytest.raises(NoCredentialsError):
            scheduler.run_sync([PROFILE_URL])
        assert driver.started is False

    def test_configured_credentials_are_loaded(self):
        """Without an explicit pool the identities from the config are used."""
        config = make_config(
            concurrency=4, credentials=[["a"], ["b"]], require_credentials=True
        )
        scheduler = make_scheduler(FakeDriver(), config)
        assert scheduler.pool.count() == 2
        assert scheduler.pool_size() == 2

    def test_configured_credentials_are_bound(self):
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1], has_next=False)]},
        )
        config = make_config(credentials=[["a"]], require_credentials=True)
        make_scheduler(driver, config).run_sync([PROFILE_URL])
        assert driver.credentials_seen == [0]

    def test_needs_sink_or_pipeline(self):
        with pytest.raises(ValueError):
            ExecutionScheduler(make_config(), FakeDriver(), AdapterRegistry())


# ====================================================================
# 2. Page kinds
# ====================================================================

class TestPages:

    def test_paginated_profile(self):
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1, 2]), page([3], has_next=False)]},
        )
        sink = MemorySink()
        summary = make_scheduler(driver, sink=sink).run_sync([PROFILE_URL])

        assert ids(sink.items) == ["1", "2", "3"]
        assert summary.items_processed == 1
        assert summary.records_emitted == 3
        assert summary.stop_reasons == {"natgeo": "exhausted"}
        assert driver.started and driver.stopped
        assert driver.closed == 1

    def test_results_limit_from_config(self):
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1, 2, 3]), page([4, 5, 6]), page([7])]},
        )
        sink = MemorySink()
        summary = make_scheduler(driver, make_config(results_limit=4), sink=sink).run_sync(
            [PROFILE_URL]
        )
        assert ids(sink.items) == ["1", "2", "3", "4"]
        assert summary.stop_reasons["natgeo"] == "limit"
        assert len(driver.advance_calls) == 2

    def test_initial_batch_from_page_state(self):
        state = dict(PROFILE_STATE, initial={"items": [{"id": 9}], "has_next_page": True})
        driver = FakeDriver(
            pages={PROFILE_URL: state},
            scripts={PROFILE_URL: [page([10], has_next=False)]},
        )
        sink = MemorySink()
        make_scheduler(driver, sink=sink).run_sync([PROFILE_URL])
        assert ids(sink.items) == ["9", "10"]

    def test_detail_expansion(self):
        """A hashtag page enqueues its posts; each post yields one record."""
        tag_url = f"{BASE}/explore/tags/cats/"
        post_urls = [f"{BASE}/p/1/", f"{BASE}/p/2/"]
        pages = {
            tag_url: {
                "page_type": "hashtag",
                "entity_id": "cats",
                "detail_urls": post_urls + [f"{BASE}/p/1"],
                "detail_page_type": "post",
            },
        }
        for n, url in enumerate(post_urls, 1):
            pages[url] = {
                "page_type": "post",
                "entity_id": f"p{n}",
                "paginated": False,
                "record": {"id": f"p{n}", "text": f"post {n}"},
            }

        driver = FakeDriver(pages=pages)
        sink = MemorySink()
        summary = make_scheduler(driver, sink=sink).run_sync([tag_url])

        assert sorted(ids(sink.items)) == ["p1", "p2"]
        assert summary.stop_reasons == {"p1": "single", "p2": "single"}
        assert summary.items_processed == 3
        assert driver.opened == [tag_url] + post_urls
        assert driver.advance_calls == []

    def test_duplicate_seeds_are_processed_once(self):
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1], has_next=False)]},
        )
        summary = make_scheduler(driver).run_sync([PROFILE_URL, f"{BASE}/natgeo"])
        assert driver.opened == [PROFILE_URL]
        assert summary.items_processed == 1


# ====================================================================
# 3. Failures
# ====================================================================

class HangingDriver(FakeDriver):
    async def advance(self, handle, mode):
        self.advance_calls.append(handle["url"])
        await asyncio.sleep(10)


class SlowSink(MemorySink):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def emit(self, record):
        await asyncio.sleep(self.delay)
        await super().emit(record)


class TestFailures:

    def test_stalled_item_is_retried_then_recorded(self):
        """A page that never advances is retried, then lands in the sink as a failure."""
        driver = FakeDriver(pages={PROFILE_URL: PROFILE_STATE})
        sink = MemorySink()
        config = make_config(max_request_retries=2)
        summary = make_scheduler(driver, config, sink=sink).run_sync([PROFILE_URL])

        assert driver.opened == [PROFILE_URL] * 3
        assert summary.items_failed == 1
        assert sink.items == []
        failure = sink.failures[0]
        assert failure["#url"] == PROFILE_URL
        assert failure["#debug"]["retry_count"] == 2
        assert failure["#debug"]["error_type"] == "PageStalled"

    def test_not_found_is_not_retried(self):
        url = f"{BASE}/gone/"
        driver = FakeDriver(pages={url: {"page_type": "dont"}})
        sink = MemorySink()
        summary = make_scheduler(driver, sink=sink).run_sync([url])

        assert driver.opened == [url]
        assert summary.items_failed == 1
        assert sink.failures[0]["#debug"]["error_type"] == "NonRetryableError"

    def test_unknown_url_has_no_adapter(self):
        url = "https://elsewhere.test/page"
        sink = MemorySink()
        make_scheduler(FakeDriver(), sink=sink).run_sync([url])
        assert "No site adapter" in sink.failures[0]["#error"]

    def test_failure_does_not_stop_other_items(self):
        gone = f"{BASE}/gone/"
        driver = FakeDriver(
            pages={gone: {"page_type": "dont"}, PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1], has_next=False)]},
        )
        sink = MemorySink()
        summary = make_scheduler(driver, sink=sink).run_sync([gone, PROFILE_URL])
        assert ids(sink.items) == ["1"]
        assert summary.items_failed == 1
        assert summary.items_processed == 1

    def test_item_timeout(self):
        driver = HangingDriver(pages={PROFILE_URL: PROFILE_STATE})
        sink = MemorySink()
        config = make_config(item_timeout=0.05, max_request_retries=0)
        make_scheduler(driver, config, sink=sink).run_sync([PROFILE_URL])

        assert "timed out" in sink.failures[0]["#error"]
        assert driver.closed == 1

    def test_item_timeout_mid_batch_keeps_records(self):
        """A work item that times out while emitting still delivers its whole batch."""
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1, 2, 3], has_next=False)]},
        )
        sink = SlowSink(delay=0.05)
        config = make_config(item_timeout=0.08, max_request_retries=1)
        summary = make_scheduler(driver, config, sink=sink).run_sync([PROFILE_URL])

        assert ids(sink.items) == ["1", "2", "3"]
        assert sink.failures == []
        assert driver.opened == [PROFILE_URL] * 2
        assert summary.stop_reasons == {"natgeo": "exhausted"}
        assert summary.items_processed == 1

    def test_rate_limited_open_is_retried(self):
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1], has_next=False)]},
            open_errors={PROFILE_URL: [RateLimited("HTTP 429"), None]},
        )
        sink = MemorySink()
        make_scheduler(driver, sink=sink).run_sync([PROFILE_URL])
        assert driver.opened == [PROFILE_URL] * 2
        assert ids(sink.items) == ["1"]


# ====================================================================
# 4. Credentials
# ====================================================================

class TestCredentials:

    def test_identity_is_bound_and_rewarded(self):
        pool = CredentialPool(max_error_count=3)
        pool.load([[{"name": "sessionid"}]])
        pool.credentials[0].errors = 1
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1], has_next=False)]},
        )
        make_scheduler(driver, pool=pool).run_sync([PROFILE_URL])

        assert driver.credentials_seen == [0]
        assert pool.credentials[0].errors == 0
        assert pool.credentials[0].uses == 1

    def test_session_failures_exhaust_pool_and_abort(self):
        """The only identity burns its budget; the run aborts with NoCredentialsError."""
        pool = CredentialPool(max_error_count=1)
        pool.load([["cookie"]])
        driver = FakeDriver(pages={PROFILE_URL: {"login": True}})
        sink = MemorySink()
        config = make_config(require_credentials=True, max_error_count=1)
        scheduler = make_scheduler(driver, config, sink=sink, pool=pool)

        with pytest.raises(NoCredentialsError):
            scheduler.run_sync([PROFILE_URL])

        assert scheduler.aborted
        assert driver.opened == [PROFILE_URL]
        assert pool.usable_count() == 0
        assert sink.failures[0]["#debug"]["error_type"] == "RunAborted"
        assert driver.stopped

    def test_optional_identity_failure_keeps_running(self):
        pool = CredentialPool(max_error_count=1)
        pool.load([["cookie"]])
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1], has_next=False)]},
            open_errors={PROFILE_URL: [SessionInvalid("redirected to login")]},
        )
        sink = MemorySink()
        make_scheduler(driver, sink=sink, pool=pool).run_sync([PROFILE_URL])

        assert driver.credentials_seen == [0, None]
        assert ids(sink.items) == ["1"]


# ====================================================================
# 5. Resume, hooks, wiring
# ====================================================================

class TestResumeAndHooks:

    def test_resume_skips_seen_ids(self):
        backend = MemoryCheckpointBackend()
        backend.save("default", {"natgeo": ScrollState(seen_ids={"1", "2"}).to_dict()})
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1, 2, 3], has_next=False)]},
        )
        sink = MemorySink()
        make_scheduler(
            driver, sink=sink, checkpoint=CheckpointStore(backend)
        ).run_sync([PROFILE_URL])

        assert ids(sink.items) == ["3"]
        assert backend.snapshots["default"]["natgeo"]["seen_ids"] == ["1", "2", "3"]

    def test_lifecycle_labels(self):
        labels = []
        pipeline = OutputPipeline(MemorySink(), lifecycle_fn=lambda label, ctx: labels.append(label))
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1], has_next=False)]},
        )
        make_scheduler(driver, pipeline=pipeline).run_sync([PROFILE_URL])
        assert labels == ["START", "HANDLE", "FINISH"]

    def test_map_hook_can_enqueue(self):
        other = f"{BASE}/nasa/"

        async def follow(raw, ctx):
            if raw["id"] == "1":
                ctx.helpers["enqueue"](other, page_type="user")
            return raw

        sink = MemorySink()
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE,
                   other: {"page_type": "user", "entity_id": "nasa"}},
            scripts={PROFILE_URL: [page([1], has_next=False)],
                     other: [page([2], has_next=False)]},
        )
        summary = make_scheduler(
            driver, pipeline=OutputPipeline(sink, map_fn=follow)
        ).run_sync([PROFILE_URL])

        assert ids(sink.items) == ["1", "2"]
        assert set(summary.stop_reasons) == {"natgeo", "nasa"}

    def test_work_item_seed_keeps_limit(self):
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1, 2, 3])]},
        )
        sink = MemorySink()
        make_scheduler(driver, sink=sink).run_sync([WorkItem(url=PROFILE_URL, limit=2)])
        assert ids(sink.items) == ["1", "2"]

    def test_from_config_wires_json_checkpoints(self, tmp_path):
        config = make_config(
            checkpoint_dir=str(tmp_path / "checkpoints"),
            run_id="weekly",
            credentials=[[{"name": "sessionid", "value": "abc"}]],
            credential_state_path=str(tmp_path / "credentials.json"),
        )
        driver = FakeDriver(
            pages={PROFILE_URL: PROFILE_STATE},
            scripts={PROFILE_URL: [page([1], has_next=False)]},
        )
        scheduler = ExecutionScheduler.from_config(
            config, driver, AdapterRegistry([FakeAdapter()]), MemorySink(),
            monitor=RunMonitor(report_interval=0), sleep=SleepRecorder(),
        )
        scheduler.poll_interval = 0.05
        scheduler.run_sync([PROFILE_URL])

        assert driver.credentials_seen == [0]
        checkpoint = JsonFileCheckpointBackend(str(tmp_path / "checkpoints")).load("weekly")
        assert checkpoint["natgeo"]["seen_ids"] == ["1"]
        assert (tmp_path / "credentials.json").exists()
