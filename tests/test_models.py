"""
Tests for the data model: time range parsing/normalisation, entities and
failure records.
"""

from datetime import datetime, timedelta, timezone

import pytest

from feedcrawler.errors import ConfigError, PageStalled
from feedcrawler.models import (
    Entity,
    FailureRecord,
    PageType,
    ScrollState,
    TimeRange,
    WorkItem,
    parse_time_unit,
    to_datetime,
)


NOW = datetime(2024, 6, 1, 12, 30, tzinfo=timezone.utc)


class TestParseTimeUnit:

    def test_today_and_yesterday_are_start_of_day(self):
        assert parse_time_unit("today", NOW) == datetime(2024, 6, 1, tzinfo=timezone.utc)
        assert parse_time_unit("Yesterday", NOW) == datetime(2024, 5, 31, tzinfo=timezone.utc)

    @pytest.mark.parametrize("text,delta", [
        ("3 days", timedelta(days=3)),
        ("1 day", timedelta(days=1)),
        ("12 hours", timedelta(hours=12)),
        ("2weeks", timedelta(weeks=2)),
        ("1 month", timedelta(days=30)),
        ("1 year", timedelta(days=365)),
    ])
    def test_relative_amounts(self, text, delta):
        assert parse_time_unit(text, NOW) == NOW - delta

    def test_iso_and_epoch(self):
        assert parse_time_unit("2024-01-02T03:04:05Z", NOW) == datetime(
            2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc
        )
        assert parse_time_unit(0, NOW) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_empty_is_none(self):
        assert parse_time_unit(None, NOW) is None
        assert parse_time_unit("", NOW) is None

    def test_garbage_is_config_error(self):
        with pytest.raises(ConfigError):
            parse_time_unit("next tuesday-ish", NOW)


class TestToDatetime:

    def test_epoch_milliseconds(self):
        assert to_datetime(1_700_000_000_000) == to_datetime(1_700_000_000)

    def test_naive_datetime_becomes_utc(self):
        naive = datetime(2024, 1, 1, 10, 0)
        assert to_datetime(naive).tzinfo == timezone.utc

    def test_digit_string(self):
        assert to_datetime("1700000000") == to_datetime(1_700_000_000)


class TestTimeRange:

    def test_inverted_bounds_are_swapped(self):
        """min after max is normalised, never rejected."""
        early = NOW - timedelta(days=2)
        window = TimeRange(min=NOW, max=early)
        assert window.min == early
        assert window.max == NOW
        assert window.min <= window.max

    def test_from_values_accepts_relative(self):
        window = TimeRange.from_values("yesterday", "today", now=NOW)
        assert window.contains(NOW - timedelta(hours=20))
        assert window.is_outside(NOW)

    def test_open_ended(self):
        window = TimeRange(min=NOW)
        assert window.is_set
        assert window.contains(NOW + timedelta(days=365))
        assert not TimeRange().is_set


class TestEntity:

    def test_empty_id_rejected(self):
        with pytest.raises(ConfigError):
            Entity("", PageType.PROFILE)

    def test_default_label_and_limit(self):
        entity = Entity("natgeo", PageType.HASHTAG)
        assert entity.label == "Hashtag natgeo"
        assert not entity.limit_reached(10 ** 9)
        assert Entity("x", PageType.POST, limit=2).limit_reached(2)

    def test_terminal_page_types(self):
        assert PageType.NOT_FOUND.is_terminal
        assert PageType.CHALLENGE.is_terminal
        assert not PageType.PROFILE.is_terminal


class TestFailureRecord:

    def test_shape(self):
        item = WorkItem(url="https://feed.test/gone/", label="detail", retry_count=3)
        record = FailureRecord.from_error(item, PageStalled(attempts=5)).to_dict()
        assert record["#url"] == "https://feed.test/gone/"
        assert "5 attempts" in record["#error"]
        assert record["#debug"] == {
            "label": "detail",
            "retry_count": 3,
            "error_type": "PageStalled",
        }

    def test_scroll_state_round_trip_keeps_flags(self):
        state = ScrollState(seen_ids={"a"}, reached_boundary=True, emitted_count=1)
        restored = ScrollState.from_dict(state.to_dict())
        assert restored == state
