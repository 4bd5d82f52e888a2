"""
Tests for EngineRunConfig: defaults, validation, mapping/env loading and
derived settings.
"""

import logging
import os
from datetime import datetime, timedelta, timezone

import pytest

from feedcrawler.errors import ConfigError
from feedcrawler.pagination import PaginationSettings
from feedcrawler.run_config import EngineRunConfig


@pytest.fixture
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("FEEDCRAWL_"):
            monkeypatch.delenv(key)
    return monkeypatch


class TestDefaults:

    def test_defaults(self):
        config = EngineRunConfig()
        assert config.concurrency == 4
        assert config.max_error_count == 3
        assert config.results_limit is None
        assert config.credentials == []
        assert config.require_credentials is False
        assert config.run_id == "default"

    @pytest.mark.parametrize("kwargs", [
        {"concurrency": 0},
        {"max_error_count": 0},
        {"results_limit": -1},
        {"max_request_retries": -1},
        {"max_stall_attempts": 0},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ConfigError):
            EngineRunConfig(**kwargs)


class TestFromDict:

    def test_known_keys_applied(self):
        config = EngineRunConfig.from_dict({"concurrency": 2, "results_limit": 50})
        assert config.concurrency == 2
        assert config.results_limit == 50

    def test_unknown_keys_ignored(self, caplog):
        config = EngineRunConfig.from_dict({"concurrency": 2, "proxy": "socks5://x"})
        assert config.concurrency == 2
        assert "Ignoring unknown option 'proxy'" in caplog.text


class TestFromEnv:

    def test_reads_prefixed_variables(self, clean_env):
        clean_env.setenv("FEEDCRAWL_CONCURRENCY", "6")
        clean_env.setenv("FEEDCRAWL_RATE_LIMIT_BASE_DELAY", "2.5")
        clean_env.setenv("FEEDCRAWL_REQUIRE_CREDENTIALS", "yes")
        clean_env.setenv("FEEDCRAWL_CREDENTIALS", '[[{"name": "sessionid", "value": "a"}]]')
        clean_env.setenv("FEEDCRAWL_MIN_DATE", "2 days")

        config = EngineRunConfig.from_env(env_file="/nonexistent/.env")
        assert config.concurrency == 6
        assert config.rate_limit_base_delay == 2.5
        assert config.require_credentials is True
        assert config.credentials == [[{"name": "sessionid", "value": "a"}]]
        assert config.min_date == "2 days"

    def test_dotenv_file_and_overrides(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("FEEDCRAWL_RESULTS_LIMIT=25\nFEEDCRAWL_RUN_ID=weekly\n", encoding="utf-8")
        # load_dotenv writes to os.environ; make monkeypatch undo it
        for key in ("FEEDCRAWL_RESULTS_LIMIT", "FEEDCRAWL_RUN_ID"):
            clean_env.setenv(key, "")
            clean_env.delenv(key)

        config = EngineRunConfig.from_env(env_file=str(env_file), run_id="override")
        assert config.results_limit == 25
        assert config.run_id == "override"

    def test_bad_value_is_config_error(self, clean_env):
        clean_env.setenv("FEEDCRAWL_CONCURRENCY", "many")
        with pytest.raises(ConfigError):
            EngineRunConfig.from_env(env_file="/nonexistent/.env")


class TestDerived:

    def test_effective_concurrency(self):
        assert EngineRunConfig(concurrency=4).effective_concurrency(1) == 4
        required = EngineRunConfig(concurrency=4, require_credentials=True)
        assert required.effective_concurrency(2) == 2
        assert required.effective_concurrency(10) == 4
        assert required.effective_concurrency(0) == 0

    def test_time_range_is_normalised(self):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        window = EngineRunConfig(min_date="today", max_date="3 days").time_range(now)
        assert window.min == now - timedelta(days=3)
        assert window.max == now

    def test_pagination_settings_slice(self):
        config = EngineRunConfig(advance_timeout=5, max_stall_attempts=2, max_duplicate_batches=7)
        settings = config.pagination_settings()
        assert isinstance(settings, PaginationSettings)
        assert settings.advance_timeout == 5
        assert settings.max_stall_attempts == 2
        assert settings.max_duplicate_batches == 7

    def test_log_summary_hides_credentials(self, caplog):
        caplog.set_level(logging.INFO)
        EngineRunConfig(credentials=[["secret-cookie"]]).log_summary(seeds=3)
        assert "ENGINE RUN CONFIG" in caplog.text
        assert "1 configured" in caplog.text
        assert "secret-cookie" not in caplog.text
