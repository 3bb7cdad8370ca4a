"""
Tests for configuration loading and structured logging.

Usage:
    pytest tests/test_config.py -v
"""

import json
import logging

import pytest

from crm_ai.config import CacheConfig, RateLimitConfig, RetrievalConfig, Settings, TimeoutConfig
from crm_ai.logging_config import JSONFormatter, RequestTextFormatter, setup_logging


class TestSettings:

    def test_defaults(self, monkeypatch):
        for key in ("AI_REQUESTS_PER_DAY", "CACHE_TTL_SECONDS", "RETRIEVAL_DEFAULT_K", "TIMEOUT_GENERATION"):
            monkeypatch.delenv(key, raising=False)

        settings = Settings()

        assert settings.rate_limit.requests_per_day == 500
        assert settings.cache.ttl_seconds == 900
        assert settings.retrieval.default_k == 5
        assert settings.timeouts.generation == 15.0
        assert settings.confidence.fallback_score == 20

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("AI_REQUESTS_PER_DAY", "25")
        monkeypatch.setenv("TIMEOUT_EMBEDDING", "2.5")
        monkeypatch.setenv("UPSTREAM_MAX_RETRIES", "0")

        assert RateLimitConfig().requests_per_day == 25
        assert TimeoutConfig().embedding == 2.5
        assert TimeoutConfig().max_retries == 0

    def test_invalid_integer(self, monkeypatch):
        monkeypatch.setenv("CACHE_TTL_SECONDS", "fifteen")
        with pytest.raises(ValueError):
            CacheConfig()

    @pytest.mark.parametrize("factory", [
        lambda: RateLimitConfig(requests_per_day=0),
        lambda: RateLimitConfig(backend="memcached"),
        lambda: CacheConfig(ttl_seconds=0),
        lambda: RetrievalConfig(vector_weight=1.5),
        lambda: RetrievalConfig(backend="faiss"),
    ])
    def test_validation(self, factory):
        with pytest.raises(ValueError):
            factory()

    def test_production_flag(self):
        assert Settings(environment="prod").is_production() is True
        assert Settings(environment="development").is_production() is False


class TestJSONFormatter:

    def test_context_fields_included(self):
        record = logging.LogRecord("crm_ai.test", logging.INFO, __file__, 1, "AI request %s", ("done",), None)
        record.request_id = "abc"
        record.feature = "deal_coach"

        payload = json.loads(JSONFormatter().format(record))

        assert payload["msg"] == "AI request done"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "crm_ai.test"
        assert payload["request_id"] == "abc"
        assert payload["feature"] == "deal_coach"
        assert "user_id" not in payload

    def test_timestamp_comes_from_the_record(self):
        record = logging.LogRecord("crm_ai.test", logging.WARNING, __file__, 1, "slow", (), None)
        record.created = 0.0

        payload = json.loads(JSONFormatter().format(record))

        assert payload["ts"].startswith("1970-01-01T00:00:00")


class TestSetupLogging:

    def teardown_method(self):
        logging.basicConfig(level=logging.WARNING, force=True)

    def test_text_lines_tagged_with_request_id(self):
        formatter = RequestTextFormatter("%(levelname)s %(message)s")
        record = logging.LogRecord("crm_ai.test", logging.INFO, __file__, 1, "cache hit", (), None)
        record.request_id = "abc"

        assert formatter.format(record) == "INFO cache hit [abc]"

    def test_json_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "crm_ai.log"

        setup_logging(level="debug", json_output=True, log_file=str(log_file))
        logging.getLogger("crm_ai.test").info("AI request done", extra={"request_id": "r1"})
        for handler in logging.getLogger().handlers:
            handler.flush()

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert logging.getLogger("openai").level == logging.WARNING
        lines = log_file.read_text().splitlines()
        assert json.loads(lines[-1])["request_id"] == "r1"
