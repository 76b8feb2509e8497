"""Tests for settings and logging configuration."""

import json
import logging
from datetime import timedelta

import pytest
from pydantic import ValidationError

from config import EngineSettings, configure_logging
from config.logging import JSONFormatter
from engine import RetryPolicy


class TestEngineSettings:
    """Tests for EngineSettings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("AUTOMATIONS_WORKER_COUNT", raising=False)
        settings = EngineSettings(_env_file=None)

        assert settings.worker_count == 4
        assert settings.lease_ttl == timedelta(minutes=5)
        assert settings.database_url is None
        assert settings.log_format == "text"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("AUTOMATIONS_WORKER_COUNT", "12")
        monkeypatch.setenv("AUTOMATIONS_LOG_LEVEL", "debug")

        settings = EngineSettings(_env_file=None)

        assert settings.worker_count == 12
        assert settings.log_level == "DEBUG"

    def test_retry_policy(self):
        policy = EngineSettings(_env_file=None, retry_max_retries=2, retry_base_delay=0.5).retry_policy()

        assert policy.max_retries == 2
        assert policy.base_delay == 0.5
        assert policy.max_delay == 30.0

    def test_lease_must_outlast_retries(self):
        with pytest.raises(ValidationError, match="lease_ttl_seconds"):
            EngineSettings(_env_file=None, lease_ttl_seconds=60)

        settings = EngineSettings(_env_file=None, lease_ttl_seconds=60, network_timeout_seconds=5, retry_max_retries=2)
        assert settings.lease_ttl == timedelta(minutes=1)

    def test_worst_case_retry_time(self):
        policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0, jitter=False)

        # Four timed-out attempts plus backoffs of 1, 2 and 4 seconds.
        assert policy.worst_case_seconds(10) == 47
        assert RetryPolicy(max_retries=0).worst_case_seconds(10) == 10

    @pytest.mark.parametrize("field, value", [("log_level", "CHATTY"), ("worker_count", 0), ("log_format", "xml")])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            EngineSettings(_env_file=None, **{field: value})


class TestLogging:
    """Tests for configure_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_formatter_adds_context(self):
        record = logging.LogRecord("engine.scheduler", logging.INFO, __file__, 1, "step %s done", ("s1",), None)
        record.enrollment_id = "enr-1"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "step s1 done"
        assert data["level"] == "INFO"
        assert data["enrollment_id"] == "enr-1"
        assert "automation_id" not in data

    def test_configure_logging_installs_one_handler(self):
        configure_logging("WARNING", "json")
        configure_logging("DEBUG", "json")

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
