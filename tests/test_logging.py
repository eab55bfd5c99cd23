"""Tests for structured logging configuration."""

import io
import json
import logging
import sys
from unittest.mock import patch

from verbaguard.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    current_request_id,
    get_log_context,
    get_logger,
    get_logging_config,
    set_request_id,
)


def _record(msg="Test message", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert data["location"] == "test:1"
        assert "timestamp" in data

    def test_json_format_with_context(self):
        record = _record(
            request_id="req-1",
            identifier="user:42:/api/translate",
            policy="translation",
            strategy="fixed_window",
        )

        data = json.loads(JSONFormatter().format(record))

        assert data["request_id"] == "req-1"
        assert data["identifier"] == "user:42:/api/translate"
        assert data["policy"] == "translation"
        assert data["strategy"] == "fixed_window"

    def test_none_context_omitted(self):
        data = json.loads(JSONFormatter().format(_record(policy=None)))
        assert "policy" not in data

    def test_json_format_with_extra_fields(self):
        data = json.loads(JSONFormatter().format(_record(store="InMemoryStore")))
        assert data["extra"]["store"] == "InMemoryStore"

    def test_no_extra_key_without_extra_fields(self):
        data = json.loads(JSONFormatter().format(_record(policy="login")))
        assert "extra" not in data
        assert data["policy"] == "login"

    def test_json_format_with_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                name="test",
                level=logging.ERROR,
                pathname="test.py",
                lineno=1,
                msg="Failed",
                args=(),
                exc_info=sys.exc_info(),
            )

        data = json.loads(JSONFormatter().format(record))

        assert data["exception"].startswith("Traceback")
        assert "ValueError: boom" in data["exception"]

    def test_json_format_unicode(self):
        data = json.loads(JSONFormatter().format(_record("Übersetzung für 日本語")))
        assert data["message"] == "Übersetzung für 日本語"


class TestContextFilter:
    """Test context filter defaults."""

    def test_adds_default_fields(self):
        record = _record()

        assert ContextFilter().filter(record) is True

        for field in ("request_id", "identifier", "policy", "strategy", "client_ip"):
            assert hasattr(record, field)
        assert record.policy is None

    def test_preserves_existing_values(self):
        record = _record(policy="login")
        ContextFilter().filter(record)
        assert record.policy == "login"

    def test_request_id_from_context(self):
        set_request_id("req-ctx")
        try:
            record = _record()
            ContextFilter().filter(record)
            assert record.request_id == "req-ctx"
        finally:
            set_request_id(None)

        assert current_request_id() is None


class TestGetLoggingConfig:
    """Test logging configuration generation."""

    def test_default_text_format(self):
        with patch("verbaguard.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "text"
            mock_settings.log_level = "INFO"

            config = get_logging_config()

        assert config["formatters"]["default"]["format"].endswith("%(message)s")
        assert config["handlers"]["console"]["formatter"] == "default"

    def test_structured_format(self):
        with patch("verbaguard.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "structured"
            mock_settings.log_level = "DEBUG"

            config = get_logging_config()

        assert "identifier=%(identifier)s" in config["formatters"]["default"]["format"]
        assert config["handlers"]["console"]["level"] == "DEBUG"

    def test_json_format(self):
        with patch("verbaguard.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "WARNING"

            config = get_logging_config()

        assert config["formatters"]["default"]["()"] is JSONFormatter
        assert config["loggers"]["verbaguard"]["level"] == "WARNING"

    def test_context_filter_added(self):
        config = get_logging_config()
        assert "context" in config["handlers"]["console"]["filters"]


class TestGetLogContext:
    """Test get_log_context helper function."""

    def test_basic_context(self):
        context = get_log_context(
            identifier="ip:1.2.3.4:/api/auth/login",
            policy="login",
            strategy="sliding_window",
        )

        assert context == {
            "identifier": "ip:1.2.3.4:/api/auth/login",
            "policy": "login",
            "strategy": "sliding_window",
        }

    def test_context_filters_none(self):
        context = get_log_context(identifier="user:1", policy=None, client_ip=None)
        assert context == {"identifier": "user:1"}

    def test_context_with_extra(self):
        context = get_log_context(policy="login", status_code=429)
        assert context["status_code"] == 429


class TestIntegration:
    """Logging a rate limit decision end to end."""

    def test_json_logging_output(self):
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JSONFormatter())
        handler.addFilter(ContextFilter())
        logger = get_logger("verbaguard.tests.integration")
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

        set_request_id("req-42")
        try:
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(identifier="user:42:/api/translate", policy="translation"),
            )
        finally:
            set_request_id(None)
            logger.removeHandler(handler)

        data = json.loads(stream.getvalue())
        assert data["level"] == "WARNING"
        assert data["request_id"] == "req-42"
        assert data["policy"] == "translation"

    def test_structured_text_output(self):
        with patch("verbaguard.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "structured"
            mock_settings.log_level = "INFO"
            config = get_logging_config()

        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(logging.Formatter(config["formatters"]["default"]["format"]))
        handler.addFilter(ContextFilter())
        logger = get_logger("verbaguard.tests.structured")
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

        try:
            logger.info("Rate limit state reset", extra=get_log_context(policy="login"))
        finally:
            logger.removeHandler(handler)

        line = stream.getvalue()
        assert "policy=login" in line
        assert "identifier=None" in line
