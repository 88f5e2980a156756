"""Tests for structured logging configuration."""

import json
import logging
import sys
from unittest.mock import patch

from backend.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
    setup_logging,
)


def make_record(msg="Test message", level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_json_format_with_context(self):
        record = make_record("Rate limit exceeded")
        record.client_ip = "10.0.0.1"
        record.key_prefix = "login"
        record.user_id = "42"

        data = json.loads(JSONFormatter().format(record))

        assert data["client_ip"] == "10.0.0.1"
        assert data["key_prefix"] == "login"
        assert data["user_id"] == "42"
        assert "extra" not in data

    def test_json_format_with_extra_fields(self):
        record = make_record("Custom event")
        record.attempt = 2

        data = json.loads(JSONFormatter().format(record))

        assert data["extra"]["attempt"] == 2

    def test_json_format_with_exception(self):
        try:
            raise ValueError("Test error")
        except ValueError:
            record = make_record("Error occurred", logging.ERROR, sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        exception_text = "".join(data["exception"])
        assert "ValueError" in exception_text
        assert "Test error" in exception_text

    def test_unset_context_fields_omitted(self):
        record = make_record()
        ContextFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert "client_ip" not in data
        assert "extra" not in data


class TestContextFilter:
    def test_adds_default_fields(self):
        record = make_record()

        assert ContextFilter().filter(record) is True
        for field in JSONFormatter.CONTEXT_FIELDS:
            assert hasattr(record, field)

    def test_preserves_existing_values(self):
        record = make_record()
        record.key_prefix = "signup"

        ContextFilter().filter(record)

        assert record.key_prefix == "signup"


class TestGetLoggingConfig:
    """Test logging configuration generation."""

    def test_default_text_format(self):
        with patch("backend.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "text"
            mock_settings.log_level = "INFO"

            config = get_logging_config()

        assert "json" not in config["formatters"]
        assert config["handlers"]["console"]["formatter"] == "standard"

    def test_json_format(self):
        with patch("backend.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "WARNING"

            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["handlers"]["console"]["level"] == "WARNING"

    def test_client_and_server_loggers_configured(self):
        config = get_logging_config()

        assert "backend" in config["loggers"]
        assert "mobile" in config["loggers"]
        assert "context" in config["handlers"]["console"]["filters"]


def test_get_logger_default_name():
    assert get_logger().name == "backend"


def test_log_context_filters_none():
    context = get_log_context(client_ip="10.0.0.1", user_id=None, attempt=3)

    assert context == {"client_ip": "10.0.0.1", "attempt": 3}


def test_json_logging_output(capsys):
    with patch("backend.app.core.logging.settings") as mock_settings:
        mock_settings.log_format = "json"
        mock_settings.log_level = "INFO"

        setup_logging()
        get_logger("backend.test").warning(
            "Rate limit exceeded",
            extra=get_log_context(client_ip="10.0.0.1", key_prefix="login"),
        )

    data = json.loads(capsys.readouterr().out.strip())
    assert data["level"] == "WARNING"
    assert data["logger"] == "backend.test"
    assert data["client_ip"] == "10.0.0.1"
    assert data["key_prefix"] == "login"
