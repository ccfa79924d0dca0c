"""
Tests for the logging module.

This test module validates:
- JSON-formatted structured logging output
- Logger configuration and setup
- Log level handling
- Extra fields in log entries
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from io import StringIO

import pytest

from lyrebird_updater.config import LoggingConfig
from lyrebird_updater.logging import (
    ROOT_LOGGER_NAME,
    JSONFormatter,
    get_logger,
    setup_logging,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> Iterator[None]:
    """Clean up loggers after each test (autouse fixture)."""
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


def _record(msg: str, *args: object) -> logging.LogRecord:
    return logging.LogRecord(
        name="test_logger",
        level=logging.INFO,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=args,
        exc_info=None,
    )


# =============================================================================
# Tests for JSONFormatter
# =============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_format_basic_log_record(self) -> None:
        """Test formatting a basic log record as JSON."""
        parsed = json.loads(JSONFormatter().format(_record("Update started")))

        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test_logger"
        assert parsed["message"] == "Update started"
        assert "timestamp" in parsed

    def test_format_with_extra_fields(self) -> None:
        """Test extra fields become top-level keys."""
        record = _record("Switching")
        record.target = "v1.2.0"
        record.attempt = 2

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["target"] == "v1.2.0"
        assert parsed["attempt"] == 2

    def test_format_with_message_args(self) -> None:
        """Test formatting with message arguments."""
        parsed = json.loads(JSONFormatter().format(_record("Value is %d", 42)))

        assert parsed["message"] == "Value is 42"
        assert "args" not in parsed

    def test_format_with_exception(self) -> None:
        """Test formatting with exception info."""
        try:
            raise ValueError("Test error")
        except ValueError:
            record = logging.LogRecord(
                name="test_logger",
                level=logging.ERROR,
                pathname="test.py",
                lineno=10,
                msg="Failed",
                args=(),
                exc_info=sys.exc_info(),
            )

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError: Test error" in parsed["exception"]

    def test_none_extras_are_dropped(self) -> None:
        """Test extra fields set to None are omitted."""
        record = _record("Lock acquired")
        record.holder_pid = None

        parsed = json.loads(JSONFormatter().format(record))

        assert "holder_pid" not in parsed


# =============================================================================
# Tests for setup_logging and get_logger
# =============================================================================


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_default_level(self) -> None:
        """Test setup_logging defaults to INFO."""
        logger = setup_logging()

        assert logger.name == ROOT_LOGGER_NAME
        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1

    def test_no_duplicate_handlers(self) -> None:
        """Test repeated setup does not stack handlers."""
        setup_logging()
        logger = setup_logging()

        assert len(logger.handlers) == 1

    def test_config_debug_mode_forces_debug(self) -> None:
        """Test debug_mode overrides the configured level."""
        logger = setup_logging(LoggingConfig(level="error", debug_mode=True))

        assert logger.level == logging.DEBUG

    def test_json_output(self) -> None:
        """Test JSON lines are written through the configured handler."""
        logger = setup_logging(LoggingConfig(json_format=True))
        stream = StringIO()
        logger.handlers[0].setStream(stream)

        get_logger("updates.engine").info("Now on: v2.0.0", extra={"version": "v2.0.0"})

        parsed = json.loads(stream.getvalue().strip())
        assert parsed["logger"] == "lyrebird_updater.updates.engine"
        assert parsed["version"] == "v2.0.0"

    def test_text_output_filters_level(self) -> None:
        """Test messages below the level are not written."""
        logger = setup_logging(level="warning")
        stream = StringIO()
        logger.handlers[0].setStream(stream)

        get_logger("x").info("hidden")
        get_logger("x").warning("shown")

        output = stream.getvalue()
        assert "hidden" not in output
        assert "[WARNING] lyrebird_updater.x: shown" in output


class TestGetLogger:
    """Tests for get_logger function."""

    def test_prefix_added(self) -> None:
        """Test module names are placed under the package logger."""
        assert get_logger("cli").name == "lyrebird_updater.cli"

    def test_prefix_not_duplicated(self) -> None:
        """Test __name__ of package modules is used as-is."""
        assert get_logger("lyrebird_updater.git").name == "lyrebird_updater.git"
