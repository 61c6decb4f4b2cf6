"""Tests for logger.py: setup_logging() and JsonFormatter.

Covers:
- CLI mode logging (stderr handler)
- MCP mode logging (file handler only)
- Level precedence: debug flag > LOG_LEVEL > config level > mode default
- JSON formatter output and run context fields
- Third-party logger silencing

Strategy: Mock logging.basicConfig to verify setup_logging passes correct args,
since pytest's log capture plugin interferes with actual basicConfig calls.
"""

import json
import logging
import sys
from unittest.mock import patch

import pytest

from atpar_sync.logger import JsonFormatter, setup_logging


@pytest.fixture(autouse=True)
def _no_log_env(monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("LOG_FILE", raising=False)


def _close_files(handlers):
    for h in handlers:
        if isinstance(h, logging.FileHandler):
            h.close()


def _record(msg="Hello %s", args=("world",), level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


# ---------------------------------------------------------------------------
# setup_logging tests
# ---------------------------------------------------------------------------


class TestSetupLogging:
    """Tests for setup_logging()."""

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_cli_mode_logs_to_stderr(self, mock_basic):
        """CLI mode passes StreamHandler(stderr) to basicConfig."""
        setup_logging(mode="cli")

        mock_basic.assert_called_once()
        handlers = mock_basic.call_args[1]["handlers"]
        assert len(handlers) == 1
        assert handlers[0].stream is sys.stderr

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_mcp_mode_logs_to_file_only(self, mock_basic, tmp_path):
        """MCP mode never writes to a stream: stdout carries JSON-RPC."""
        log_file = tmp_path / "mcp.log"
        setup_logging(mode="mcp", log_file=str(log_file))

        handlers = mock_basic.call_args[1]["handlers"]
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.FileHandler)
        assert handlers[0].baseFilename == str(log_file)
        _close_files(handlers)

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_mcp_mode_log_file_from_env(self, mock_basic, tmp_path, monkeypatch):
        log_file = tmp_path / "env.log"
        monkeypatch.setenv("LOG_FILE", str(log_file))
        setup_logging(mode="mcp")

        handlers = mock_basic.call_args[1]["handlers"]
        assert handlers[0].baseFilename == str(log_file)
        _close_files(handlers)

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_cli_mode_with_log_file(self, mock_basic, tmp_path):
        """CLI mode with log_file creates both stderr and file handlers."""
        setup_logging(mode="cli", log_file=str(tmp_path / "cli.log"))

        handlers = mock_basic.call_args[1]["handlers"]
        file_handlers = [h for h in handlers if isinstance(h, logging.FileHandler)]
        assert len(handlers) == 2
        assert len(file_handlers) == 1
        _close_files(handlers)

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_debug_overrides_level(self, mock_basic, monkeypatch):
        """debug=True wins over LOG_LEVEL."""
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        setup_logging(mode="cli", debug=True)

        assert mock_basic.call_args[1]["level"] == logging.DEBUG

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_env_log_level_beats_config_level(self, mock_basic, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        setup_logging(mode="cli", level="DEBUG")

        assert mock_basic.call_args[1]["level"] == logging.ERROR

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_config_level_used_when_env_unset(self, mock_basic):
        setup_logging(mode="cli", level="warning")

        assert mock_basic.call_args[1]["level"] == logging.WARNING

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_mode_defaults(self, mock_basic, tmp_path):
        """CLI defaults to INFO, MCP to WARNING."""
        setup_logging(mode="cli")
        assert mock_basic.call_args[1]["level"] == logging.INFO

        setup_logging(mode="mcp", log_file=str(tmp_path / "m.log"))
        assert mock_basic.call_args[1]["level"] == logging.WARNING
        _close_files(mock_basic.call_args[1]["handlers"])

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_unknown_level_falls_back_to_info(self, mock_basic, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "CHATTY")
        setup_logging(mode="cli")

        assert mock_basic.call_args[1]["level"] == logging.INFO

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_json_format_uses_json_formatter(self, mock_basic):
        setup_logging(mode="cli", log_format="json")

        handlers = mock_basic.call_args[1]["handlers"]
        assert all(isinstance(h.formatter, JsonFormatter) for h in handlers)

    @patch("atpar_sync.logger.logging.basicConfig")
    def test_third_party_silenced(self, _mock_basic):
        """Non-DEBUG mode silences urllib3/requests loggers."""
        setup_logging(mode="cli")

        assert logging.getLogger("urllib3").level == logging.WARNING
        assert logging.getLogger("requests").level == logging.WARNING


# ---------------------------------------------------------------------------
# JsonFormatter tests
# ---------------------------------------------------------------------------


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_basic_output(self):
        """Formatted output is valid single-line JSON with required keys."""
        output = JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S").format(_record())
        data = json.loads(output)

        assert "\n" not in output
        assert "ts" in data
        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert data["msg"] == "Hello world"

    def test_run_context_fields_included(self):
        record = _record()
        record.team_id = "alpha"
        record.history_id = "abc123"

        data = json.loads(JsonFormatter().format(record))

        assert data["team_id"] == "alpha"
        assert data["history_id"] == "abc123"
        assert "system" not in data

    def test_includes_exception(self):
        """Exception info is included in 'exc' key."""
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        record = _record("failed", (), logging.ERROR, exc_info)
        data = json.loads(JsonFormatter().format(record))

        assert "ValueError" in data["exc"]
        assert "test error" in data["exc"]
