"""Tests for structured logging configuration."""

import json
import logging
import sys

import pytest

from monitor.logging_config import JSONFormatter, configure_logging


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestJSONFormatter:
    def test_includes_request_extras(self):
        record = logging.LogRecord("monitor.app", logging.INFO, __file__, 10, "GET /healthz", None, None)
        record.request_id = "abc123"
        record.status_code = 200

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "GET /healthz"
        assert entry["level"] == "INFO"
        assert entry["request_id"] == "abc123"
        assert entry["status_code"] == 200
        assert entry["timestamp"].endswith("Z")

    def test_exception_rendered(self):
        try:
            raise ValueError("bad metric")
        except ValueError:
            record = logging.LogRecord("core.ingest", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: bad metric" in entry["exception"]


class TestConfigureLogging:
    def test_json_console(self):
        root = configure_logging("debug", "json")
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_text_console_and_json_file(self, tmp_path):
        root = configure_logging("WARNING", "text", str(tmp_path / "monitor.log"))
        console, rotating = root.handlers
        assert not isinstance(console.formatter, JSONFormatter)
        assert isinstance(rotating.formatter, JSONFormatter)
        rotating.close()

    def test_quiets_access_log(self):
        configure_logging()
        assert logging.getLogger("aiohttp.access").level == logging.WARNING
