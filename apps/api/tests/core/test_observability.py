"""
Tests for logging setup.
"""

import json
import logging
import sys

import pytest

from jv_backend.core.observability import JsonFormatter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="jv_backend.core.errors",
        level=logging.ERROR,
        pathname=__file__,
        lineno=1,
        msg="SERVER_ERROR: %s",
        args=("db down",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for the production formatter."""

    def test_basic_fields(self):
        payload = json.loads(JsonFormatter().format(_record()))

        assert payload["level"] == "error"
        assert payload["logger"] == "jv_backend.core.errors"
        assert payload["message"] == "SERVER_ERROR: db down"
        assert "url" not in payload

    def test_request_fields_and_stack(self):
        try:
            raise RuntimeError("db down")
        except RuntimeError:
            record = _record(url="/api/crm/leads", method="GET", ip="1.2.3.4")
            record.exc_info = sys.exc_info()

        payload = json.loads(JsonFormatter().format(record))

        assert payload["url"] == "/api/crm/leads"
        assert payload["method"] == "GET"
        assert payload["ip"] == "1.2.3.4"
        assert "RuntimeError: db down" in payload["stack"]


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_production_uses_json(self, prod_settings, restore_root_logger):
        setup_logging(prod_settings)

        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, JsonFormatter)

    def test_development_uses_text(self, dev_settings, restore_root_logger):
        setup_logging(dev_settings.model_copy(update={"log_level": "debug"}))

        assert not isinstance(restore_root_logger.handlers[0].formatter, JsonFormatter)
        assert restore_root_logger.level == logging.DEBUG

    def test_uvicorn_logs_propagate(self, dev_settings, restore_root_logger):
        setup_logging(dev_settings)

        assert logging.getLogger("uvicorn.access").propagate is True
        assert logging.getLogger("uvicorn.error").handlers == []
