"""
Tests for structured logging utilities.
"""

import json
import logging
import sys

import pytest

from vertector_keyrouter.logging_utils import (
    PerformanceLogger,
    StructuredFormatter,
    key_var,
    log_with_context,
    operation_var,
    setup_production_logging,
)


def make_record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("vertector_keyrouter.test", logging.INFO, __file__, 1, message, (), None)
    for name, value in extra.items():
        setattr(record, name, value)
    return record


class TestStructuredFormatter:
    """Test JSON log output."""

    def test_basic_fields(self):
        output = json.loads(StructuredFormatter().format(make_record()))

        assert output["level"] == "INFO"
        assert output["logger"] == "vertector_keyrouter.test"
        assert output["message"] == "hello"
        assert "timestamp" in output

    def test_extra_fields(self):
        output = json.loads(StructuredFormatter().format(make_record(table="user", duration_ms=1.5)))

        assert output["table"] == "user"
        assert output["duration_ms"] == 1.5

    def test_context_variables(self):
        token = key_var.set("user/ryan")
        try:
            output = json.loads(StructuredFormatter().format(make_record()))
        finally:
            key_var.reset(token)

        assert output["key"] == "user/ryan"
        assert "operation" not in output

    def test_non_json_values_stringified(self):
        output = json.loads(StructuredFormatter().format(make_record(when=object())))
        assert output["when"].startswith("<object")

    def test_exception(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        output = json.loads(StructuredFormatter().format(record))
        assert "ValueError: bad" in output["exception"]


class TestPerformanceLogger:
    """Test operation timing."""

    @pytest.mark.asyncio
    async def test_success(self, caplog):
        logger = logging.getLogger("vertector_keyrouter.test.perf")

        with caplog.at_level(logging.DEBUG, logger=logger.name):
            async with PerformanceLogger("provision_table", logger=logger, table="user") as perf:
                assert operation_var.get() == "provision_table"

        assert operation_var.get() == ""
        assert perf.duration_ms >= 0
        completed = caplog.records[-1]
        assert completed.event == "operation_completed"
        assert completed.table == "user"

    @pytest.mark.asyncio
    async def test_failure_logged_and_propagated(self, caplog):
        logger = logging.getLogger("vertector_keyrouter.test.perf")

        with caplog.at_level(logging.ERROR, logger=logger.name):
            with pytest.raises(RuntimeError):
                async with PerformanceLogger("provision_table", logger=logger):
                    raise RuntimeError("ddl failed")

        failed = caplog.records[-1]
        assert failed.event == "operation_failed"
        assert failed.error_type == "RuntimeError"


class TestSetup:
    """Test root logger configuration."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json(self):
        setup_production_logging(level="WARNING", format="json")

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_text(self):
        setup_production_logging(level="debug", format="text")

        formatter = logging.getLogger().handlers[0].formatter
        assert not isinstance(formatter, StructuredFormatter)

    def test_log_with_context(self, caplog):
        logger = logging.getLogger("vertector_keyrouter.test.context")

        with caplog.at_level(logging.INFO, logger=logger.name):
            log_with_context(logger, "info", "routed", key="user/ryan", table="user")

        assert caplog.records[-1].table == "user"
