"""
Tests for dbflow logging: formatters, setup and the logging sink.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from dbflow.runtime.correlation import Tracer
from dbflow.runtime.logging import (
    ConsoleFormatter,
    JSONLFormatter,
    LoggingSink,
    get_logger,
    log_with_context,
    setup_logging,
)


def _record(message: str = "hello", level: int = logging.WARNING, **extra) -> logging.LogRecord:
    record = logging.LogRecord("dbflow.redis", level, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def dbflow_root():
    yield logging.getLogger("dbflow")
    root = logging.getLogger("dbflow")
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.NOTSET)


class TestJSONLFormatter:
    def test_fields(self):
        line = JSONLFormatter().format(
            _record(component="REDIS", correlation_id="abc", context={"model": "user"})
        )
        entry = json.loads(line)

        assert entry["level"] == "WARNING"
        assert entry["component"] == "REDIS"
        assert entry["correlation_id"] == "abc"
        assert entry["context"] == {"model": "user"}
        assert entry["message"] == "hello"

    def test_optional_fields_omitted(self):
        entry = json.loads(JSONLFormatter().format(_record()))
        assert entry["component"] == "FLOW"
        assert "correlation_id" not in entry
        assert "context" not in entry


class TestConsoleFormatter:
    def test_prefix(self):
        text = ConsoleFormatter().format(_record(component="SQL", correlation_id="0123456789"))
        assert "[SQL]" in text
        assert "01234567" in text
        assert "0123456789" not in text
        assert "WARNING" in text

    def test_context_shown_for_warnings(self):
        text = ConsoleFormatter().format(_record(context={"model": "user"}))
        assert '"model": "user"' in text

    def test_info_has_no_level_tag(self):
        text = ConsoleFormatter().format(_record(level=logging.INFO, context={"model": "user"}))
        assert "INFO" not in text
        assert "model" not in text


class TestSetup:
    def test_console_only(self, dbflow_root):
        root = setup_logging(level=logging.DEBUG)
        assert root is dbflow_root
        assert len(root.handlers) == 1

    def test_file_output_is_jsonl(self, dbflow_root, tmp_path: Path):
        setup_logging(level=logging.INFO, log_dir=tmp_path / "logs")

        log_with_context(get_logger("FLOW"), logging.WARNING, "saved", model="user")
        for handler in dbflow_root.handlers:
            handler.flush()

        lines = (tmp_path / "logs" / "dbflow.log").read_text().splitlines()
        entry = json.loads(lines[-1])
        assert entry["message"] == "saved"
        assert entry["component"] == "FLOW"
        assert entry["context"] == {"model": "user"}

    def test_setup_is_repeatable(self, dbflow_root):
        setup_logging()
        setup_logging()
        assert len(dbflow_root.handlers) == 1


class TestLoggingSink:
    def test_events_reach_component_loggers(self, caplog):
        tracer = Tracer(LoggingSink())

        with caplog.at_level(logging.DEBUG, logger="dbflow"):
            with tracer.scope() as ctx:
                ctx.warning("Old members not deleted", component="REDIS", model="user")

        (record,) = [r for r in caplog.records if r.getMessage() == "Old members not deleted"]
        assert record.name == "dbflow.redis"
        assert record.levelno == logging.WARNING
        assert record.correlation_id == ctx.correlation_id
        assert record.context == {"model": "user"}
        assert "Correlation finished" in caplog.text

    def test_event_without_context(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="dbflow"):
            LoggingSink().annotate("abc", logging.ERROR, "SQL", "Query failed", {})

        (record,) = [r for r in caplog.records if r.getMessage() == "Query failed"]
        assert record.name == "dbflow.sql"
        assert record.correlation_id == "abc"
        assert not hasattr(record, "context")

    def test_ids_are_unique(self):
        sink = LoggingSink()
        assert sink.start() != sink.start()
