"""Unit tests — structlog configuration and request context binding."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from sqlite_gateway.logging import (
    bind_request_context,
    clear_request_context,
    configure_logging,
    get_logger,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    clear_request_context()
    structlog.reset_defaults()
    root.handlers = handlers
    root.setLevel(level)


def _read_json_lines(path: Path) -> list[dict]:
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


class TestConfigureLogging:
    def test_json_file_output(self, tmp_path: Path) -> None:
        log_file = tmp_path / "gateway.log"
        configure_logging(level="info", format="json", log_file=str(log_file))
        get_logger("test.json").info("statement_executed", statement_hash="abc", elapsed_ms=1.0)

        entries = _read_json_lines(log_file)
        entry = next(e for e in entries if e["event"] == "statement_executed")
        assert entry["statement_hash"] == "abc"
        assert entry["level"] == "info"
        assert entry["logger"] == "test.json"
        assert "timestamp" in entry

    def test_level_filters(self, tmp_path: Path) -> None:
        log_file = tmp_path / "gateway.log"
        configure_logging(level="warning", format="json", log_file=str(log_file))
        log = get_logger("test.level")
        log.info("quiet_event")
        log.warning("loud_event")

        events = [e["event"] for e in _read_json_lines(log_file)]
        assert "loud_event" in events
        assert "quiet_event" not in events

    def test_request_context_injected(self, tmp_path: Path) -> None:
        log_file = tmp_path / "gateway.log"
        configure_logging(level="info", format="json", log_file=str(log_file))
        bind_request_context(client_id="alice", request_id="r-1")
        get_logger("test.ctx").info("with_context")
        clear_request_context()
        get_logger("test.ctx").info("without_context")

        entries = {e["event"]: e for e in _read_json_lines(log_file)}
        assert entries["with_context"]["client_id"] == "alice"
        assert entries["with_context"]["request_id"] == "r-1"
        assert "client_id" not in entries["without_context"]

    def test_stream_handler_writes_to_stderr(self) -> None:
        import sys

        configure_logging(level="info", format="console")
        streams = [
            h.stream for h in logging.getLogger().handlers if isinstance(h, logging.StreamHandler)
            and not isinstance(h, logging.FileHandler)
        ]
        assert streams == [sys.stderr]

    def test_sqlalchemy_logger_quieted(self) -> None:
        configure_logging(level="debug")
        assert logging.getLogger("sqlalchemy").level == logging.WARNING
