"""Tests for logging setup."""

import json
import logging
import sys

import structlog

from nightshift.config import LoggingConfig
from nightshift.logging_setup import json_formatter, setup_logging


def _record(**fields):
    base = {"name": "nightshift.runner", "levelname": "INFO", "levelno": logging.INFO}
    base.update(fields)
    return logging.makeLogRecord(base)


def test_json_formatter_carries_extra():
    record = _record(msg="task %s done", args=("lint-fix",), provider="claude")
    payload = json.loads(json_formatter().format(record))
    assert payload["level"] == "info"
    assert payload["logger"] == "nightshift.runner"
    assert payload["msg"] == "task lint-fix done"
    assert payload["provider"] == "claude"
    assert "T" in payload["time"]
    assert "event" not in payload


def test_json_formatter_renders_exception():
    try:
        raise RuntimeError("db locked")
    except RuntimeError:
        record = _record(
            name="nightshift.db", levelname="ERROR", levelno=logging.ERROR,
            msg="write failed", exc_info=sys.exc_info(),
        )
    payload = json.loads(json_formatter().format(record))
    assert payload["level"] == "error"
    assert "RuntimeError: db locked" in payload["exception"]


def test_setup_sets_level_and_handlers():
    logger = setup_logging(LoggingConfig(level="warn"))
    assert logger.name == "nightshift"
    assert logger.level == logging.WARNING
    assert len(logger.handlers) == 1
    assert not logger.propagate
    assert not isinstance(logger.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)


def test_setup_is_idempotent():
    setup_logging(LoggingConfig())
    logger = setup_logging(LoggingConfig())
    assert len(logger.handlers) == 1


def test_file_handler_writes_json(tmp_path):
    path = tmp_path / "logs" / "nightshift.log"
    logger = setup_logging(LoggingConfig(level="debug", format="json", path=str(path)))
    assert isinstance(logger.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    logging.getLogger("nightshift.budget").debug("allowance computed", extra={"tokens": 1200})
    for handler in logger.handlers:
        handler.flush()

    line = json.loads(path.read_text().strip().splitlines()[-1])
    assert line["msg"] == "allowance computed"
    assert line["logger"] == "nightshift.budget"
    assert line["level"] == "debug"
    assert line["tokens"] == 1200
