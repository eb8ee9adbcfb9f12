"""Tests for JSON/text logging setup."""

import json
import logging
import sys

import pytest

from sleep_bandit.logging import JSONFormatter, TextFormatter, setup_logging


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(msg="Replayed %d events", args=(3,), **extra):
    record = logging.LogRecord("sleep_bandit.replay", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_bandit_extras():
    line = JSONFormatter().format(_record(bandit_event_count=3, other_field="dropped"))
    data = json.loads(line)
    assert data["message"] == "Replayed 3 events"
    assert data["level"] == "INFO"
    assert data["logger"] == "sleep_bandit.replay"
    assert data["bandit_event_count"] == 3
    assert "other_field" not in data


def test_json_formatter_includes_exception():
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    data = json.loads(JSONFormatter().format(record))
    assert "ValueError: boom" in data["exception"]


@pytest.mark.parametrize("log_format,formatter_cls", [("json", JSONFormatter), ("text", TextFormatter)])
def test_setup_logging_replaces_handlers(log_format, formatter_cls):
    setup_logging(log_format)
    setup_logging(log_format, logging.DEBUG)
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, formatter_cls)
    assert root.level == logging.DEBUG


def test_text_formatter_appends_extras():
    line = TextFormatter().format(_record(bandit_event_count=3, bandit_duration_ms=1.25))
    assert line.endswith("sleep_bandit.replay: Replayed 3 events [duration_ms=1.25 event_count=3]")


def test_text_formatter_without_extras():
    line = TextFormatter().format(_record())
    assert line.endswith("Replayed 3 events")


def test_setup_logging_quiets_psycopg():
    setup_logging("text", logging.DEBUG)
    assert logging.getLogger("psycopg").level == logging.WARNING
