"""JSON or plaintext logging for sleep-bandit.

Controlled via SLEEP_BANDIT_LOG_FORMAT: "json" or "text" (default). Both
formats carry the ``bandit_*`` extras that modules attach to their records.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone

_EXTRA_PREFIX = "bandit_"


def _bandit_extras(record: logging.LogRecord) -> dict:
    return {key: value for key, value in record.__dict__.items() if key.startswith(_EXTRA_PREFIX)}


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }

        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        log_entry.update(_bandit_extras(record))
        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """Plain log lines with ``bandit_*`` extras appended as key=value pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _bandit_extras(record)
        if not extras:
            return line
        pairs = " ".join(f"{key[len(_EXTRA_PREFIX):]}={value}" for key, value in sorted(extras.items()))
        head, sep, tail = line.partition("\n")
        return f"{head} [{pairs}]{sep}{tail}"


def setup_logging(log_format: str, level: int | str = logging.INFO) -> None:
    """Configure the root logger with a single stderr handler."""
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())
    root.addHandler(handler)

    # psycopg logs every notice at INFO
    logging.getLogger("psycopg").setLevel(max(root.level, logging.WARNING))
