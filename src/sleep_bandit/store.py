"""Append-only event log stores.

The core needs two operations from storage: ``load()`` once at startup and
``append(event)`` after every intent, before the in-memory state is updated.
``replace(log)`` rewrites the whole log and is only used for migrations.
A crash between the two is healed by the next load, since state is always
re-derived by replay.

Migration on load is the one place where persisted events are rewritten:
a log stored at an older version is migrated and written back through
``replace`` at the current version, with the same events in the same order.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .config import Config
from .errors import CorruptLogError
from .events import CURRENT_VERSION, BaseEvent, EventLog, dump_event, dump_event_log, event_type_of, parse_event_log
from .metrics import record_event_appended
from .migrations import migrate_log, migrate_snapshot

logger = logging.getLogger(__name__)


class EventStore(Protocol):
    def load(self) -> EventLog: ...

    def append(self, event: BaseEvent) -> None: ...

    def replace(self, log: EventLog) -> None: ...


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CorruptLogError(f"{path} is not valid JSON: {exc}") from exc


class JsonFileEventStore:
    """Event log kept in a single JSON file in the export format.

    ``legacy_path`` points at a pre-event-log dense snapshot. It is read only
    when no log file exists yet, migrated into a single-INIT log, and deleted
    once the log has been written.
    """

    def __init__(self, path: Path, legacy_path: Path | None = None):
        self.path = Path(path)
        self.legacy_path = Path(legacy_path) if legacy_path is not None else None
        self._lock = threading.Lock()
        self._log: EventLog | None = None

    def load(self) -> EventLog:
        with self._lock:
            self._log = self._load_unlocked()
            return self._log

    def append(self, event: BaseEvent) -> None:
        with self._lock:
            current = self._log if self._log is not None else self._load_unlocked()
            updated = current.appended(event)
            self._write(updated)
            self._log = updated
        record_event_appended(event_type_of(event))

    def replace(self, log: EventLog) -> None:
        with self._lock:
            self._replace_unlocked(log)

    def _replace_unlocked(self, log: EventLog) -> None:
        self._write(log)
        self._log = log
        logger.info("Rewrote event log %s at version %d", self.path, log.version)

    def _load_unlocked(self) -> EventLog:
        if self.path.exists():
            raw = _read_json(self.path)
            log = parse_event_log(migrate_log(raw))
            if isinstance(raw, dict) and raw.get("version") != CURRENT_VERSION:
                self._replace_unlocked(log)
            logger.info(
                "Loaded event log from %s",
                self.path,
                extra={"bandit_event_count": len(log.events)},
            )
            return log

        if self.legacy_path is not None and self.legacy_path.exists():
            snapshot = _read_json(self.legacy_path)
            log = parse_event_log(migrate_snapshot(snapshot))
            self._replace_unlocked(log)
            self.legacy_path.unlink()
            logger.info("Retired legacy snapshot %s", self.legacy_path)
            return log

        return EventLog()

    def _write(self, log: EventLog) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(dump_event_log(log), indent=2), encoding="utf-8")
        os.replace(tmp, self.path)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS sleep_bandit_logs (
    log_id TEXT PRIMARY KEY,
    version INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS sleep_bandit_events (
    seq BIGSERIAL PRIMARY KEY,
    log_id TEXT NOT NULL REFERENCES sleep_bandit_logs (log_id),
    event_type TEXT NOT NULL,
    event_timestamp TEXT NOT NULL,
    payload JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS sleep_bandit_events_log_seq ON sleep_bandit_events (log_id, seq);
"""


class PostgresEventStore:
    """Event log in PostgreSQL, one row per event ordered by ``seq``.

    Writers for the same ``log_id`` are serialized with a transaction-scoped
    advisory lock, so concurrent appends cannot interleave with a migration.
    """

    def __init__(self, conninfo: str, log_id: str = "default"):
        self.conninfo = conninfo
        self.log_id = log_id
        self._schema_ready = False

    def _connect(self) -> psycopg.Connection[dict[str, Any]]:
        conn = psycopg.connect(self.conninfo, row_factory=dict_row)
        if not self._schema_ready:
            conn.execute(_SCHEMA)
            conn.commit()
            self._schema_ready = True
        return conn

    def _lock_and_version(self, conn: psycopg.Connection[dict[str, Any]]) -> int:
        conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"sleep_bandit:{self.log_id}",))
        conn.execute(
            "INSERT INTO sleep_bandit_logs (log_id, version) VALUES (%s, %s) ON CONFLICT (log_id) DO NOTHING",
            (self.log_id, CURRENT_VERSION),
        )
        row = conn.execute(
            "SELECT version FROM sleep_bandit_logs WHERE log_id = %s", (self.log_id,)
        ).fetchone()
        return int(row["version"])

    def load(self) -> EventLog:
        with self._connect() as conn, conn.transaction():
            version = self._lock_and_version(conn)
            rows = conn.execute(
                "SELECT payload FROM sleep_bandit_events WHERE log_id = %s ORDER BY seq",
                (self.log_id,),
            ).fetchall()
            raw = {"version": version, "events": [row["payload"] for row in rows]}
            migrated = migrate_log(raw)
            log = parse_event_log(migrated)

            if version != CURRENT_VERSION:
                self._replace_rows(conn, log)

        logger.info(
            "Loaded event log %s from PostgreSQL",
            self.log_id,
            extra={"bandit_event_count": len(log.events)},
        )
        return log

    def append(self, event: BaseEvent) -> None:
        payload = dump_event(event)
        with self._connect() as conn, conn.transaction():
            self._lock_and_version(conn)
            conn.execute(
                """
                INSERT INTO sleep_bandit_events (log_id, event_type, event_timestamp, payload)
                VALUES (%s, %s, %s, %s)
                """,
                (self.log_id, payload["type"], payload["timestamp"], Json(payload)),
            )
        record_event_appended(payload["type"])

    def replace(self, log: EventLog) -> None:
        with self._connect() as conn, conn.transaction():
            self._lock_and_version(conn)
            self._replace_rows(conn, log)

    def _replace_rows(self, conn: psycopg.Connection[dict[str, Any]], log: EventLog) -> None:
        """Swap every row of this log for ``log``. Caller holds the advisory lock."""
        conn.execute("DELETE FROM sleep_bandit_events WHERE log_id = %s", (self.log_id,))
        with conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO sleep_bandit_events (log_id, event_type, event_timestamp, payload)
                VALUES (%s, %s, %s, %s)
                """,
                [
                    (self.log_id, payload["type"], payload["timestamp"], Json(payload))
                    for payload in (dump_event(event) for event in log.events)
                ],
            )
        conn.execute(
            "UPDATE sleep_bandit_logs SET version = %s WHERE log_id = %s",
            (log.version, self.log_id),
        )
        logger.info(
            "Rewrote event log %s at version %d",
            self.log_id,
            log.version,
            extra={"bandit_event_count": len(log.events)},
        )


def build_store(config: Config) -> EventStore:
    if config.database_url:
        return PostgresEventStore(config.database_url)
    return JsonFileEventStore(config.log_path, config.legacy_path)
