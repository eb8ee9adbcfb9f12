"""Migration of persisted data into the current event-log shape.

Two entry points:

- :func:`migrate_log` rewrites an older-version log, event by event, into
  current-shape events. Event count, order and timestamps are preserved and
  the transform is idempotent.
- :func:`migrate_snapshot` turns a legacy dense snapshot (the format stored
  before the event log existed) into a log holding a single synthetic INIT.

Both operate on raw JSON-shaped dicts: older shapes do not validate against
the current models, so migration has to run before parsing.
"""

from __future__ import annotations

import copy
import logging
from datetime import UTC, datetime
from typing import Any

from .errors import CorruptLogError
from .events import CURRENT_VERSION, parse_event_log
from .models import DEFAULT_NOTE_TAG_DEFINITIONS, StatisticalConfig

logger = logging.getLogger(__name__)

_LEGACY_NOTE_FLAGS = ("wokeUpLong", "nightmares", "nightSweats")


def is_event_log(data: Any) -> bool:
    return isinstance(data, dict) and "version" in data and isinstance(data.get("events"), list)


def is_legacy_snapshot(data: Any) -> bool:
    return (
        isinstance(data, dict)
        and "events" not in data
        and isinstance(data.get("interventions"), list)
        and isinstance(data.get("observations"), list)
    )


def _migrate_notes(notes: Any) -> dict[str, Any] | None:
    """Fixed-flag notes and list-of-tag notes → ``{tags: {label: bool}, text}``."""
    if notes is None:
        return None
    if not isinstance(notes, dict):
        raise CorruptLogError(f"Notes must be an object, got {type(notes).__name__}")
    raw_tags = notes.get("tags")
    text = notes.get("text") or ""
    if isinstance(raw_tags, dict):
        return {"tags": {str(k): bool(v) for k, v in raw_tags.items()}, "text": text}
    if isinstance(raw_tags, list):
        tags: dict[str, bool] = {}
        for entry in raw_tags:
            if isinstance(entry, dict) and "label" in entry:
                tags[str(entry["label"])] = bool(entry.get("value", False))
        return {"tags": tags, "text": text}
    return {
        "tags": {flag: bool(notes[flag]) for flag in _LEGACY_NOTE_FLAGS if flag in notes},
        "text": text,
    }


def _migrate_observation(obs: Any) -> dict[str, Any]:
    if not isinstance(obs, dict):
        raise CorruptLogError("Observation must be an object")
    if "nightDate" in obs:
        migrated = dict(obs)
        migrated["notes"] = _migrate_notes(obs.get("notes"))
        return migrated

    # Dense legacy row: {date, interventions: bool[], score, notes?}
    date = obs.get("date")
    flags = obs.get("interventions") or []
    return {
        "nightDate": date,
        "sleepDate": date,
        "recordDate": date,
        "activeInterventions": [i for i, active in enumerate(flags) if active],
        "score": obs.get("score"),
        "notes": _migrate_notes(obs.get("notes")),
    }


def _migrate_intervention(intervention: Any) -> dict[str, Any]:
    if isinstance(intervention, str):
        return {"name": intervention, "disabled": False}
    if isinstance(intervention, dict):
        return {"name": intervention.get("name"), "disabled": bool(intervention.get("disabled", False))}
    raise CorruptLogError("Intervention must be a string or an object")


def _migrate_state(state: Any) -> dict[str, Any]:
    if not isinstance(state, dict):
        raise CorruptLogError("State snapshot must be an object")
    default_tags = [t.model_dump(by_alias=True) for t in DEFAULT_NOTE_TAG_DEFINITIONS]
    return {
        "interventions": [_migrate_intervention(i) for i in state.get("interventions") or []],
        "observations": [_migrate_observation(o) for o in state.get("observations") or []],
        "pendingNight": state.get("pendingNight") or None,
        "groups": list(state.get("groups") or []),
        "config": state.get("config") or StatisticalConfig().model_dump(by_alias=True),
        "noteTagDefinitions": list(state.get("noteTagDefinitions") or default_tags),
        "checklistItems": list(state.get("checklistItems") or []),
    }


def _observation_count_before(migrated_prefix: list[dict[str, Any]]) -> int:
    from .replay import replay_log

    prefix = parse_event_log({"version": CURRENT_VERSION, "events": migrated_prefix})
    return len(replay_log(prefix).observations)


def _migrate_import_historical(event: dict[str, Any], migrated_prefix: list[dict[str, Any]]) -> dict[str, Any]:
    """v1 carried the already-merged lists; v2 carries names plus the new nights only.

    v1 merging always kept the existing interventions and observations as a
    prefix, so the new nights are the observations past the count the state
    held right before this event.
    """
    if "nights" in event:
        return event
    interventions = [_migrate_intervention(i) for i in event.get("interventions") or []]
    observations = [_migrate_observation(o) for o in event.get("observations") or []]
    names = [i["name"] for i in interventions]
    existing = _observation_count_before(migrated_prefix)

    nights = []
    for obs in observations[existing:]:
        active = set(obs["activeInterventions"])
        nights.append(
            {
                "interventions": [i in active for i in range(len(names))],
                "score": obs["score"],
                "date": obs["nightDate"],
            }
        )
    return {"type": event["type"], "timestamp": event["timestamp"], "interventions": names, "nights": nights}


def _migrate_event(event: Any, migrated_prefix: list[dict[str, Any]]) -> dict[str, Any]:
    if not isinstance(event, dict):
        raise CorruptLogError("Event must be an object")
    event_type = event.get("type")
    migrated = dict(event)
    if event_type == "INIT":
        migrated["state"] = _migrate_state(event.get("state"))
    elif event_type == "RECORD_SCORE":
        migrated["notes"] = _migrate_notes(event.get("notes")) or {"tags": {}, "text": ""}
    elif event_type == "IMPORT_HISTORICAL":
        migrated = _migrate_import_historical(migrated, migrated_prefix)
    return migrated


def migrate_log(raw: Any) -> dict[str, Any]:
    """Bring a raw persisted log up to CURRENT_VERSION.

    Logs already at the current version are returned unchanged apart from
    embedded IMPORT_DATA logs, which are migrated on their own version.
    """
    if not is_event_log(raw):
        raise CorruptLogError("Not an event log: expected {version, events}")
    version = raw["version"]
    if not isinstance(version, int) or isinstance(version, bool):
        raise CorruptLogError("Event log version must be an integer")
    if version > CURRENT_VERSION:
        raise CorruptLogError(
            f"Event log version {version} is newer than supported version {CURRENT_VERSION}"
        )

    events: list[dict[str, Any]] = []
    for event in raw["events"]:
        migrated = _migrate_event(event, events) if version < CURRENT_VERSION else copy.copy(event)
        if isinstance(migrated, dict) and migrated.get("type") == "IMPORT_DATA":
            migrated["eventLog"] = migrate_log(migrated.get("eventLog"))
        events.append(migrated)

    if version < CURRENT_VERSION:
        logger.info(
            "Migrated event log from version %d to %d",
            version,
            CURRENT_VERSION,
            extra={"bandit_event_count": len(events), "bandit_from_version": version},
        )
    return {"version": CURRENT_VERSION, "events": events}


def migrate_snapshot(snapshot: Any, timestamp: str | None = None) -> dict[str, Any]:
    """Legacy dense snapshot → log with exactly one synthetic INIT event."""
    if not isinstance(snapshot, dict):
        raise CorruptLogError("Legacy snapshot must be an object")
    ts = timestamp or datetime.now(tz=UTC).isoformat()
    state = _migrate_state(snapshot)
    logger.info(
        "Migrated legacy snapshot into a seeded event log",
        extra={
            "bandit_interventions": len(state["interventions"]),
            "bandit_observations": len(state["observations"]),
        },
    )
    return {
        "version": CURRENT_VERSION,
        "events": [{"type": "INIT", "timestamp": ts, "state": state}],
    }
