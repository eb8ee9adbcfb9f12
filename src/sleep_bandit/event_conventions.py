"""The complete catalog of event types and their payloads.

Documents what each event carries and what it does to derived state, for
anyone writing events by hand (imports, repairs, tests). Every entry in the
``AppEvent`` union has exactly one entry here; ``validate_conventions``
enforces that.
"""

from typing import Any

from .events import EVENT_TYPES


def get_event_conventions() -> dict[str, dict[str, Any]]:
    """Return the complete event type catalog, grouped by lifecycle stage."""
    return {
        # --- Bootstrap ---
        "INIT": {
            "description": "Seeds the log with a full state snapshot (legacy migration, backups)",
            "fields": {"state": "object (required, full AppState in camelCase)"},
            "example": {"state": {"interventions": [{"name": "Melatonin", "disabled": False}], "observations": []}},
        },
        # --- Interventions ---
        "ADD_INTERVENTION": {
            "description": "Adds an intervention at the next index (no-op on duplicate name)",
            "fields": {"name": "string (required, unique)"},
            "example": {"name": "Magnesium"},
        },
        "RENAME_INTERVENTION": {
            "description": "Renames in place; index and history are unchanged",
            "fields": {"index": "integer (required)", "newName": "string (required, unique)"},
            "example": {"index": 0, "newName": "Melatonin 0.5mg"},
        },
        "TOGGLE_INTERVENTION_DISABLED": {
            "description": "Flips the disabled flag; disabled interventions are never rolled",
            "fields": {"index": "integer (required)"},
            "example": {"index": 1},
        },
        # --- Groups ---
        "ADD_GROUP": {
            "description": "Declares mutually exclusive interventions",
            "fields": {"group": "{name: string, interventionIndices: list[int] (>= 2 distinct)}"},
            "example": {"group": {"name": "Supplements", "interventionIndices": [0, 1]}},
        },
        "REMOVE_GROUP": {
            "description": "Archives a group; it stops constraining rolls but keeps its index",
            "fields": {"index": "integer (required)"},
            "example": {"index": 0},
        },
        "UPDATE_GROUP": {
            "description": "Replaces the group at index",
            "fields": {"index": "integer (required)", "group": "group shape"},
            "example": {"index": 0, "group": {"name": "Supplements", "interventionIndices": [0, 1, 2]}},
        },
        # --- Note tags and checklist ---
        "ADD_NOTE_TAG": {
            "description": "Adds a boolean morning note tag (no-op on duplicate label)",
            "fields": {"tag": "{label: string, description: string}"},
            "example": {"tag": {"label": "headache", "description": "Woke up with a headache"}},
        },
        "UPDATE_NOTE_TAG": {
            "description": "Replaces the note tag definition at index",
            "fields": {"index": "integer (required)", "tag": "{label, description}"},
            "example": {"index": 0, "tag": {"label": "wokeUpLong", "description": "Awake 1+ hours"}},
        },
        "ADD_CHECKLIST_ITEM": {
            "description": "Adds an evening checklist item",
            "fields": {"item": "{label: string, description: string}"},
            "example": {"item": {"label": "screens", "description": "Screens off by 22:00"}},
        },
        "UPDATE_CHECKLIST_ITEM": {
            "description": "Replaces the checklist item at index",
            "fields": {"index": "integer (required)", "item": "{label, description}"},
            "example": {"index": 0, "item": {"label": "screens", "description": "Screens off by 21:30"}},
        },
        "REMOVE_CHECKLIST_ITEM": {
            "description": "Archives the checklist item at index",
            "fields": {"index": "integer (required)"},
            "example": {"index": 0},
        },
        # --- Nightly flow ---
        "ROLL_TONIGHT": {
            "description": "Starts a pending night from one Thompson sample",
            "fields": {
                "samples": "list[number] (one per intervention)",
                "activeInterventions": "list[bool] (one per intervention)",
            },
            "example": {"samples": [1.2, -0.4], "activeInterventions": [True, False]},
        },
        "TOGGLE_PENDING_INTERVENTION": {
            "description": "Overrides one flag of the pending night",
            "fields": {"index": "integer (required)", "active": "bool (required)"},
            "example": {"index": 1, "active": True},
        },
        "CHECK_CHECKLIST_ITEM": {
            "description": "Records a checklist tick; no derived state change",
            "fields": {"index": "integer", "label": "string", "checked": "bool"},
            "example": {"index": 0, "label": "screens", "checked": True},
        },
        "MARK_ASLEEP": {
            "description": "Evening → morning transition of the pending night",
            "fields": {},
            "example": {},
        },
        "TOGGLE_NOTE_TAG": {
            "description": "Records a morning tag toggle; no derived state change",
            "fields": {"label": "string", "checked": "bool"},
            "example": {"label": "nightmares", "checked": True},
        },
        "RECORD_SCORE": {
            "description": "Finalizes the pending night into an immutable observation",
            "fields": {
                "score": "number (required, 0-100 by convention)",
                "notes": "{tags: {label: bool}, text: string}",
            },
            "example": {"score": 78, "notes": {"tags": {"nightmares": False}, "text": ""}},
        },
        "CANCEL_PENDING": {
            "description": "Discards the pending night without an observation",
            "fields": {},
            "example": {},
        },
        # --- Imports and config ---
        "IMPORT_DATA": {
            "description": "Replaces state with the replay of an embedded full event log",
            "fields": {"eventLog": "{version: int, events: list[event]}"},
            "example": {"eventLog": {"version": 2, "events": []}},
        },
        "IMPORT_HISTORICAL": {
            "description": "Merges interventions by name and appends remapped historical nights",
            "fields": {
                "interventions": "list[string]",
                "nights": "list[{interventions: list[bool], score: number, date?: ISO 8601}]",
            },
            "example": {
                "interventions": ["Melatonin", "L-Theanine"],
                "nights": [{"interventions": [True, False], "score": 75}],
            },
        },
        "UPDATE_CONFIG": {
            "description": "Partial override of the statistical configuration",
            "fields": {"config": "{baseline?: number, tau?: number > 0, sigma?: number > 0}"},
            "example": {"config": {"sigma": 10}},
        },
    }


def validate_conventions() -> None:
    """Raise if the documented catalog and the event union disagree."""
    documented = set(get_event_conventions())
    declared = set(EVENT_TYPES)
    if documented != declared:
        missing = sorted(declared - documented)
        extra = sorted(documented - declared)
        raise RuntimeError(f"Event conventions out of sync: missing={missing} extra={extra}")
