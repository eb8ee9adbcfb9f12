"""Deterministic fold of the event log into AppState.

Every event class in the catalog registers exactly one handler here. The
table is checked against the ``AppEvent`` union when this module is imported,
so a catalog entry without a handler fails at startup instead of being
silently ignored during replay.

Replay is tolerant of ordering: an event that references a missing
intervention, group, tag or pending night is a logged no-op. Validation of
user intents happens before events are emitted, in the tracker.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from .errors import CorruptLogError, UnknownEventError
from .events import (
    CURRENT_VERSION,
    EVENT_CLASSES,
    AddChecklistItem,
    AddGroup,
    AddIntervention,
    AddNoteTag,
    BaseEvent,
    CancelPending,
    CheckChecklistItem,
    EventLog,
    ImportData,
    ImportHistorical,
    InitEvent,
    MarkAsleep,
    RecordScore,
    RemoveChecklistItem,
    RemoveGroup,
    RenameIntervention,
    RollTonight,
    ToggleInterventionDisabled,
    ToggleNoteTag,
    TogglePendingIntervention,
    UpdateChecklistItem,
    UpdateConfig,
    UpdateGroup,
    UpdateNoteTag,
    event_type_of,
)
from .metrics import record_replay
from .models import EMPTY_STATE, AppState, Intervention, Observation, PendingNight

logger = logging.getLogger(__name__)

ApplyFn = Callable[[AppState, Any], AppState]

_HANDLERS: dict[type[BaseEvent], ApplyFn] = {}


def applies(event_cls: type[BaseEvent]) -> Callable[[ApplyFn], ApplyFn]:
    """Register the fold step for one event class."""

    def decorator(fn: ApplyFn) -> ApplyFn:
        if event_cls in _HANDLERS:
            raise ValueError(f"Duplicate replay handler for {event_cls.__name__}")
        _HANDLERS[event_cls] = fn
        return fn

    return decorator


def _ignored(event: BaseEvent, reason: str) -> None:
    logger.warning(
        "Ignoring %s: %s",
        event_type_of(event),
        reason,
        extra={"bandit_event_type": event_type_of(event), "bandit_timestamp": event.timestamp},
    )


def _replace_at(items: tuple, index: int, value: Any) -> tuple:
    return items[:index] + (value,) + items[index + 1:]


# --- Interventions ---


@applies(InitEvent)
def _apply_init(state: AppState, event: InitEvent) -> AppState:
    return event.state


@applies(AddIntervention)
def _apply_add_intervention(state: AppState, event: AddIntervention) -> AppState:
    if event.name in state.intervention_names:
        return state
    interventions = (*state.interventions, Intervention(name=event.name))
    pending = state.pending_night
    if pending is not None and len(pending.interventions) < len(interventions):
        pending = pending.model_copy(
            update={"interventions": pending.interventions + (False,) * (len(interventions) - len(pending.interventions))}
        )
    return state.model_copy(update={"interventions": interventions, "pending_night": pending})


@applies(RenameIntervention)
def _apply_rename_intervention(state: AppState, event: RenameIntervention) -> AppState:
    if not 0 <= event.index < len(state.interventions):
        _ignored(event, f"no intervention at index {event.index}")
        return state
    if event.new_name in state.intervention_names:
        return state
    renamed = state.interventions[event.index].model_copy(update={"name": event.new_name})
    return state.model_copy(update={"interventions": _replace_at(state.interventions, event.index, renamed)})


@applies(ToggleInterventionDisabled)
def _apply_toggle_disabled(state: AppState, event: ToggleInterventionDisabled) -> AppState:
    if not 0 <= event.index < len(state.interventions):
        _ignored(event, f"no intervention at index {event.index}")
        return state
    current = state.interventions[event.index]
    toggled = current.model_copy(update={"disabled": not current.disabled})
    return state.model_copy(update={"interventions": _replace_at(state.interventions, event.index, toggled)})


# --- Groups ---


@applies(AddGroup)
def _apply_add_group(state: AppState, event: AddGroup) -> AppState:
    k = len(state.interventions)
    if any(idx >= k for idx in event.group.intervention_indices):
        _ignored(event, "group references a missing intervention")
        return state
    if set(event.group.intervention_indices) & state.grouped_indices():
        _ignored(event, "group overlaps another active group")
        return state
    return state.model_copy(update={"groups": (*state.groups, event.group)})


@applies(RemoveGroup)
def _apply_remove_group(state: AppState, event: RemoveGroup) -> AppState:
    if not 0 <= event.index < len(state.groups):
        _ignored(event, f"no group at index {event.index}")
        return state
    archived = state.groups[event.index].model_copy(update={"archived": True})
    return state.model_copy(update={"groups": _replace_at(state.groups, event.index, archived)})


@applies(UpdateGroup)
def _apply_update_group(state: AppState, event: UpdateGroup) -> AppState:
    if not 0 <= event.index < len(state.groups):
        _ignored(event, f"no group at index {event.index}")
        return state
    k = len(state.interventions)
    if any(idx >= k for idx in event.group.intervention_indices):
        _ignored(event, "group references a missing intervention")
        return state
    if set(event.group.intervention_indices) & state.grouped_indices(exclude=event.index):
        _ignored(event, "group overlaps another active group")
        return state
    return state.model_copy(update={"groups": _replace_at(state.groups, event.index, event.group)})


# --- Note tags and checklist ---


@applies(AddNoteTag)
def _apply_add_note_tag(state: AppState, event: AddNoteTag) -> AppState:
    if any(t.label == event.tag.label for t in state.note_tag_definitions):
        _ignored(event, f"note tag {event.tag.label!r} already exists")
        return state
    return state.model_copy(update={"note_tag_definitions": (*state.note_tag_definitions, event.tag)})


@applies(UpdateNoteTag)
def _apply_update_note_tag(state: AppState, event: UpdateNoteTag) -> AppState:
    if not 0 <= event.index < len(state.note_tag_definitions):
        _ignored(event, f"no note tag at index {event.index}")
        return state
    tags = _replace_at(state.note_tag_definitions, event.index, event.tag)
    return state.model_copy(update={"note_tag_definitions": tags})


@applies(AddChecklistItem)
def _apply_add_checklist_item(state: AppState, event: AddChecklistItem) -> AppState:
    return state.model_copy(update={"checklist_items": (*state.checklist_items, event.item)})


@applies(UpdateChecklistItem)
def _apply_update_checklist_item(state: AppState, event: UpdateChecklistItem) -> AppState:
    if not 0 <= event.index < len(state.checklist_items):
        _ignored(event, f"no checklist item at index {event.index}")
        return state
    items = _replace_at(state.checklist_items, event.index, event.item)
    return state.model_copy(update={"checklist_items": items})


@applies(RemoveChecklistItem)
def _apply_remove_checklist_item(state: AppState, event: RemoveChecklistItem) -> AppState:
    if not 0 <= event.index < len(state.checklist_items):
        _ignored(event, f"no checklist item at index {event.index}")
        return state
    archived = state.checklist_items[event.index].model_copy(update={"archived": True})
    return state.model_copy(update={"checklist_items": _replace_at(state.checklist_items, event.index, archived)})


# --- Nightly flow ---


@applies(RollTonight)
def _apply_roll_tonight(state: AppState, event: RollTonight) -> AppState:
    pending = PendingNight(
        date=event.timestamp,
        interventions=event.active_interventions,
        samples=event.samples,
        asleep=False,
    )
    return state.model_copy(update={"pending_night": pending})


@applies(TogglePendingIntervention)
def _apply_toggle_pending(state: AppState, event: TogglePendingIntervention) -> AppState:
    pending = state.pending_night
    if pending is None:
        _ignored(event, "no pending night")
        return state
    if not 0 <= event.index < len(pending.interventions):
        _ignored(event, f"no pending intervention at index {event.index}")
        return state
    flags = _replace_at(pending.interventions, event.index, event.active)
    return state.model_copy(update={"pending_night": pending.model_copy(update={"interventions": flags})})


@applies(CheckChecklistItem)
def _apply_check_checklist_item(state: AppState, event: CheckChecklistItem) -> AppState:
    # Logged for later analysis only.
    return state


@applies(MarkAsleep)
def _apply_mark_asleep(state: AppState, event: MarkAsleep) -> AppState:
    pending = state.pending_night
    if pending is None:
        _ignored(event, "no pending night")
        return state
    asleep = pending.model_copy(update={"asleep": True, "asleep_at": event.timestamp})
    return state.model_copy(update={"pending_night": asleep})


@applies(ToggleNoteTag)
def _apply_toggle_note_tag(state: AppState, event: ToggleNoteTag) -> AppState:
    # Final tag values arrive with RECORD_SCORE.
    return state


@applies(RecordScore)
def _apply_record_score(state: AppState, event: RecordScore) -> AppState:
    pending = state.pending_night
    if pending is None:
        _ignored(event, "no pending night")
        return state
    k = len(state.interventions)
    observation = Observation(
        night_date=pending.date,
        sleep_date=pending.asleep_at or pending.date,
        record_date=event.timestamp,
        active_interventions=tuple(i for i, active in enumerate(pending.interventions) if active and i < k),
        score=event.score,
        notes=event.notes,
    )
    return state.model_copy(
        update={"observations": (*state.observations, observation), "pending_night": None}
    )


@applies(CancelPending)
def _apply_cancel_pending(state: AppState, event: CancelPending) -> AppState:
    return state.model_copy(update={"pending_night": None})


# --- Imports and config ---


@applies(ImportData)
def _apply_import_data(state: AppState, event: ImportData) -> AppState:
    return replay_log(event.event_log)


@applies(ImportHistorical)
def _apply_import_historical(state: AppState, event: ImportHistorical) -> AppState:
    merged = list(state.interventions)
    names = [i.name for i in merged]
    for name in event.interventions:
        if name not in names:
            merged.append(Intervention(name=name))
            names.append(name)
    index_map = [names.index(name) for name in event.interventions]

    anchor = datetime.fromisoformat(event.timestamp)
    n = len(event.nights)
    observations = list(state.observations)
    for i, night in enumerate(event.nights):
        date = night.date or (anchor - timedelta(days=n - i)).isoformat()
        active = {index_map[j] for j, flag in enumerate(night.interventions) if flag and j < len(index_map)}
        observations.append(
            Observation(
                night_date=date,
                sleep_date=date,
                record_date=date,
                active_interventions=tuple(sorted(active)),
                score=night.score,
            )
        )

    return state.model_copy(
        update={
            "interventions": tuple(merged),
            "observations": tuple(observations),
            "pending_night": None,
        }
    )


@applies(UpdateConfig)
def _apply_update_config(state: AppState, event: UpdateConfig) -> AppState:
    return state.model_copy(update={"config": event.config.apply(state.config)})


def _check_exhaustive() -> None:
    missing = [cls.__name__ for cls in EVENT_CLASSES if cls not in _HANDLERS]
    if missing:
        raise RuntimeError(f"Event classes without a replay handler: {', '.join(missing)}")


_check_exhaustive()


def apply_event(state: AppState, event: BaseEvent) -> AppState:
    """Pure fold step. Unknown events are fatal."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise UnknownEventError(str(getattr(event, "type", type(event).__name__)))
    return handler(state, event)


def replay_events(events: Iterable[BaseEvent]) -> AppState:
    """Fold events over the fixed empty state. The only way AppState is produced."""
    started = time.perf_counter()
    state = EMPTY_STATE
    count = 0
    for event in events:
        state = apply_event(state, event)
        count += 1
    duration_ms = (time.perf_counter() - started) * 1000.0
    record_replay(count, duration_ms)
    logger.debug(
        "Replayed %d events",
        count,
        extra={"bandit_event_count": count, "bandit_duration_ms": round(duration_ms, 3)},
    )
    return state


def replay_log(log: EventLog) -> AppState:
    if log.version != CURRENT_VERSION:
        raise CorruptLogError(
            f"Event log version {log.version} must be migrated to {CURRENT_VERSION} before replay"
        )
    return replay_events(log.events)
