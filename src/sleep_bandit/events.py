"""The closed catalog of event types and the persisted EventLog.

``AppEvent`` is a discriminated union over ``type``. Parsing a raw log goes
through :func:`parse_event_log`, which turns every validation failure into a
:class:`~sleep_bandit.errors.CorruptLogError`; nothing is skipped or coerced.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union, get_args

from pydantic import Field, TypeAdapter, ValidationError, field_validator

from .errors import CorruptLogError, UnknownEventError
from .models import (
    AppState,
    ChecklistItem,
    FrozenModel,
    Group,
    NoteTagDefinition,
    Notes,
    StatisticalConfigPatch,
    validate_timestamp,
)

CURRENT_VERSION = 2


def _non_empty_name(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("name must not be empty")
    return cleaned


class BaseEvent(FrozenModel):
    timestamp: str

    @field_validator("timestamp")
    @classmethod
    def validate_event_timestamp(cls, value: str) -> str:
        return validate_timestamp(value)


class InitEvent(BaseEvent):
    type: Literal["INIT"] = "INIT"
    state: AppState


class AddIntervention(BaseEvent):
    type: Literal["ADD_INTERVENTION"] = "ADD_INTERVENTION"
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _non_empty_name(value)


class RenameIntervention(BaseEvent):
    type: Literal["RENAME_INTERVENTION"] = "RENAME_INTERVENTION"
    index: int
    new_name: str

    @field_validator("new_name")
    @classmethod
    def validate_new_name(cls, value: str) -> str:
        return _non_empty_name(value)


class ToggleInterventionDisabled(BaseEvent):
    type: Literal["TOGGLE_INTERVENTION_DISABLED"] = "TOGGLE_INTERVENTION_DISABLED"
    index: int


class AddGroup(BaseEvent):
    type: Literal["ADD_GROUP"] = "ADD_GROUP"
    group: Group


class RemoveGroup(BaseEvent):
    type: Literal["REMOVE_GROUP"] = "REMOVE_GROUP"
    index: int


class UpdateGroup(BaseEvent):
    type: Literal["UPDATE_GROUP"] = "UPDATE_GROUP"
    index: int
    group: Group


class AddNoteTag(BaseEvent):
    type: Literal["ADD_NOTE_TAG"] = "ADD_NOTE_TAG"
    tag: NoteTagDefinition


class UpdateNoteTag(BaseEvent):
    type: Literal["UPDATE_NOTE_TAG"] = "UPDATE_NOTE_TAG"
    index: int
    tag: NoteTagDefinition


class AddChecklistItem(BaseEvent):
    type: Literal["ADD_CHECKLIST_ITEM"] = "ADD_CHECKLIST_ITEM"
    item: ChecklistItem


class UpdateChecklistItem(BaseEvent):
    type: Literal["UPDATE_CHECKLIST_ITEM"] = "UPDATE_CHECKLIST_ITEM"
    index: int
    item: ChecklistItem


class RemoveChecklistItem(BaseEvent):
    type: Literal["REMOVE_CHECKLIST_ITEM"] = "REMOVE_CHECKLIST_ITEM"
    index: int


class RollTonight(BaseEvent):
    type: Literal["ROLL_TONIGHT"] = "ROLL_TONIGHT"
    samples: tuple[float, ...]
    active_interventions: tuple[bool, ...]


class TogglePendingIntervention(BaseEvent):
    type: Literal["TOGGLE_PENDING_INTERVENTION"] = "TOGGLE_PENDING_INTERVENTION"
    index: int
    active: bool


class CheckChecklistItem(BaseEvent):
    type: Literal["CHECK_CHECKLIST_ITEM"] = "CHECK_CHECKLIST_ITEM"
    index: int
    label: str
    checked: bool


class MarkAsleep(BaseEvent):
    type: Literal["MARK_ASLEEP"] = "MARK_ASLEEP"


class ToggleNoteTag(BaseEvent):
    type: Literal["TOGGLE_NOTE_TAG"] = "TOGGLE_NOTE_TAG"
    label: str
    checked: bool


class RecordScore(BaseEvent):
    type: Literal["RECORD_SCORE"] = "RECORD_SCORE"
    score: float = Field(allow_inf_nan=False)
    notes: Notes = Field(default_factory=Notes)


class CancelPending(BaseEvent):
    type: Literal["CANCEL_PENDING"] = "CANCEL_PENDING"


class ImportData(BaseEvent):
    type: Literal["IMPORT_DATA"] = "IMPORT_DATA"
    event_log: EventLog


class HistoricalNight(FrozenModel):
    interventions: tuple[bool, ...]
    score: float = Field(allow_inf_nan=False)
    date: str | None = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return validate_timestamp(value)


class ImportHistorical(BaseEvent):
    type: Literal["IMPORT_HISTORICAL"] = "IMPORT_HISTORICAL"
    interventions: tuple[str, ...]
    nights: tuple[HistoricalNight, ...] = ()

    @field_validator("interventions")
    @classmethod
    def validate_names(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(_non_empty_name(name) for name in value)


class UpdateConfig(BaseEvent):
    type: Literal["UPDATE_CONFIG"] = "UPDATE_CONFIG"
    config: StatisticalConfigPatch


AppEvent = Annotated[
    Union[
        InitEvent,
        AddIntervention,
        RenameIntervention,
        ToggleInterventionDisabled,
        AddGroup,
        RemoveGroup,
        UpdateGroup,
        AddNoteTag,
        UpdateNoteTag,
        AddChecklistItem,
        UpdateChecklistItem,
        RemoveChecklistItem,
        RollTonight,
        TogglePendingIntervention,
        CheckChecklistItem,
        MarkAsleep,
        ToggleNoteTag,
        RecordScore,
        CancelPending,
        ImportData,
        ImportHistorical,
        UpdateConfig,
    ],
    Field(discriminator="type"),
]


class EventLog(FrozenModel):
    version: int = Field(default=CURRENT_VERSION, ge=0)
    events: tuple[AppEvent, ...] = ()

    def appended(self, event: BaseEvent) -> EventLog:
        return self.model_copy(update={"events": (*self.events, event)})


ImportData.model_rebuild()
EventLog.model_rebuild()

EVENT_CLASSES: tuple[type[BaseEvent], ...] = get_args(get_args(AppEvent)[0])
EVENT_TYPES: dict[str, type[BaseEvent]] = {
    cls.model_fields["type"].default: cls for cls in EVENT_CLASSES
}

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(AppEvent)


def event_type_of(event: BaseEvent) -> str:
    return getattr(event, "type")


def parse_event(data: Any, *, position: int | None = None) -> BaseEvent:
    where = f" at position {position}" if position is not None else ""
    if not isinstance(data, dict):
        raise CorruptLogError(f"Event{where} is not an object")
    event_type = data.get("type")
    if not isinstance(event_type, str):
        raise CorruptLogError(f"Event{where} has no type")
    if event_type not in EVENT_TYPES:
        raise UnknownEventError(event_type)
    try:
        return _EVENT_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise CorruptLogError(f"Malformed {event_type} event{where}: {exc}") from exc


def parse_event_log(data: Any) -> EventLog:
    """Validate a raw, already-migrated log. Raises CorruptLogError."""
    if not isinstance(data, dict):
        raise CorruptLogError("Event log is not an object")
    version = data.get("version")
    raw_events = data.get("events")
    if not isinstance(version, int) or isinstance(version, bool):
        raise CorruptLogError("Event log has no integer version")
    if not isinstance(raw_events, list):
        raise CorruptLogError("Event log has no events list")
    events = tuple(parse_event(raw, position=i) for i, raw in enumerate(raw_events))
    try:
        return EventLog(version=version, events=events)
    except ValidationError as exc:
        raise CorruptLogError(f"Malformed event log: {exc}") from exc


def dump_event(event: BaseEvent) -> dict[str, Any]:
    return event.model_dump(mode="json", by_alias=True)


def dump_event_log(log: EventLog) -> dict[str, Any]:
    return log.model_dump(mode="json", by_alias=True)
