"""Persisted data shapes: interventions, groups, observations and AppState.

All models are frozen and serialise with camelCase aliases, the shape of the
exported event log. Input accepts either the alias or the field name.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_BASELINE = 69.0
DEFAULT_TAU = 2.5
DEFAULT_SIGMA = 12.0


def validate_timestamp(value: str) -> str:
    """Check that ``value`` parses as ISO-8601 and return it unchanged."""
    try:
        datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"not an ISO-8601 timestamp: {value!r}") from exc
    return value


class FrozenModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class Intervention(FrozenModel):
    name: str
    disabled: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("intervention name must not be empty")
        return cleaned


class Group(FrozenModel):
    """Mutually exclusive interventions, referenced by index."""

    name: str
    intervention_indices: tuple[int, ...]
    archived: bool = False

    @field_validator("intervention_indices")
    @classmethod
    def validate_members(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        seen: list[int] = []
        for idx in value:
            if idx < 0:
                raise ValueError("intervention indices must be non-negative")
            if idx not in seen:
                seen.append(idx)
        if len(seen) < 2:
            raise ValueError("a group needs at least two distinct interventions")
        return tuple(seen)


class NoteTagDefinition(FrozenModel):
    label: str
    description: str


class ChecklistItem(FrozenModel):
    label: str
    description: str
    archived: bool = False


class Notes(FrozenModel):
    tags: dict[str, bool] = Field(default_factory=dict)
    text: str = ""


class Observation(FrozenModel):
    """A finalized night. Never edited once appended."""

    night_date: str
    sleep_date: str
    record_date: str
    active_interventions: tuple[int, ...] = ()
    score: float = Field(allow_inf_nan=False)
    notes: Notes | None = None

    @field_validator("night_date", "sleep_date", "record_date")
    @classmethod
    def validate_dates(cls, value: str) -> str:
        return validate_timestamp(value)

    @field_validator("active_interventions")
    @classmethod
    def normalize_active(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if any(idx < 0 for idx in value):
            raise ValueError("active intervention indices must be non-negative")
        return tuple(sorted(set(value)))


class PendingNight(FrozenModel):
    date: str
    interventions: tuple[bool, ...]
    samples: tuple[float, ...] = ()
    asleep: bool = False
    asleep_at: str | None = None


class StatisticalConfig(FrozenModel):
    baseline: float = Field(default=DEFAULT_BASELINE, allow_inf_nan=False)
    tau: float = Field(default=DEFAULT_TAU, gt=0, allow_inf_nan=False)
    sigma: float = Field(default=DEFAULT_SIGMA, gt=0, allow_inf_nan=False)


class StatisticalConfigPatch(FrozenModel):
    baseline: float | None = Field(default=None, allow_inf_nan=False)
    tau: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    sigma: float | None = Field(default=None, gt=0, allow_inf_nan=False)

    def apply(self, config: StatisticalConfig) -> StatisticalConfig:
        return config.model_copy(update=self.model_dump(exclude_none=True))


DEFAULT_NOTE_TAG_DEFINITIONS: tuple[NoteTagDefinition, ...] = (
    NoteTagDefinition(label="wokeUpLong", description="Woke up in middle of night (1+ hours)"),
    NoteTagDefinition(label="nightmares", description="Had nightmares"),
    NoteTagDefinition(label="nightSweats", description="Had night sweats"),
)


class AppState(FrozenModel):
    """Materialized snapshot. Produced only by replaying the event log."""

    interventions: tuple[Intervention, ...] = ()
    observations: tuple[Observation, ...] = ()
    pending_night: PendingNight | None = None
    groups: tuple[Group, ...] = ()
    config: StatisticalConfig = Field(default_factory=StatisticalConfig)
    note_tag_definitions: tuple[NoteTagDefinition, ...] = DEFAULT_NOTE_TAG_DEFINITIONS
    checklist_items: tuple[ChecklistItem, ...] = ()

    @model_validator(mode="after")
    def validate_group_references(self) -> "AppState":
        k = len(self.interventions)
        for group in self.groups:
            if any(idx >= k for idx in group.intervention_indices):
                raise ValueError(f"group {group.name!r} references a missing intervention")
        return self

    @property
    def intervention_names(self) -> list[str]:
        return [i.name for i in self.interventions]

    def active_groups(self) -> list[Group]:
        return [g for g in self.groups if not g.archived]

    def grouped_indices(self, exclude: int | None = None) -> set[int]:
        """Interventions already claimed by a non-archived group, skipping group ``exclude``."""
        return {
            idx
            for i, group in enumerate(self.groups)
            if not group.archived and i != exclude
            for idx in group.intervention_indices
        }

    def enabled_count(self) -> int:
        return sum(1 for i in self.interventions if not i.disabled)


EMPTY_STATE = AppState()
