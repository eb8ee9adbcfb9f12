"""Application service: user intents in, validated events out.

Every intent checks its preconditions against the current derived state and
raises a :class:`~sleep_bandit.errors.PolicyError` without emitting anything
when they do not hold. Accepted intents become exactly one event, which is
appended to the store *before* the in-memory state advances.
"""

from __future__ import annotations

import logging
import math
import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .errors import (
    CorruptLogError,
    DuplicateNameError,
    InvalidReferenceError,
    NoPendingNightError,
    PendingNightExistsError,
    PolicyError,
)
from .events import (
    AddChecklistItem,
    AddGroup,
    AddIntervention,
    AddNoteTag,
    BaseEvent,
    CancelPending,
    CheckChecklistItem,
    EventLog,
    HistoricalNight,
    ImportData,
    ImportHistorical,
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
    dump_event_log,
    event_type_of,
    parse_event_log,
)
from .metrics import record_posterior_computation
from .migrations import is_event_log, is_legacy_snapshot, migrate_log, migrate_snapshot
from .models import (
    AppState,
    ChecklistItem,
    Group,
    NoteTagDefinition,
    Notes,
    Observation,
    StatisticalConfigPatch,
)
from .posterior import (
    Posterior,
    build_update_report,
    compute_posterior,
    cooccurrence_counts,
    densify_observations,
    expected_improvement,
    posterior_for_state,
    summarize_posterior,
)
from .replay import apply_event, replay_log
from .selection import roll_tonight
from .store import EventStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class DerivedState:
    """Materialized view over the log. Rebuildable at any time by replay."""

    state: AppState
    event_count: int

    @classmethod
    def from_log(cls, log: EventLog) -> DerivedState:
        return cls(state=replay_log(log), event_count=len(log.events))

    def advanced(self, event: BaseEvent) -> DerivedState:
        return DerivedState(state=apply_event(self.state, event), event_count=self.event_count + 1)


class SleepTracker:
    def __init__(
        self,
        store: EventStore,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self._clock = clock or _utc_now
        self._rng = rng
        self._derived = DerivedState.from_log(store.load())
        self._posterior_key: tuple | None = None
        self._posterior: Posterior | None = None

    # --- Derived views ---

    @property
    def state(self) -> AppState:
        return self._derived.state

    @property
    def event_count(self) -> int:
        return self._derived.event_count

    @property
    def posterior(self) -> Posterior:
        state = self.state
        key = (
            tuple(state.intervention_names),
            tuple((obs.active_interventions, obs.score) for obs in state.observations),
            (state.config.baseline, state.config.tau, state.config.sigma),
        )
        if self._posterior is not None and key == self._posterior_key:
            record_posterior_computation(cache_hit=True)
            return self._posterior
        record_posterior_computation(cache_hit=False)
        self._posterior = posterior_for_state(state)
        self._posterior_key = key
        return self._posterior

    def expected_improvement(self) -> float:
        return expected_improvement(self.state.interventions, self.posterior, self.state.groups)

    def summary(self) -> list[dict]:
        return summarize_posterior(self.state.intervention_names, self.posterior)

    def cooccurrence(self) -> list[list[int]]:
        return cooccurrence_counts(len(self.state.interventions), self.state.observations)

    def rebuild(self) -> AppState:
        """Drop everything in memory and re-derive from the store."""
        self._derived = DerivedState.from_log(self.store.load())
        self._posterior = None
        self._posterior_key = None
        return self.state

    def export_log(self) -> dict[str, Any]:
        return dump_event_log(self.store.load())

    # --- Internals ---

    def _now(self) -> str:
        return self._clock().isoformat()

    def _emit(self, event: BaseEvent) -> AppState:
        self.store.append(event)
        self._derived = self._derived.advanced(event)
        logger.info(
            "Applied %s",
            event_type_of(event),
            extra={"bandit_event_type": event_type_of(event), "bandit_event_count": self.event_count},
        )
        return self.state

    def _refuse(self, exc: PolicyError) -> PolicyError:
        logger.info("Refused intent: %s", exc, extra={"bandit_error_class": "policy"})
        return exc

    def _check_index(self, kind: str, index: int, size: int) -> None:
        if not 0 <= index < size:
            raise self._refuse(InvalidReferenceError(kind, index))

    def _check_group_members(self, indices: Sequence[int], replacing: int | None = None) -> None:
        for idx in indices:
            self._check_index("intervention", idx, len(self.state.interventions))
        if len(set(indices)) < 2:
            raise self._refuse(PolicyError("A group needs at least two distinct interventions"))
        shared = sorted(set(indices) & self.state.grouped_indices(exclude=replacing))
        if shared:
            names = ", ".join(self.state.interventions[idx].name for idx in shared)
            raise self._refuse(PolicyError(f"Already in another group: {names}"))

    def _check_finite(self, what: str, value: float) -> None:
        if not math.isfinite(value):
            raise self._refuse(PolicyError(f"{what} must be a finite number"))

    def _require_pending(self, action: str):
        pending = self.state.pending_night
        if pending is None:
            raise self._refuse(NoPendingNightError(action))
        return pending

    @staticmethod
    def _clean(value: str, what: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise PolicyError(f"{what} must not be empty")
        return cleaned

    # --- Interventions ---

    def add_intervention(self, name: str) -> AppState:
        name = self._clean(name, "Intervention name")
        if name in self.state.intervention_names:
            raise self._refuse(DuplicateNameError("Intervention", name))
        return self._emit(AddIntervention(timestamp=self._now(), name=name))

    def rename_intervention(self, index: int, new_name: str) -> AppState:
        self._check_index("intervention", index, len(self.state.interventions))
        new_name = self._clean(new_name, "Intervention name")
        if new_name == self.state.interventions[index].name:
            return self.state
        if new_name in self.state.intervention_names:
            raise self._refuse(DuplicateNameError("Intervention", new_name))
        return self._emit(RenameIntervention(timestamp=self._now(), index=index, new_name=new_name))

    def toggle_intervention(self, index: int) -> AppState:
        self._check_index("intervention", index, len(self.state.interventions))
        return self._emit(ToggleInterventionDisabled(timestamp=self._now(), index=index))

    # --- Groups ---

    def add_group(self, name: str, intervention_indices: Sequence[int]) -> AppState:
        name = self._clean(name, "Group name")
        self._check_group_members(intervention_indices)
        group = Group(name=name, intervention_indices=tuple(intervention_indices))
        return self._emit(AddGroup(timestamp=self._now(), group=group))

    def remove_group(self, index: int) -> AppState:
        self._check_index("group", index, len(self.state.groups))
        if self.state.groups[index].archived:
            raise self._refuse(InvalidReferenceError("group", index))
        return self._emit(RemoveGroup(timestamp=self._now(), index=index))

    def update_group(self, index: int, name: str, intervention_indices: Sequence[int]) -> AppState:
        self._check_index("group", index, len(self.state.groups))
        name = self._clean(name, "Group name")
        self._check_group_members(intervention_indices, replacing=index)
        group = Group(name=name, intervention_indices=tuple(intervention_indices))
        return self._emit(UpdateGroup(timestamp=self._now(), index=index, group=group))

    # --- Note tags and checklist ---

    def add_note_tag(self, label: str, description: str = "") -> AppState:
        label = self._clean(label, "Note tag label")
        if any(t.label == label for t in self.state.note_tag_definitions):
            raise self._refuse(DuplicateNameError("Note tag", label))
        tag = NoteTagDefinition(label=label, description=description)
        return self._emit(AddNoteTag(timestamp=self._now(), tag=tag))

    def update_note_tag(self, index: int, label: str, description: str = "") -> AppState:
        self._check_index("note tag", index, len(self.state.note_tag_definitions))
        label = self._clean(label, "Note tag label")
        if any(t.label == label for i, t in enumerate(self.state.note_tag_definitions) if i != index):
            raise self._refuse(DuplicateNameError("Note tag", label))
        tag = NoteTagDefinition(label=label, description=description)
        return self._emit(UpdateNoteTag(timestamp=self._now(), index=index, tag=tag))

    def add_checklist_item(self, label: str, description: str = "") -> AppState:
        item = ChecklistItem(label=self._clean(label, "Checklist label"), description=description)
        return self._emit(AddChecklistItem(timestamp=self._now(), item=item))

    def update_checklist_item(self, index: int, label: str, description: str = "") -> AppState:
        self._check_index("checklist item", index, len(self.state.checklist_items))
        item = ChecklistItem(label=self._clean(label, "Checklist label"), description=description)
        return self._emit(UpdateChecklistItem(timestamp=self._now(), index=index, item=item))

    def remove_checklist_item(self, index: int) -> AppState:
        self._check_index("checklist item", index, len(self.state.checklist_items))
        if self.state.checklist_items[index].archived:
            raise self._refuse(InvalidReferenceError("checklist item", index))
        return self._emit(RemoveChecklistItem(timestamp=self._now(), index=index))

    # --- Nightly flow ---

    def roll_tonight(self) -> AppState:
        if self.state.pending_night is not None:
            raise self._refuse(PendingNightExistsError())
        try:
            samples, active = roll_tonight(self.state, self.posterior, self._rng)
        except PolicyError as exc:
            raise self._refuse(exc) from None
        return self._emit(
            RollTonight(timestamp=self._now(), samples=tuple(samples), active_interventions=tuple(active))
        )

    def toggle_pending_intervention(self, index: int, active: bool) -> AppState:
        pending = self._require_pending("change tonight's interventions")
        self._check_index("intervention", index, len(pending.interventions))
        return self._emit(TogglePendingIntervention(timestamp=self._now(), index=index, active=active))

    def check_checklist_item(self, index: int, checked: bool = True) -> AppState:
        self._require_pending("tick the checklist")
        self._check_index("checklist item", index, len(self.state.checklist_items))
        label = self.state.checklist_items[index].label
        return self._emit(CheckChecklistItem(timestamp=self._now(), index=index, label=label, checked=checked))

    def mark_asleep(self) -> AppState:
        pending = self._require_pending("mark asleep")
        if pending.asleep:
            raise self._refuse(PolicyError("Tonight is already marked asleep"))
        return self._emit(MarkAsleep(timestamp=self._now()))

    def toggle_note_tag(self, label: str, checked: bool) -> AppState:
        self._require_pending("toggle a note tag")
        if not any(t.label == label for t in self.state.note_tag_definitions):
            raise self._refuse(PolicyError(f"Unknown note tag {label!r}"))
        return self._emit(ToggleNoteTag(timestamp=self._now(), label=label, checked=checked))

    def record_score(self, score: float, notes: Notes | None = None) -> dict:
        """Finalize tonight and return the before/after update report."""
        pending = self._require_pending("record a score")
        self._check_finite("Score", score)
        old = self.posterior
        self._emit(RecordScore(timestamp=self._now(), score=score, notes=notes or Notes()))
        return build_update_report(
            self.state.interventions,
            old,
            self.posterior,
            pending.interventions,
            score,
            pending.date,
            self.state.config.tau,
        )

    def preview_score(self, score: float) -> dict:
        """What record_score would report, without emitting anything."""
        pending = self._require_pending("preview a score")
        self._check_finite("Score", score)
        state = self.state
        hypothetical = Observation(
            night_date=pending.date,
            sleep_date=pending.asleep_at or pending.date,
            record_date=pending.date,
            active_interventions=tuple(
                i for i, active in enumerate(pending.interventions) if active and i < len(state.interventions)
            ),
            score=score,
        )
        dense = densify_observations((*state.observations, hypothetical), len(state.interventions))
        new = compute_posterior(state.intervention_names, dense, state.config)
        return build_update_report(
            state.interventions,
            self.posterior,
            new,
            pending.interventions,
            score,
            pending.date,
            state.config.tau,
            preview=True,
        )

    def cancel_pending(self) -> AppState:
        self._require_pending("cancel")
        return self._emit(CancelPending(timestamp=self._now()))

    # --- Imports and config ---

    def import_backup(self, data: Any) -> AppState:
        """Replace state with a full backup: an exported log or a legacy snapshot."""
        if is_event_log(data):
            log = parse_event_log(migrate_log(data))
        elif is_legacy_snapshot(data):
            log = parse_event_log(migrate_snapshot(data, timestamp=self._now()))
        else:
            raise CorruptLogError("Backup is neither an event log nor a legacy snapshot")
        return self._emit(ImportData(timestamp=self._now(), event_log=log))

    def import_historical(self, interventions: Sequence[str], nights: Sequence[dict | HistoricalNight]) -> AppState:
        names = [self._clean(name, "Intervention name") for name in interventions]
        if len(set(names)) != len(names):
            raise self._refuse(PolicyError("Imported intervention names must be unique"))
        parsed = [n if isinstance(n, HistoricalNight) else HistoricalNight.model_validate(n) for n in nights]
        for i, night in enumerate(parsed):
            if len(night.interventions) != len(names):
                raise self._refuse(
                    PolicyError(
                        f"Night {i} has {len(night.interventions)} intervention flags, expected {len(names)}"
                    )
                )
        return self._emit(
            ImportHistorical(timestamp=self._now(), interventions=tuple(names), nights=tuple(parsed))
        )

    def update_config(
        self,
        baseline: float | None = None,
        tau: float | None = None,
        sigma: float | None = None,
    ) -> AppState:
        if baseline is None and tau is None and sigma is None:
            raise self._refuse(PolicyError("Nothing to update"))
        for name, value in (("baseline", baseline), ("tau", tau), ("sigma", sigma)):
            if value is None:
                continue
            self._check_finite(name, value)
            if name != "baseline" and value <= 0:
                raise self._refuse(PolicyError(f"{name} must be positive"))
        patch = StatisticalConfigPatch(baseline=baseline, tau=tau, sigma=sigma)
        return self._emit(UpdateConfig(timestamp=self._now(), config=patch))
