"""Tests for replaying the event log into AppState."""

import pytest

from sleep_bandit.errors import CorruptLogError, UnknownEventError
from sleep_bandit.events import (
    CURRENT_VERSION,
    AddChecklistItem,
    AddGroup,
    AddIntervention,
    AddNoteTag,
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
    parse_event_log,
)
from sleep_bandit.models import (
    EMPTY_STATE,
    AppState,
    ChecklistItem,
    Group,
    Intervention,
    NoteTagDefinition,
    Notes,
    StatisticalConfigPatch,
)
from sleep_bandit.replay import apply_event, replay_events, replay_log


def ts(minute: int) -> str:
    return f"2026-03-01T21:{minute:02d}:00+00:00"


def _night_events(start=0, score=80.0, active=(True, False)):
    return [
        RollTonight(timestamp=ts(start), samples=(1.0, -1.0), active_interventions=active),
        MarkAsleep(timestamp=ts(start + 1)),
        RecordScore(timestamp=ts(start + 2), score=score, notes=Notes(tags={"nightmares": True})),
    ]


@pytest.fixture
def base_events():
    return [
        AddIntervention(timestamp=ts(0), name="Melatonin"),
        AddIntervention(timestamp=ts(1), name="Exercise"),
    ]


class TestReplayBasics:
    def test_empty_log_is_empty_state(self):
        assert replay_events([]) == EMPTY_STATE

    def test_replay_is_deterministic(self, base_events):
        events = base_events + _night_events(10)
        assert replay_events(events) == replay_events(list(events))

    def test_replay_is_incremental(self, base_events):
        events = base_events + _night_events(10) + [ToggleInterventionDisabled(timestamp=ts(20), index=1)]
        full = replay_events(events)
        prefix = replay_events(events[:-1])
        assert apply_event(prefix, events[-1]) == full

    def test_unknown_event_fails_whole_replay(self):
        raw = {
            "version": CURRENT_VERSION,
            "events": [
                {"type": "ADD_INTERVENTION", "timestamp": ts(0), "name": "A"},
                {"type": "WARP_DRIVE", "timestamp": ts(1)},
            ],
        }
        with pytest.raises(UnknownEventError):
            replay_log(parse_event_log(raw))

    def test_apply_event_rejects_unregistered_class(self):
        class NotAnEvent:
            type = "NOT_AN_EVENT"
            timestamp = ts(0)

        with pytest.raises(UnknownEventError):
            apply_event(EMPTY_STATE, NotAnEvent())

    def test_replay_log_requires_current_version(self):
        with pytest.raises(CorruptLogError):
            replay_log(EventLog(version=1))


class TestInterventions:
    def test_add_and_duplicate_is_noop(self, base_events):
        state = replay_events(base_events + [AddIntervention(timestamp=ts(2), name="Melatonin")])
        assert state.intervention_names == ["Melatonin", "Exercise"]

    def test_rename_keeps_index(self, base_events):
        state = replay_events(base_events + [RenameIntervention(timestamp=ts(2), index=0, new_name="Mel")])
        assert state.intervention_names == ["Mel", "Exercise"]

    def test_rename_out_of_range_is_noop(self, base_events):
        before = replay_events(base_events)
        after = replay_events(base_events + [RenameIntervention(timestamp=ts(2), index=9, new_name="X")])
        assert after == before

    def test_toggle_disabled_twice(self, base_events):
        toggle = ToggleInterventionDisabled(timestamp=ts(2), index=0)
        assert replay_events(base_events + [toggle]).interventions[0].disabled is True
        assert replay_events(base_events + [toggle, toggle]).interventions[0].disabled is False

    def test_add_during_pending_extends_vector(self, base_events):
        events = base_events + _night_events(10)[:1] + [AddIntervention(timestamp=ts(15), name="Tea")]
        state = replay_events(events)
        assert state.pending_night.interventions == (True, False, False)


class TestGroups:
    def test_add_update_remove(self, base_events):
        group = Group(name="Pick one", intervention_indices=(0, 1))
        state = replay_events(base_events + [AddGroup(timestamp=ts(2), group=group)])
        assert state.groups == (group,)

        renamed = Group(name="Either", intervention_indices=(1, 0))
        state = apply_event(state, UpdateGroup(timestamp=ts(3), index=0, group=renamed))
        assert state.groups[0].name == "Either"

        state = apply_event(state, RemoveGroup(timestamp=ts(4), index=0))
        assert state.groups[0].archived is True
        assert state.active_groups() == []

    def test_group_referencing_missing_intervention_is_noop(self, base_events):
        group = Group(name="Bad", intervention_indices=(0, 5))
        state = replay_events(base_events + [AddGroup(timestamp=ts(2), group=group)])
        assert state.groups == ()

    def test_overlapping_group_is_noop(self, base_events):
        first = Group(name="First", intervention_indices=(0, 1))
        events = base_events + [
            AddIntervention(timestamp=ts(2), name="Tea"),
            AddGroup(timestamp=ts(3), group=first),
            AddGroup(timestamp=ts(4), group=Group(name="Second", intervention_indices=(1, 2))),
        ]
        state = replay_events(events)
        assert state.groups == (first,)

        # updating a group may keep its own members but not take another group's
        state = apply_event(state, AddGroup(timestamp=ts(5), group=Group(name="Other", intervention_indices=(2, 0))))
        assert len(state.groups) == 1
        same = Group(name="Same", intervention_indices=(1, 0))
        state = apply_event(state, UpdateGroup(timestamp=ts(6), index=0, group=same))
        assert state.groups == (same,)

    def test_archived_group_frees_its_members(self, base_events):
        group = Group(name="Either", intervention_indices=(0, 1))
        events = base_events + [
            AddGroup(timestamp=ts(2), group=group),
            RemoveGroup(timestamp=ts(3), index=0),
            AddGroup(timestamp=ts(4), group=group),
        ]
        state = replay_events(events)
        assert [g.archived for g in state.groups] == [True, False]


class TestNotesAndChecklist:
    def test_default_note_tags(self):
        labels = [t.label for t in EMPTY_STATE.note_tag_definitions]
        assert labels == ["wokeUpLong", "nightmares", "nightSweats"]

    def test_add_update_note_tag(self):
        tag = NoteTagDefinition(label="headache", description="Headache")
        state = replay_events(
            [
                AddNoteTag(timestamp=ts(0), tag=tag),
                AddNoteTag(timestamp=ts(1), tag=tag),
                UpdateNoteTag(timestamp=ts(2), index=0, tag=NoteTagDefinition(label="wokeUp", description="")),
            ]
        )
        assert [t.label for t in state.note_tag_definitions] == ["wokeUp", "nightmares", "nightSweats", "headache"]

    def test_checklist_lifecycle(self):
        item = ChecklistItem(label="screens", description="Screens off")
        state = replay_events(
            [
                AddChecklistItem(timestamp=ts(0), item=item),
                UpdateChecklistItem(
                    timestamp=ts(1), index=0, item=ChecklistItem(label="screens", description="Off by 22:00")
                ),
                RemoveChecklistItem(timestamp=ts(2), index=0),
            ]
        )
        assert state.checklist_items == (ChecklistItem(label="screens", description="Off by 22:00", archived=True),)

    def test_logged_only_events_leave_state_unchanged(self, base_events):
        state = replay_events(base_events + _night_events(10)[:1])
        after = apply_event(state, CheckChecklistItem(timestamp=ts(20), index=0, label="x", checked=True))
        after = apply_event(after, ToggleNoteTag(timestamp=ts(21), label="nightmares", checked=True))
        assert after == state


class TestNightlyFlow:
    def test_full_night_produces_sparse_observation(self, base_events):
        state = replay_events(base_events + _night_events(10))
        assert state.pending_night is None
        (obs,) = state.observations
        assert obs.active_interventions == (0,)
        assert obs.night_date == ts(10)
        assert obs.sleep_date == ts(11)
        assert obs.record_date == ts(12)
        assert obs.score == 80.0
        assert obs.notes.tags == {"nightmares": True}

    def test_sleep_date_falls_back_to_night_date(self, base_events):
        roll, _, record = _night_events(10)
        state = replay_events(base_events + [roll, record])
        assert state.observations[0].sleep_date == ts(10)

    def test_toggle_pending(self, base_events):
        events = base_events + _night_events(10)[:1] + [TogglePendingIntervention(timestamp=ts(11), index=1, active=True)]
        assert replay_events(events).pending_night.interventions == (True, True)

    def test_record_without_pending_is_noop(self, base_events):
        state = replay_events(base_events + [RecordScore(timestamp=ts(3), score=50)])
        assert state.observations == ()

    def test_cancel_discards_pending(self, base_events):
        events = base_events + _night_events(10)[:1] + [CancelPending(timestamp=ts(11))]
        state = replay_events(events)
        assert state.pending_night is None
        assert state.observations == ()

    def test_observations_are_append_only(self, base_events):
        first = replay_events(base_events + _night_events(10))
        second = replay_events(base_events + _night_events(10) + _night_events(20, score=60, active=(False, True)))
        assert second.observations[0] == first.observations[0]
        assert len(second.observations) == 2


class TestImportsAndConfig:
    def test_init_replaces_state(self, base_events):
        seeded = AppState(interventions=(Intervention(name="Tea"),))
        state = replay_events(base_events + [InitEvent(timestamp=ts(2), state=seeded)])
        assert state == seeded

    def test_import_data_replaces_state_with_embedded_log(self, base_events):
        inner = EventLog(events=(AddIntervention(timestamp=ts(0), name="Magnesium"),))
        state = replay_events(base_events + _night_events(10) + [ImportData(timestamp=ts(30), event_log=inner)])
        assert state.intervention_names == ["Magnesium"]
        assert state.observations == ()

    def test_import_historical_merges_by_name(self, base_events):
        event = ImportHistorical(
            timestamp="2026-03-10T08:00:00+00:00",
            interventions=("Exercise", "Tea"),
            nights=(
                {"interventions": (True, True), "score": 70},
                {"interventions": (False, True), "score": 65, "date": "2026-01-05T22:00:00+00:00"},
            ),
        )
        state = replay_events(base_events + _night_events(10)[:1] + [event])
        assert state.intervention_names == ["Melatonin", "Exercise", "Tea"]
        assert state.pending_night is None
        first, second = state.observations
        assert first.active_interventions == (1, 2)
        assert first.night_date == "2026-03-08T08:00:00+00:00"
        assert second.active_interventions == (2,)
        assert second.night_date == "2026-01-05T22:00:00+00:00"

    def test_update_config_is_partial(self):
        state = replay_events([UpdateConfig(timestamp=ts(0), config=StatisticalConfigPatch(sigma=10))])
        assert state.config.sigma == 10
        assert state.config.tau == 2.5
        assert state.config.baseline == 69
