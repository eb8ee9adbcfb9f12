"""Tests for the application service that turns intents into events."""

import pytest

from sleep_bandit.errors import (
    CorruptLogError,
    DuplicateNameError,
    InvalidReferenceError,
    NoEnabledInterventionsError,
    NoPendingNightError,
    PendingNightExistsError,
    PolicyError,
)
from sleep_bandit.events import CURRENT_VERSION, ImportData
from sleep_bandit.metrics import get_metrics
from sleep_bandit.models import Notes
from sleep_bandit.replay import replay_log
from sleep_bandit.tracker import DerivedState, SleepTracker


def _with_two(tracker):
    tracker.add_intervention("Melatonin")
    tracker.add_intervention("Exercise")
    return tracker


class TestEmission:
    def test_each_intent_appends_one_event(self, tracker, memory_store):
        _with_two(tracker)
        assert [e.type for e in memory_store.appended] == ["ADD_INTERVENTION", "ADD_INTERVENTION"]
        assert tracker.event_count == 2

    def test_append_happens_before_state_update(self, tracker, memory_store):
        memory_store.fail_next_append = True
        with pytest.raises(OSError):
            tracker.add_intervention("Melatonin")
        assert tracker.state.interventions == ()
        assert tracker.event_count == 0

    def test_derived_state_matches_replay(self, tracker, memory_store):
        _with_two(tracker)
        tracker.roll_tonight()
        tracker.mark_asleep()
        tracker.record_score(74)
        assert tracker.state == replay_log(memory_store.load())

    def test_rebuild_rederives_from_store(self, tracker, memory_store):
        _with_two(tracker)
        assert tracker.rebuild() == DerivedState.from_log(memory_store.load()).state

    def test_loads_existing_log(self, memory_store, clock):
        first = SleepTracker(memory_store, clock=clock)
        first.add_intervention("Tea")
        second = SleepTracker(memory_store, clock=clock)
        assert second.state.intervention_names == ["Tea"]
        assert second.event_count == 1

    def test_timestamps_come_from_clock(self, tracker, memory_store):
        tracker.add_intervention("Tea")
        assert memory_store.appended[0].timestamp == "2026-03-01T21:00:00+00:00"


class TestPolicyRefusals:
    def test_refusals_emit_nothing(self, tracker, memory_store):
        _with_two(tracker)
        before = len(memory_store.appended)
        with pytest.raises(DuplicateNameError):
            tracker.add_intervention("Melatonin")
        with pytest.raises(InvalidReferenceError):
            tracker.toggle_intervention(7)
        with pytest.raises(NoPendingNightError):
            tracker.record_score(70)
        with pytest.raises(NoPendingNightError):
            tracker.mark_asleep()
        with pytest.raises(PolicyError):
            tracker.add_group("Solo", [0, 0])
        with pytest.raises(PolicyError):
            tracker.update_config()
        with pytest.raises(PolicyError):
            tracker.update_config(tau=0)
        with pytest.raises(PolicyError):
            tracker.add_intervention("   ")
        assert len(memory_store.appended) == before

    def test_roll_requires_enabled_intervention(self, tracker):
        with pytest.raises(NoEnabledInterventionsError):
            tracker.roll_tonight()
        tracker.add_intervention("Tea")
        tracker.toggle_intervention(0)
        with pytest.raises(NoEnabledInterventionsError):
            tracker.roll_tonight()

    def test_cannot_roll_twice(self, tracker):
        _with_two(tracker)
        tracker.roll_tonight()
        with pytest.raises(PendingNightExistsError):
            tracker.roll_tonight()

    def test_rename_to_existing_name(self, tracker):
        _with_two(tracker)
        with pytest.raises(DuplicateNameError):
            tracker.rename_intervention(1, "Melatonin")

    def test_rename_to_same_name_is_noop(self, tracker, memory_store):
        _with_two(tracker)
        tracker.rename_intervention(0, "Melatonin")
        assert len(memory_store.appended) == 2

    def test_cannot_remove_archived_group(self, tracker):
        _with_two(tracker)
        tracker.add_group("Either", [0, 1])
        tracker.remove_group(0)
        with pytest.raises(InvalidReferenceError):
            tracker.remove_group(0)

    def test_groups_must_be_disjoint(self, tracker, memory_store):
        _with_two(tracker)
        tracker.add_intervention("Tea")
        tracker.add_intervention("Coffee")
        tracker.add_group("Evening", [0, 1])
        tracker.add_group("Drinks", [2, 3])
        before = len(memory_store.appended)
        with pytest.raises(PolicyError, match="Already in another group: Melatonin, Tea"):
            tracker.add_group("Mixed", [2, 0])
        with pytest.raises(PolicyError, match="Already in another group: Coffee"):
            tracker.update_group(0, "Evening", [0, 1, 3])
        assert len(memory_store.appended) == before

        tracker.update_group(0, "Either", [1, 0])
        assert tracker.state.groups[0].intervention_indices == (1, 0)

    def test_archived_group_releases_members(self, tracker):
        _with_two(tracker)
        tracker.add_group("Either", [0, 1])
        tracker.remove_group(0)
        tracker.add_group("Again", [1, 0])
        assert [g.archived for g in tracker.state.groups] == [True, False]

    def test_scores_must_be_finite(self, tracker, memory_store):
        _with_two(tracker)
        tracker.roll_tonight()
        before = len(memory_store.appended)
        for bad in (float("nan"), float("inf"), float("-inf")):
            with pytest.raises(PolicyError, match="finite"):
                tracker.record_score(bad)
            with pytest.raises(PolicyError, match="finite"):
                tracker.preview_score(bad)
        with pytest.raises(PolicyError, match="finite"):
            tracker.update_config(baseline=float("nan"))
        with pytest.raises(PolicyError, match="finite"):
            tracker.update_config(sigma=float("inf"))
        assert len(memory_store.appended) == before
        assert tracker.state.pending_night is not None

    def test_unknown_note_tag(self, tracker):
        _with_two(tracker)
        tracker.roll_tonight()
        with pytest.raises(PolicyError, match="Unknown note tag"):
            tracker.toggle_note_tag("sleepwalking", True)


class TestNightlyFlow:
    def test_full_night(self, tracker, memory_store):
        _with_two(tracker)
        tracker.add_checklist_item("screens", "Screens off by 22:00")
        state = tracker.roll_tonight()
        pending = state.pending_night
        assert len(pending.interventions) == 2
        assert len(pending.samples) == 2

        tracker.toggle_pending_intervention(1, True)
        tracker.check_checklist_item(0)
        tracker.mark_asleep()
        tracker.toggle_note_tag("nightmares", True)
        report = tracker.record_score(81, Notes(tags={"nightmares": True}))

        obs = tracker.state.observations[0]
        assert 1 in obs.active_interventions
        assert obs.notes.tags == {"nightmares": True}
        assert obs.sleep_date > obs.night_date
        assert tracker.state.pending_night is None
        assert report["is_preview"] is False
        assert report["score"] == 81
        assert report["date"] == pending.date
        assert [i["name"] for i in report["interventions"]] == ["Melatonin", "Exercise"]
        assert report["interventions"][1]["was_active"] is True
        assert report["interventions"][1]["new_mean"] > report["interventions"][1]["old_mean"]

        types = [e.type for e in memory_store.appended]
        assert types[-6:] == [
            "ROLL_TONIGHT",
            "TOGGLE_PENDING_INTERVENTION",
            "CHECK_CHECKLIST_ITEM",
            "MARK_ASLEEP",
            "TOGGLE_NOTE_TAG",
            "RECORD_SCORE",
        ]

    def test_roll_respects_groups(self, make_tracker):
        for seed in range(20):
            tracker = make_tracker(seed)
            _with_two(tracker)
            tracker.add_group("Either", [0, 1])
            pending = tracker.roll_tonight().pending_night
            assert sum(pending.interventions) <= 1

    def test_preview_emits_nothing(self, tracker, memory_store):
        _with_two(tracker)
        tracker.roll_tonight()
        count = len(memory_store.appended)
        preview = tracker.preview_score(90)
        assert preview["is_preview"] is True
        assert len(memory_store.appended) == count
        assert tracker.state.observations == ()

        recorded = tracker.record_score(90)
        for p, r in zip(preview["interventions"], recorded["interventions"]):
            assert p["new_mean"] == pytest.approx(r["new_mean"])

    def test_cancel(self, tracker):
        _with_two(tracker)
        tracker.roll_tonight()
        tracker.cancel_pending()
        assert tracker.state.pending_night is None
        with pytest.raises(NoPendingNightError):
            tracker.cancel_pending()

    def test_mark_asleep_once(self, tracker):
        _with_two(tracker)
        tracker.roll_tonight()
        tracker.mark_asleep()
        with pytest.raises(PolicyError):
            tracker.mark_asleep()


class TestPosteriorMemo:
    def test_posterior_is_cached_until_inputs_change(self, tracker):
        hits = get_metrics()["posterior_cache_hits"]
        _with_two(tracker)
        first = tracker.posterior
        assert tracker.posterior is first
        tracker.roll_tonight()
        assert tracker.posterior is first
        tracker.record_score(60)
        assert tracker.posterior is not first
        assert get_metrics()["posterior_cache_hits"] >= hits + 2

    def test_config_change_invalidates(self, tracker):
        _with_two(tracker)
        first = tracker.posterior
        tracker.update_config(tau=1.0)
        assert tracker.posterior.std == [1.0, 1.0]
        assert tracker.posterior is not first

    def test_expected_improvement_prior_is_positive(self, tracker):
        _with_two(tracker)
        assert tracker.expected_improvement() == pytest.approx(0.0, abs=1e-9)
        tracker.roll_tonight()
        tracker.toggle_pending_intervention(0, True)
        tracker.record_score(95)
        assert tracker.expected_improvement() > 0

    def test_summary_and_cooccurrence(self, tracker):
        _with_two(tracker)
        tracker.roll_tonight()
        tracker.toggle_pending_intervention(0, True)
        tracker.toggle_pending_intervention(1, True)
        tracker.record_score(75)
        assert [row["name"] for row in tracker.summary()] == ["Melatonin", "Exercise"]
        assert tracker.cooccurrence() == [[1, 1], [1, 1]]


class TestImports:
    def test_import_backup_from_export(self, tracker, make_tracker):
        _with_two(tracker)
        exported = tracker.export_log()

        other = make_tracker()
        other.add_intervention("Tea")
        other.import_backup(exported)
        assert other.state.intervention_names == ["Melatonin", "Exercise"]
        assert isinstance(other.store.appended[-1], ImportData)

    def test_import_backup_from_legacy_snapshot(self, tracker):
        tracker.import_backup(
            {
                "interventions": ["Melatonin"],
                "observations": [{"date": "2026-01-01T22:00:00Z", "interventions": [True], "score": 70}],
            }
        )
        assert tracker.state.intervention_names == ["Melatonin"]
        assert tracker.state.observations[0].active_interventions == (0,)

    def test_import_backup_rejects_garbage(self, tracker):
        with pytest.raises(CorruptLogError):
            tracker.import_backup({"hello": "world"})

    def test_import_historical(self, tracker):
        _with_two(tracker)
        tracker.roll_tonight()
        tracker.import_historical(
            ["Exercise", "Magnesium"],
            [{"interventions": [True, True], "score": 72}, {"interventions": [False, True], "score": 66}],
        )
        state = tracker.state
        assert state.intervention_names == ["Melatonin", "Exercise", "Magnesium"]
        assert [o.active_interventions for o in state.observations] == [(1, 2), (2,)]
        assert state.pending_night is None

    def test_import_historical_checks_widths(self, tracker, memory_store):
        with pytest.raises(PolicyError, match="expected 2"):
            tracker.import_historical(["A", "B"], [{"interventions": [True], "score": 70}])
        assert memory_store.appended == []

    def test_export_log_shape(self, tracker):
        _with_two(tracker)
        exported = tracker.export_log()
        assert exported["version"] == CURRENT_VERSION
        assert [e["type"] for e in exported["events"]] == ["ADD_INTERVENTION", "ADD_INTERVENTION"]

    def test_import_appends_instead_of_rewriting(self, tracker, memory_store):
        _with_two(tracker)
        tracker.import_backup({"version": CURRENT_VERSION, "events": []})
        assert tracker.state.interventions == ()
        assert [e.type for e in memory_store.appended] == ["ADD_INTERVENTION", "ADD_INTERVENTION", "IMPORT_DATA"]
