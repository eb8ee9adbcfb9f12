"""CLI interface for the sleep-bandit tracker."""

from __future__ import annotations

import dataclasses
import functools
import json
import random
import sys
from pathlib import Path

import click

from .config import Config
from .errors import CorruptLogError, PolicyError, SleepBanditError, classify_error
from .event_conventions import get_event_conventions, validate_conventions
from .logging import setup_logging
from .metrics import get_metrics
from .models import Notes
from .store import build_store
from .tracker import SleepTracker


_EXIT_CODES = {"policy": 1, "corrupt_log": 2, "other": 1}


def _handle_errors(fn):
    """Policy refusals exit 1, an unreadable log exits 2."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (SleepBanditError, ValueError) as exc:
            error_class = classify_error(exc)
            prefix = "event log is corrupt: " if error_class == "corrupt_log" else ""
            click.echo(f"Error: {prefix}{exc}", err=True)
            sys.exit(_EXIT_CODES[error_class])

    return wrapper


def _open(ctx: click.Context) -> SleepTracker:
    config: Config = ctx.obj
    rng = random.Random(config.seed) if config.seed is not None else None
    return SleepTracker(build_store(config), rng=rng)


def _read_json(path: Path):
    with path.open(encoding="utf-8") as f:
        return json.load(f)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.option(
    "--log-path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Use this JSON event-log file (overrides SLEEP_BANDIT_LOG_PATH and DATABASE_URL).",
)
@click.pass_context
def main(ctx: click.Context, log_path: Path | None):
    """Nightly Thompson-sampling experiments on your sleep."""
    config = Config.from_env()
    if log_path is not None:
        config = dataclasses.replace(config, log_path=log_path, legacy_path=None, database_url=None)
    setup_logging(config.log_format, config.log_level)
    ctx.obj = config


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable output.")
@click.pass_context
@_handle_errors
def status(ctx: click.Context, as_json: bool):
    """Show interventions, beliefs and tonight's pending night."""
    tracker = _open(ctx)
    state = tracker.state
    summary = tracker.summary()
    improvement = tracker.expected_improvement()

    if as_json:
        _echo_json(
            {
                "event_count": tracker.event_count,
                "state": state.model_dump(mode="json", by_alias=True),
                "posterior": summary,
                "expected_improvement": improvement,
                "metrics": get_metrics(),
            }
        )
        return

    click.echo(f"Interventions ({len(state.interventions)}):")
    for item, intervention in zip(summary, state.interventions):
        flag = "  [disabled]" if intervention.disabled else ""
        click.echo(
            f"  [{item['index']}] {item['name']}  mean={item['mean']:+.2f} sd={item['std']:.2f} "
            f"P(>0)={item['prob_positive']:.0%}{flag}"
        )

    groups = [(i, g) for i, g in enumerate(state.groups) if not g.archived]
    if groups:
        click.echo("Groups:")
        for i, group in groups:
            members = ", ".join(state.interventions[idx].name for idx in group.intervention_indices)
            click.echo(f"  [{i}] {group.name}: {members}")

    pending = state.pending_night
    if pending is not None:
        phase = "asleep" if pending.asleep else "evening"
        active = [state.interventions[i].name for i, on in enumerate(pending.interventions) if on]
        click.echo(f"Pending night: {pending.date} ({phase})")
        click.echo(f"  active: {', '.join(active) or 'none'}")

    click.echo(f"Observations: {len(state.observations)}")
    click.echo(f"Expected improvement tonight: {improvement:+.2f}")


@main.command()
@click.argument("name")
@click.pass_context
@_handle_errors
def add(ctx: click.Context, name: str):
    """Add a candidate intervention."""
    state = _open(ctx).add_intervention(name)
    click.echo(f"Added [{len(state.interventions) - 1}] {state.interventions[-1].name}")


@main.command()
@click.argument("index", type=int)
@click.argument("new_name")
@click.pass_context
@_handle_errors
def rename(ctx: click.Context, index: int, new_name: str):
    """Rename the intervention at INDEX."""
    state = _open(ctx).rename_intervention(index, new_name)
    click.echo(f"Renamed [{index}] to {state.interventions[index].name}")


@main.command()
@click.argument("index", type=int)
@click.pass_context
@_handle_errors
def toggle(ctx: click.Context, index: int):
    """Enable or disable the intervention at INDEX."""
    state = _open(ctx).toggle_intervention(index)
    intervention = state.interventions[index]
    click.echo(f"{intervention.name} is now {'disabled' if intervention.disabled else 'enabled'}")


@main.command("group-add")
@click.argument("name")
@click.argument("indices", type=int, nargs=-1, required=True)
@click.pass_context
@_handle_errors
def group_add(ctx: click.Context, name: str, indices: tuple[int, ...]):
    """Make the interventions at INDICES mutually exclusive."""
    state = _open(ctx).add_group(name, list(indices))
    click.echo(f"Added group [{len(state.groups) - 1}] {name}")


@main.command("group-remove")
@click.argument("index", type=int)
@click.pass_context
@_handle_errors
def group_remove(ctx: click.Context, index: int):
    """Stop applying the group at INDEX."""
    _open(ctx).remove_group(index)
    click.echo(f"Removed group [{index}]")


@main.command()
@click.pass_context
@_handle_errors
def roll(ctx: click.Context):
    """Draw tonight's interventions."""
    state = _open(ctx).roll_tonight()
    pending = state.pending_night
    click.echo("Tonight:")
    for i, intervention in enumerate(state.interventions):
        mark = "x" if pending.interventions[i] else " "
        click.echo(f"  [{mark}] {intervention.name}  (sample {pending.samples[i]:+.2f})")


@main.command("pending-toggle")
@click.argument("index", type=int)
@click.option("--on/--off", "active", default=True, help="Turn the intervention on or off for tonight.")
@click.pass_context
@_handle_errors
def pending_toggle(ctx: click.Context, index: int, active: bool):
    """Override one of tonight's interventions."""
    state = _open(ctx).toggle_pending_intervention(index, active)
    click.echo(f"{state.interventions[index].name}: {'on' if active else 'off'} tonight")


@main.command()
@click.pass_context
@_handle_errors
def asleep(ctx: click.Context):
    """Mark the start of tonight's sleep."""
    state = _open(ctx).mark_asleep()
    click.echo(f"Asleep at {state.pending_night.asleep_at}")


@main.command()
@click.argument("score", type=float)
@click.option("--tag", "tags", multiple=True, help="Note tag that applied last night (repeatable).")
@click.option("--text", default="", help="Free-text note.")
@click.option("--preview", is_flag=True, help="Show the update without recording it.")
@click.option("--json", "as_json", is_flag=True, help="Print the update report as JSON.")
@click.pass_context
@_handle_errors
def record(ctx: click.Context, score: float, tags: tuple[str, ...], text: str, preview: bool, as_json: bool):
    """Record last night's SCORE and show how beliefs moved."""
    tracker = _open(ctx)
    if preview:
        report = tracker.preview_score(score)
    else:
        labels = [t.label for t in tracker.state.note_tag_definitions]
        unknown = sorted(set(tags) - set(labels))
        if unknown:
            raise PolicyError(f"Unknown note tag(s): {', '.join(unknown)}")
        notes = Notes(tags={label: label in tags for label in labels}, text=text)
        report = tracker.record_score(score, notes)

    if as_json:
        _echo_json(report)
        return

    heading = "Preview" if report["is_preview"] else "Recorded"
    click.echo(f"{heading}: score {report['score']:g} for {report['date']}")
    for item in report["interventions"]:
        mark = "*" if item["was_active"] else " "
        click.echo(
            f" {mark} {item['name']}: mean {item['old_mean']:+.2f} -> {item['new_mean']:+.2f}, "
            f"P(>0) {item['old_prob']:.0%} -> {item['new_prob']:.0%}"
        )


@main.command()
@click.pass_context
@_handle_errors
def cancel(ctx: click.Context):
    """Discard tonight without recording."""
    _open(ctx).cancel_pending()
    click.echo("Cancelled pending night")


@main.command("config")
@click.option("--baseline", type=float, help="Expected score with no interventions.")
@click.option("--tau", type=float, help="Prior standard deviation of each effect.")
@click.option("--sigma", type=float, help="Nightly noise standard deviation.")
@click.pass_context
@_handle_errors
def config_command(ctx: click.Context, baseline: float | None, tau: float | None, sigma: float | None):
    """Show or change the statistical model settings."""
    tracker = _open(ctx)
    if baseline is not None or tau is not None or sigma is not None:
        tracker.update_config(baseline=baseline, tau=tau, sigma=sigma)
    cfg = tracker.state.config
    click.echo(f"baseline={cfg.baseline:g} tau={cfg.tau:g} sigma={cfg.sigma:g}")


@main.command("export")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write the log to a file.")
@click.pass_context
@_handle_errors
def export_command(ctx: click.Context, output: Path | None):
    """Export the full event log."""
    data = _open(ctx).export_log()
    if output is None:
        _echo_json(data)
        return
    output.write_text(json.dumps(data, indent=2), encoding="utf-8")
    click.echo(f"Wrote {len(data['events'])} events to {output}", err=True)


@main.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
@_handle_errors
def import_command(ctx: click.Context, path: Path):
    """Replace all data with a backup (exported log or legacy snapshot)."""
    try:
        data = _read_json(path)
    except json.JSONDecodeError as exc:
        raise CorruptLogError(f"{path} is not valid JSON: {exc}") from exc
    state = _open(ctx).import_backup(data)
    click.echo(f"Imported {len(state.interventions)} interventions and {len(state.observations)} observations")


@main.command("import-historical")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
@_handle_errors
def import_historical(ctx: click.Context, path: Path):
    """Merge nights from a {interventions: [...], nights: [...]} JSON file."""
    data = _read_json(path)
    if not isinstance(data, dict):
        raise PolicyError("Historical import must be a JSON object")
    nights = data.get("nights") or []
    _open(ctx).import_historical(data.get("interventions") or [], nights)
    click.echo(f"Imported {len(nights)} historical nights")


@main.command()
def conventions():
    """Print the event type catalog."""
    validate_conventions()
    _echo_json(get_event_conventions())
