"""In-memory process metrics.

Plain dicts; the core is single-threaded.
"""

import time

_start_time = time.monotonic()

_metrics: dict = {
    "events_appended": {},
    "replays": 0,
    "replay_duration_ms": 0.0,
    "events_replayed": 0,
    "posterior_computations": 0,
    "posterior_cache_hits": 0,
}


def record_event_appended(event_type: str) -> None:
    counts = _metrics["events_appended"]
    counts[event_type] = counts.get(event_type, 0) + 1


def record_replay(event_count: int, duration_ms: float) -> None:
    _metrics["replays"] += 1
    _metrics["events_replayed"] += event_count
    _metrics["replay_duration_ms"] += duration_ms


def record_posterior_computation(cache_hit: bool) -> None:
    if cache_hit:
        _metrics["posterior_cache_hits"] += 1
    else:
        _metrics["posterior_computations"] += 1


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "events_appended": dict(_metrics["events_appended"]),
        "replays": _metrics["replays"],
        "events_replayed": _metrics["events_replayed"],
        "replay_duration_ms": round(_metrics["replay_duration_ms"], 3),
        "posterior_computations": _metrics["posterior_computations"],
        "posterior_cache_hits": _metrics["posterior_cache_hits"],
    }

