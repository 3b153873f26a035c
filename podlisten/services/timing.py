from __future__ import annotations

from collections.abc import Iterable

from podlisten.models.results import TimingStats


def compute_timing_stats(durations: Iterable[float]) -> TimingStats | None:
    ordered = tuple(sorted(float(value) for value in durations))
    if not ordered:
        return None
    count = len(ordered)
    middle = count // 2
    if count % 2 == 0:
        median = (ordered[middle - 1] + ordered[middle]) / 2
    else:
        median = ordered[middle]
    return TimingStats(
        durations=ordered,
        min=ordered[0],
        max=ordered[-1],
        mean=sum(ordered) / count,
        median=median,
    )


def format_duration(seconds: float) -> str:
    """Compact human duration: `850ms`, `42s`, `3m5s`."""
    if seconds < 1:
        return f"{round(seconds * 1000)}ms"
    whole_seconds = round(seconds)
    if whole_seconds < 60:
        return f"{whole_seconds}s"
    minutes, remainder = divmod(whole_seconds, 60)
    if remainder == 0:
        return f"{minutes}m"
    return f"{minutes}m{remainder}s"


def describe_timings(stats: TimingStats | None) -> str:
    if stats is None:
        return "no completed tasks"
    return (
        f"{stats.count} completed: min {format_duration(stats.min)}, "
        f"median {format_duration(stats.median)}, mean {format_duration(stats.mean)}, "
        f"max {format_duration(stats.max)}"
    )
