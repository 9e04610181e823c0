"""
Status log to interval resolution.

Both functions are pure: "now" and the window are supplied by the caller.
"""
from typing import Iterable

from lineops.schemas.status import StatusChange, StatusInterval


def resolve_intervals(changes: Iterable[StatusChange], now_ms: int) -> list[StatusInterval]:
    """
    Turn one line's status log into contiguous status intervals.

    Records are ordered by time; records sharing a timestamp keep their
    arrival order. Record i holds from its time until record i+1, the last
    record holds until ``now_ms`` and is marked open.

    Args:
        changes: Status records for a single line, in any order
        now_ms: Reference instant in epoch milliseconds

    Returns:
        Time-ordered intervals, one per record. Empty if there are no records.
    """
    ordered = sorted(changes, key=lambda c: c.time_ms)
    if not ordered:
        return []

    intervals = []
    for current, following in zip(ordered, ordered[1:]):
        intervals.append(StatusInterval(
            line_id=current.line_id,
            status=current.new_status,
            start=current.time_ms,
            end=following.time_ms,
        ))

    last = ordered[-1]
    start = last.time_ms
    # Clock skew: never produce a negative open interval
    intervals.append(StatusInterval(
        line_id=last.line_id,
        status=last.new_status,
        start=start,
        end=max(start, now_ms),
        is_open=True,
    ))
    return intervals


def clip_intervals(
    intervals: Iterable[StatusInterval],
    start_ms: int,
    end_ms: int,
) -> list[StatusInterval]:
    """
    Bound intervals to the window [start_ms, end_ms].

    Intervals crossing a window edge are truncated to the edge. Intervals
    with no overlap are dropped; zero-length intervals are kept when they
    lie inside the window.
    """
    if end_ms <= start_ms:
        return []

    clipped = []
    for interval in intervals:
        if interval.start == interval.end:
            if start_ms <= interval.start < end_ms:
                clipped.append(interval)
            continue

        if interval.end <= start_ms or interval.start >= end_ms:
            continue

        clipped.append(interval.model_copy(update={
            "start": max(interval.start, start_ms),
            "end": min(interval.end, end_ms),
        }))
    return clipped


def covered_duration(intervals: Iterable[StatusInterval]) -> int:
    """Total milliseconds covered by the intervals."""
    return sum(interval.duration_ms for interval in intervals)
