from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from lineops.core.exceptions import InvalidTimeframeError
from lineops.schemas.analytics import (
    AggregateMetrics,
    DailyKPI,
    KpiSummary,
    LabelMetrics,
    LineMetrics,
    StatusShare,
    Timeframe,
    TimeRange,
)
from lineops.schemas.status import (
    MS_PER_HOUR,
    REPAIR_STATUSES,
    ProductionLine,
    Status,
    StatusChange,
    StatusInterval,
    as_utc,
    from_epoch_ms,
    to_epoch_ms,
)
from lineops.services.interval_resolver import clip_intervals, covered_duration, resolve_intervals


# Preset timeframes relative to "now"
TIMEFRAME_DELTAS = {
    Timeframe.LAST_24H: timedelta(hours=24),
    Timeframe.LAST_7D: timedelta(days=7),
    Timeframe.LAST_30D: timedelta(days=30),
}


def status_durations(intervals: Iterable[StatusInterval]) -> dict[Status, int]:
    """Milliseconds spent in each status (every status present, zero included)."""
    durations = {status: 0 for status in Status}
    for interval in intervals:
        durations[interval.status] += interval.duration_ms
    return durations


def uptime_percentage(intervals: Iterable[StatusInterval], total_ms: int) -> float:
    """
    Share of the elapsed window spent in ``on``.

    Returns 0 when the window has no elapsed time.
    """
    if total_ms <= 0:
        return 0.0
    on_ms = sum(i.duration_ms for i in intervals if i.status == Status.ON)
    return on_ms / total_ms * 100


def mean_time_to_repair(intervals: Iterable[StatusInterval]) -> float:
    """
    Mean duration (ms) of ``error`` and ``maintenance`` intervals.

    Returns 0 when there is nothing to repair.
    """
    repairs = [i.duration_ms for i in intervals if i.status in REPAIR_STATUSES]
    if not repairs:
        return 0.0
    return sum(repairs) / len(repairs)


def interruption_count(intervals: Iterable[StatusInterval]) -> int:
    """Number of ``error`` intervals. Maintenance is not an interruption."""
    return sum(1 for i in intervals if i.status == Status.ERROR)


def status_distribution(
    intervals: Iterable[StatusInterval],
    total_ms: int,
) -> dict[Status, StatusShare]:
    """Duration and percentage per status; statuses with zero duration are omitted."""
    distribution = {}
    for status, duration in status_durations(intervals).items():
        if duration <= 0:
            continue
        distribution[status] = StatusShare(
            duration_hours=duration / MS_PER_HOUR,
            percentage=(duration / total_ms * 100) if total_ms > 0 else 0.0,
        )
    return distribution


def summarize(intervals: Sequence[StatusInterval], total_ms: Optional[int] = None) -> KpiSummary:
    """
    Compute every KPI for an interval sequence already bounded to its window.

    Args:
        intervals: Clipped intervals
        total_ms: Elapsed time of the window; defaults to the time the
            intervals cover

    Returns:
        KpiSummary with neutral (zero) values for empty input
    """
    if total_ms is None:
        total_ms = covered_duration(intervals)

    return KpiSummary(
        total_ms=total_ms,
        durations_ms=status_durations(intervals),
        uptime_percentage=uptime_percentage(intervals, total_ms),
        mttr_ms=mean_time_to_repair(intervals),
        repair_count=sum(1 for i in intervals if i.status in REPAIR_STATUSES),
        interruption_count=interruption_count(intervals),
        status_distribution=status_distribution(intervals, total_ms),
    )


def resolve_timeframe(
    timeframe: Timeframe,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> TimeRange:
    """
    Convert a timeframe preset into a concrete window.

    Args:
        timeframe: One of 24h, 7d, 30d, all, custom
        start_time: Window start (custom only)
        end_time: Window end (custom only)
        now: Reference instant (defaults to the current UTC time)

    Returns:
        TimeRange

    Raises:
        InvalidTimeframeError: If a custom window is incomplete or inverted
    """
    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    start_time, end_time = as_utc(start_time), as_utc(end_time)

    if timeframe == Timeframe.CUSTOM:
        if start_time is None or end_time is None:
            raise InvalidTimeframeError("custom timeframe requires start_time and end_time")
        if start_time > end_time:
            raise InvalidTimeframeError("start_time must be before end_time")
        return TimeRange(start=start_time, end=end_time)

    if timeframe == Timeframe.ALL:
        return TimeRange(start=datetime.fromtimestamp(0, tz=timezone.utc), end=now)

    return TimeRange(start=now - TIMEFRAME_DELTAS[timeframe], end=now)


def window_intervals(
    changes: Iterable[StatusChange],
    start_ms: int,
    end_ms: int,
    now_ms: Optional[int] = None,
) -> list[StatusInterval]:
    """
    Resolve a full log and clip it to a window.

    Records before the window establish the status at the window start.
    The open interval never extends past ``now_ms``.
    """
    effective_end = end_ms if now_ms is None else min(end_ms, now_ms)
    intervals = resolve_intervals(changes, effective_end)
    return clip_intervals(intervals, start_ms, effective_end)


def _zone(tz: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidTimeframeError(f"unknown timezone: {tz}") from e


def _local_midnight_ms(day: date, zone: ZoneInfo) -> int:
    return to_epoch_ms(datetime.combine(day, time(0), tzinfo=zone))


def daily_kpis(
    intervals: Sequence[StatusInterval],
    start_ms: int,
    end_ms: int,
    tz: Optional[str] = None,
) -> list[DailyKPI]:
    """
    Split a window into calendar days and compute KPIs per day.

    An interval crossing midnight contributes to each day it touches, in
    proportion to the time it spends in that day. Every day of the window
    gets a row; days with no data have zero values.

    Args:
        intervals: Resolved intervals for one line
        start_ms: Window start (epoch ms)
        end_ms: Window end (epoch ms)
        tz: IANA timezone for day boundaries (default UTC)

    Returns:
        List of DailyKPI ordered by date
    """
    if end_ms <= start_ms:
        return []

    zone = _zone(tz)
    day = from_epoch_ms(start_ms).astimezone(zone).date()

    kpis = []
    while True:
        day_start = _local_midnight_ms(day, zone)
        if day_start >= end_ms:
            break
        day_end = _local_midnight_ms(day + timedelta(days=1), zone)

        bucket = clip_intervals(intervals, max(day_start, start_ms), min(day_end, end_ms))
        summary = summarize(bucket)
        kpis.append(DailyKPI(
            date=day.isoformat(),
            uptime_hours=summary.hours(Status.ON),
            uptime_percentage=summary.uptime_percentage,
            maintenance_hours=summary.hours(Status.MAINTENANCE),
            error_hours=summary.hours(Status.ERROR),
            interruption_count=summary.interruption_count,
            mttr_hours=summary.mttr_hours,
        ))
        day += timedelta(days=1)

    return kpis


def line_metrics(
    line: ProductionLine,
    changes: Iterable[StatusChange],
    window: TimeRange,
    now: Optional[datetime] = None,
) -> LineMetrics:
    """Compute LineMetrics for one line over a window."""
    now_ms = to_epoch_ms(now) if now is not None else None
    intervals = window_intervals(changes, to_epoch_ms(window.start), to_epoch_ms(window.end), now_ms)
    summary = summarize(intervals)

    return LineMetrics(
        line_id=line.id,
        line_code=line.code,
        line_name=line.name,
        labels=line.labels,
        uptime_hours=summary.hours(Status.ON),
        uptime_percentage=summary.uptime_percentage,
        downtime_hours=summary.hours(Status.OFF),
        maintenance_hours=summary.hours(Status.MAINTENANCE),
        error_hours=summary.hours(Status.ERROR),
        mttr_hours=summary.mttr_hours,
        interruption_count=summary.interruption_count,
        current_status=line.status,
        status_distribution=summary.status_distribution,
    )


def _pooled_summary(
    lines: Sequence[ProductionLine],
    logs: Mapping[str, Sequence[StatusChange]],
    window: TimeRange,
    now: Optional[datetime],
) -> tuple[KpiSummary, list[KpiSummary]]:
    """Summaries per line plus one summary over the union of their intervals."""
    start_ms, end_ms = to_epoch_ms(window.start), to_epoch_ms(window.end)
    now_ms = to_epoch_ms(now) if now is not None else None

    pooled: list[StatusInterval] = []
    per_line = []
    for line in lines:
        intervals = window_intervals(logs.get(line.id, ()), start_ms, end_ms, now_ms)
        pooled.extend(intervals)
        per_line.append(summarize(intervals))

    return summarize(pooled), per_line


def aggregate_metrics(
    lines: Sequence[ProductionLine],
    logs: Mapping[str, Sequence[StatusChange]],
    window: TimeRange,
    now: Optional[datetime] = None,
) -> AggregateMetrics:
    """
    Fleet-wide metrics.

    Durations are summed over all lines; uptime percentage and MTTR are
    pooled over every line's intervals.
    """
    summary, _ = _pooled_summary(lines, logs, window, now)

    return AggregateMetrics(
        total_lines=len(lines),
        total_uptime_hours=summary.hours(Status.ON),
        average_uptime_percentage=summary.uptime_percentage,
        total_downtime_hours=summary.hours(Status.OFF),
        total_maintenance_hours=summary.hours(Status.MAINTENANCE),
        total_error_hours=summary.hours(Status.ERROR),
        mttr_hours=summary.mttr_hours,
        total_interruptions=summary.interruption_count,
        status_distribution=summary.status_distribution,
        time_range=window,
    )


def label_metrics(
    lines: Sequence[ProductionLine],
    logs: Mapping[str, Sequence[StatusChange]],
    window: TimeRange,
    now: Optional[datetime] = None,
) -> list[LabelMetrics]:
    """
    Metrics grouped by label, ordered by label name.

    ``average_uptime_percentage`` is the mean of the per-line uptime
    percentages of lines that have data in the window.
    """
    labels = {}
    members: dict[str, list[ProductionLine]] = {}
    for line in lines:
        for label in line.labels:
            labels.setdefault(label.id, label)
            members.setdefault(label.id, []).append(line)

    results = []
    for label_id, label in sorted(labels.items(), key=lambda item: item[1].name):
        summary, per_line = _pooled_summary(members[label_id], logs, window, now)
        observed = [s.uptime_percentage for s in per_line if s.total_ms > 0]

        results.append(LabelMetrics(
            label=label,
            line_count=len(members[label_id]),
            average_uptime_percentage=sum(observed) / len(observed) if observed else 0.0,
            total_uptime_hours=summary.hours(Status.ON),
            total_interruptions=summary.interruption_count,
            mttr_hours=summary.mttr_hours,
            status_distribution=summary.status_distribution,
        ))

    return results


def filter_lines(
    lines: Iterable[ProductionLine],
    label_ids: Sequence[str] = (),
    line_ids: Sequence[str] = (),
) -> list[ProductionLine]:
    """Keep lines carrying any of ``label_ids`` and, if given, listed in ``line_ids``."""
    selected = []
    for line in lines:
        if line_ids and line.id not in line_ids:
            continue
        if label_ids and not any(label.id in label_ids for label in line.labels):
            continue
        selected.append(line)
    return selected


def line_daily_kpis(
    changes: Sequence[StatusChange],
    window: TimeRange,
    tz: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[DailyKPI]:
    """
    Daily KPIs for one line's log.

    Days before the line's first record are skipped so that open-ended
    windows ("all") do not produce rows back to the epoch.
    """
    if not changes:
        return []

    start_ms, end_ms = to_epoch_ms(window.start), to_epoch_ms(window.end)
    if now is not None:
        end_ms = min(end_ms, to_epoch_ms(now))
    start_ms = max(start_ms, min(c.time_ms for c in changes))

    intervals = resolve_intervals(changes, end_ms)
    return daily_kpis(intervals, start_ms, end_ms, tz)
