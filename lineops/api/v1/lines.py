from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query

from lineops.core.dependencies import get_analytics_query, get_cache, require_line
from lineops.core.logging import get_logger
from lineops.schemas.analytics import AnalyticsQuery
from lineops.schemas.status import LineView, ProductionLine, to_epoch_ms
from lineops.services import kpi_service
from lineops.services.ticker import elapsed_seconds, format_duration
from lineops.stream.cache import LineCache


router = APIRouter(tags=["Lines"])
logger = get_logger(__name__)


def _view(line: ProductionLine, now: datetime) -> LineView:
    seconds = elapsed_seconds(line.last_status_update, now)
    return LineView(
        **line.model_dump(),
        status_elapsed_seconds=seconds,
        status_elapsed=format_duration(seconds * 1000),
    )


@router.get("/lines", response_model=dict)
async def list_lines(cache: LineCache = Depends(get_cache)):
    """
    Get all cached production lines with their current status.

    ``meta.stale`` is true while the list is waiting for a refresh after a
    live status change.
    """
    now = datetime.now(timezone.utc)
    lines = cache.list_lines()

    return {
        "data": [_view(line, now).model_dump(mode="json") for line in lines],
        "meta": {"total": len(lines), "stale": cache.list_stale}
    }


@router.get("/lines/{line_id}", response_model=dict)
async def get_line(line_id: str, cache: LineCache = Depends(get_cache)):
    """
    Get one production line.

    Returns 404 if the line is not in the cache.
    """
    line = require_line(cache, line_id)
    return {"data": _view(line, datetime.now(timezone.utc)).model_dump(mode="json")}


@router.get("/lines/{line_id}/history", response_model=dict)
async def get_line_history(
    line_id: str,
    limit: int = Query(100, ge=1, le=10000),
    cache: LineCache = Depends(get_cache)
):
    """Get the most recent status records of a line, newest first."""
    require_line(cache, line_id)
    log = cache.get_log(line_id)
    records = sorted(log, key=lambda c: c.time_ms, reverse=True)[:limit]

    return {
        "data": [record.model_dump(mode="json") for record in records],
        "meta": {"total": len(log)}
    }


@router.get("/lines/{line_id}/intervals", response_model=dict)
async def get_line_intervals(
    line_id: str,
    query: AnalyticsQuery = Depends(get_analytics_query),
    cache: LineCache = Depends(get_cache)
):
    """
    Get the status intervals of a line within a time window.

    The last interval is open and ends at the current time.
    """
    require_line(cache, line_id)
    now = datetime.now(timezone.utc)
    window = kpi_service.resolve_timeframe(query.timeframe, query.start_time, query.end_time, now=now)

    intervals = kpi_service.window_intervals(
        cache.get_log(line_id),
        to_epoch_ms(window.start),
        to_epoch_ms(window.end),
        now_ms=to_epoch_ms(now),
    )

    return {
        "data": [interval.model_dump(mode="json") for interval in intervals],
        "meta": {"time_range": window.model_dump(mode="json")}
    }
