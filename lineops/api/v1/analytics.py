"""
Analytics API endpoints.
All metrics are computed on read from the cached status logs.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from lineops.core.config import settings
from lineops.core.dependencies import get_analytics_query, get_cache, require_line
from lineops.core.logging import get_logger
from lineops.schemas.analytics import AnalyticsQuery
from lineops.services import kpi_service
from lineops.stream.cache import LineCache


router = APIRouter(tags=["Analytics"])
logger = get_logger(__name__)


@router.get("/analytics/aggregate", response_model=dict)
async def get_aggregate_metrics(
    query: AnalyticsQuery = Depends(get_analytics_query),
    cache: LineCache = Depends(get_cache)
):
    """
    Get fleet-wide metrics across all lines or the lines carrying any of
    the given labels.
    """
    now = datetime.now(timezone.utc)
    window = kpi_service.resolve_timeframe(query.timeframe, query.start_time, query.end_time, now=now)
    lines = kpi_service.filter_lines(cache.list_lines(), query.label_ids, query.line_ids)

    metrics = kpi_service.aggregate_metrics(lines, cache.logs(), window, now=now)

    logger.debug("analytics.aggregate", lines=len(lines), timeframe=query.timeframe.value)
    return {"data": metrics.model_dump(mode="json")}


@router.get("/analytics/lines", response_model=dict)
async def get_line_metrics(
    query: AnalyticsQuery = Depends(get_analytics_query),
    cache: LineCache = Depends(get_cache)
):
    """Get metrics for each production line."""
    now = datetime.now(timezone.utc)
    window = kpi_service.resolve_timeframe(query.timeframe, query.start_time, query.end_time, now=now)
    lines = kpi_service.filter_lines(cache.list_lines(), query.label_ids, query.line_ids)

    metrics = [
        kpi_service.line_metrics(line, cache.get_log(line.id), window, now=now)
        for line in lines
    ]

    return {
        "data": [m.model_dump(mode="json") for m in metrics],
        "meta": {"total": len(metrics)}
    }


@router.get("/analytics/labels", response_model=dict)
async def get_label_metrics(
    query: AnalyticsQuery = Depends(get_analytics_query),
    cache: LineCache = Depends(get_cache)
):
    """Get metrics grouped by label."""
    now = datetime.now(timezone.utc)
    window = kpi_service.resolve_timeframe(query.timeframe, query.start_time, query.end_time, now=now)
    lines = kpi_service.filter_lines(cache.list_lines(), query.label_ids, query.line_ids)

    metrics = kpi_service.label_metrics(lines, cache.logs(), window, now=now)

    return {
        "data": [m.model_dump(mode="json") for m in metrics],
        "meta": {"total": len(metrics)}
    }


@router.get("/analytics/lines/{line_id}/daily", response_model=dict)
async def get_daily_kpis(
    line_id: str,
    query: AnalyticsQuery = Depends(get_analytics_query),
    cache: LineCache = Depends(get_cache)
):
    """
    Get KPIs for each calendar day of the window.

    Day boundaries follow ``tz`` (defaults to settings.default_timezone).
    Returns 404 if the line is not in the cache.
    """
    require_line(cache, line_id)
    now = datetime.now(timezone.utc)
    window = kpi_service.resolve_timeframe(query.timeframe, query.start_time, query.end_time, now=now)

    kpis = kpi_service.line_daily_kpis(
        cache.get_log(line_id),
        window,
        tz=query.tz or settings.default_timezone,
        now=now,
    )

    return {
        "data": [k.model_dump(mode="json") for k in kpis],
        "meta": {"total": len(kpis)}
    }
