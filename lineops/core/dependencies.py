from datetime import datetime
from typing import Optional

from fastapi import Query, Request

from lineops.core.exceptions import LineNotFoundError
from lineops.schemas.analytics import AnalyticsQuery, Timeframe
from lineops.schemas.status import ProductionLine
from lineops.stream.cache import LineCache
from lineops.stream.client import StreamClient


def get_cache(request: Request) -> LineCache:
    """
    FastAPI dependency for the line cache.

    Usage:
        @router.get("/lines")
        async def list_lines(cache: LineCache = Depends(get_cache)):
            ...
    """
    return request.app.state.cache


def get_stream_client(request: Request) -> Optional[StreamClient]:
    """FastAPI dependency for the stream client (None when streaming is disabled)."""
    return getattr(request.app.state, "stream_client", None)


def require_line(cache: LineCache, line_id: str) -> ProductionLine:
    """
    Get a cached line or fail.

    Raises:
        LineNotFoundError: If the line is not in the cache
    """
    line = cache.get_line(line_id)
    if line is None:
        raise LineNotFoundError(line_id)
    return line


def get_analytics_query(
    timeframe: Timeframe = Query(Timeframe.LAST_24H),
    start_time: Optional[datetime] = Query(None),
    end_time: Optional[datetime] = Query(None),
    label_ids: Optional[str] = Query(None, description="Comma-separated label ids"),
    line_ids: Optional[str] = Query(None, description="Comma-separated line ids"),
    tz: Optional[str] = Query(None, description="IANA timezone for daily buckets"),
) -> AnalyticsQuery:
    """Parse the common analytics query parameters."""
    return AnalyticsQuery(
        timeframe=timeframe,
        start_time=start_time,
        end_time=end_time,
        label_ids=[x for x in (label_ids or "").split(",") if x],
        line_ids=[x for x in (line_ids or "").split(",") if x],
        tz=tz,
    )
