from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from pydantic import BaseModel, Field

from lineops.schemas.status import Label, MS_PER_HOUR, Status


class Timeframe(str, PyEnum):
    LAST_24H = "24h"
    LAST_7D = "7d"
    LAST_30D = "30d"
    ALL = "all"
    CUSTOM = "custom"


class TimeRange(BaseModel):
    """Inspection window."""
    start: datetime
    end: datetime


class StatusShare(BaseModel):
    """Time spent in one status and its share of the elapsed window."""
    duration_hours: float
    percentage: float


class KpiSummary(BaseModel):
    """
    KPIs of one interval sequence over one window.

    Durations are in milliseconds. ``durations_ms`` lists every status,
    including those with zero duration; ``status_distribution`` omits them.
    """
    total_ms: int
    durations_ms: dict[Status, int]
    uptime_percentage: float
    mttr_ms: float
    repair_count: int
    interruption_count: int
    status_distribution: dict[Status, StatusShare]

    def hours(self, status: Status) -> float:
        return self.durations_ms.get(status, 0) / MS_PER_HOUR

    @property
    def mttr_hours(self) -> float:
        return self.mttr_ms / MS_PER_HOUR


class LineMetrics(BaseModel):
    """Metrics for a single production line."""
    line_id: str
    line_code: str
    line_name: str
    labels: list[Label] = Field(default_factory=list)
    uptime_hours: float
    uptime_percentage: float
    downtime_hours: float
    maintenance_hours: float
    error_hours: float
    mttr_hours: float
    interruption_count: int
    current_status: Status
    status_distribution: dict[Status, StatusShare]


class AggregateMetrics(BaseModel):
    """Fleet-wide metrics across all queried lines."""
    total_lines: int
    total_uptime_hours: float
    average_uptime_percentage: float
    total_downtime_hours: float
    total_maintenance_hours: float
    total_error_hours: float
    mttr_hours: float
    total_interruptions: int
    status_distribution: dict[Status, StatusShare]
    time_range: TimeRange


class LabelMetrics(BaseModel):
    """Metrics grouped by label."""
    label: Label
    line_count: int
    average_uptime_percentage: float
    total_uptime_hours: float
    total_interruptions: int
    mttr_hours: float
    status_distribution: dict[Status, StatusShare]


class DailyKPI(BaseModel):
    """KPIs for one calendar day."""
    date: str  # YYYY-MM-DD in the requested timezone
    uptime_hours: float
    uptime_percentage: float
    maintenance_hours: float
    error_hours: float
    interruption_count: int
    mttr_hours: float


class AnalyticsQuery(BaseModel):
    """Common parameters for analytics queries."""
    timeframe: Timeframe = Timeframe.LAST_24H
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    label_ids: list[str] = Field(default_factory=list)
    line_ids: list[str] = Field(default_factory=list)
    tz: Optional[str] = None
