from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


MS_PER_SECOND = 1000
MS_PER_HOUR = 3_600_000


class Status(str, PyEnum):
    ON = "on"
    OFF = "off"
    MAINTENANCE = "maintenance"
    ERROR = "error"


# Statuses a line has to be repaired out of (MTTR)
REPAIR_STATUSES = frozenset({Status.MAINTENANCE, Status.ERROR})


def to_epoch_ms(value: datetime) -> int:
    """Convert a datetime to integer milliseconds since the epoch (naive = UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * MS_PER_SECOND))


def from_epoch_ms(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / MS_PER_SECOND, tz=timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StatusChange(BaseModel):
    """
    One record of a line's status log.

    The record's ``new_status`` holds from ``time`` until the next record's
    ``time`` (or "now" for the most recent record).

    Example:
        {
            "time": "2024-01-15T10:30:00Z",
            "line_id": "6a1f...",
            "line_code": "L1",
            "old_status": "on",
            "new_status": "maintenance",
            "source": "api"
        }
    """
    time: datetime
    line_id: str
    line_code: Optional[str] = None
    old_status: Optional[Status] = None
    new_status: Status
    source: str = "unknown"
    source_detail: Optional[Any] = None

    @field_validator("time")
    @classmethod
    def normalize_time(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def time_ms(self) -> int:
        return to_epoch_ms(self.time)


class StatusInterval(BaseModel):
    """A contiguous span (epoch ms) during which a line's status was constant."""
    model_config = ConfigDict(frozen=True)

    line_id: str
    status: Status
    start: int
    end: int
    is_open: bool = False

    @property
    def duration_ms(self) -> int:
        return max(0, self.end - self.start)


class Label(BaseModel):
    """Label attached to a production line."""
    id: str
    name: str
    color: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProductionLine(BaseModel):
    """
    Snapshot of a production line as returned by the upstream API.

    ``status_since`` is the time of the transition into ``status``. When the
    upstream payload does not carry it, ``updated_at`` is used instead.
    """
    id: str
    code: str
    name: str
    description: Optional[str] = None
    status: Status
    labels: list[Label] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status_since: Optional[datetime] = None

    @field_validator("created_at", "updated_at", "status_since")
    @classmethod
    def normalize_times(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def last_status_update(self) -> Optional[datetime]:
        return self.status_since or self.updated_at


class LineView(ProductionLine):
    """Line snapshot with its live time-in-status."""
    status_elapsed_seconds: int = 0
    status_elapsed: str = "0s"
