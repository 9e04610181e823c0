from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional, Union

from pydantic import BaseModel, ValidationError, field_validator

from lineops.core.exceptions import EventDecodeError
from lineops.schemas.status import ProductionLine, Status, StatusChange, as_utc


class StreamEventType(str, PyEnum):
    CONNECTED = "connected"
    LINE_STATUS = "line.status"
    LINE_CREATED = "line.created"
    LINE_UPDATED = "line.updated"
    LINE_DELETED = "line.deleted"


class _TimestampedEvent(BaseModel):
    type: Optional[str] = None
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)


class ConnectedEvent(BaseModel):
    """Handshake sent by the server once the stream is open."""
    client_id: Optional[str] = None

    @property
    def channel(self) -> Optional[str]:
        return None


class LineStatusEvent(_TimestampedEvent):
    """
    Status change pushed over the stream.

    Example:
        {
            "type": "status",
            "timestamp": "2024-01-15T10:30:00Z",
            "id": "6a1f...",
            "code": "L1",
            "status": "error"
        }
    """
    id: str
    code: str
    status: Status

    @property
    def channel(self) -> str:
        return f"{StreamEventType.LINE_STATUS.value}:{self.id}"

    def to_status_change(self, old_status: Optional[Status] = None) -> StatusChange:
        """Build the log record this event represents."""
        return StatusChange(
            time=self.timestamp,
            line_id=self.id,
            line_code=self.code,
            old_status=old_status,
            new_status=self.status,
            source="stream",
        )


class LineChangedEvent(_TimestampedEvent):
    """Line created or updated; carries the full line snapshot."""
    data: Optional[ProductionLine] = None

    @property
    def channel(self) -> Optional[str]:
        if self.data is None:
            return None
        return f"line:{self.data.id}"


class LineDeletedEvent(_TimestampedEvent):
    """Line deleted."""
    id: str
    code: str

    @property
    def channel(self) -> str:
        return f"line:{self.id}"


StreamEvent = Union[ConnectedEvent, LineStatusEvent, LineChangedEvent, LineDeletedEvent]


EVENT_MODELS: dict[str, type[BaseModel]] = {
    StreamEventType.CONNECTED.value: ConnectedEvent,
    StreamEventType.LINE_STATUS.value: LineStatusEvent,
    StreamEventType.LINE_CREATED.value: LineChangedEvent,
    StreamEventType.LINE_UPDATED.value: LineChangedEvent,
    StreamEventType.LINE_DELETED.value: LineDeletedEvent,
}


def decode_event(event_type: str, data: str) -> Optional[StreamEvent]:
    """
    Decode the JSON payload of a stream message by its event tag.

    Args:
        event_type: SSE event name (e.g., "line.status")
        data: Raw JSON payload

    Returns:
        The typed event, or None if the tag is not one this client knows

    Raises:
        EventDecodeError: If the payload is not valid JSON or does not match
            the schema for its tag

    Examples:
        >>> decode_event("line.status", '{"type": "status", "timestamp": "2024-01-15T10:30:00Z", '
        ...              '"id": "a", "code": "L1", "status": "on"}').status
        <Status.ON: 'on'>

        >>> decode_event("line.renamed", "{}") is None
        True
    """
    model = EVENT_MODELS.get(event_type)
    if model is None:
        return None

    try:
        return model.model_validate_json(data or "{}")
    except ValidationError as e:
        raise EventDecodeError(event_type, "invalid payload", details=e.errors(include_url=False, include_context=False)) from e
