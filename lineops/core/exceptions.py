from typing import Any, Optional


class LineOpsError(Exception):
    """Base class for all lineops errors."""

    code = "LINEOPS_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class EventDecodeError(LineOpsError):
    """A stream message could not be decoded into a known event."""

    code = "EVENT_DECODE_ERROR"

    def __init__(self, event_type: str, message: str, details: Optional[Any] = None):
        super().__init__(f"{event_type}: {message}", details)
        self.event_type = event_type


class UpstreamAPIError(LineOpsError):
    """The upstream production-line API returned an error or was unreachable."""

    code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.error_code = error_code


class InvalidTimeframeError(LineOpsError):
    """An analytics window could not be resolved."""

    code = "INVALID_TIMEFRAME"


class LineNotFoundError(LineOpsError):
    """The requested line is not present in the cache."""

    code = "LINE_NOT_FOUND"

    def __init__(self, line_id: str):
        super().__init__(f"Line not found: {line_id}")
        self.line_id = line_id
