"""
Server-sent events wire codec.
Turns the text/event-stream line protocol into ServerSentEvent frames.
"""
from typing import AsyncIterator, Optional

from pydantic import BaseModel


class ServerSentEvent(BaseModel):
    """One dispatched SSE frame."""
    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


class SSEDecoder:
    """
    Incremental decoder fed one line at a time (without the line terminator).

    A blank line dispatches the buffered frame. Comment lines (starting
    with ":") are ignored, as are unknown fields.
    """

    def __init__(self):
        self._event = ""
        self._data: list[str] = []
        self._id: Optional[str] = None
        self._retry: Optional[int] = None

    def decode(self, line: str) -> Optional[ServerSentEvent]:
        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            if "\0" not in value:
                self._id = value
        elif field == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        if not self._data and not self._event:
            self._id = None
            self._retry = None
            return None

        frame = ServerSentEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._id,
            retry=self._retry,
        )
        self._event = ""
        self._data = []
        self._id = None
        self._retry = None
        return frame


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Decode an async stream of text lines into SSE frames."""
    decoder = SSEDecoder()
    async for line in lines:
        frame = decoder.decode(line.rstrip("\r"))
        if frame is not None:
            yield frame
