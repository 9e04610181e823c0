"""
Server-sent events client for the production-line event stream.
Owns the connection state machine, reconnect backoff and event dispatch.
"""
import asyncio
import inspect
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

import httpx

from lineops.core.config import settings
from lineops.core.exceptions import EventDecodeError
from lineops.core.logging import get_logger
from lineops.core.metrics import (
    stream_backoff_seconds,
    stream_events_dropped_total,
    stream_events_received_total,
    stream_reconnects_total,
    stream_state,
)
from lineops.schemas.events import StreamEvent, decode_event
from lineops.stream.sse import ServerSentEvent, iter_sse


EventHandler = Callable[[StreamEvent], Union[Any, Awaitable[Any]]]
StateListener = Callable[["ConnectionState"], Any]


class ConnectionState(str, PyEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class StreamClosed(Exception):
    """The server ended the stream without an error."""


class Backoff:
    """
    Exponential reconnect delay with a floor and a ceiling.

    ``next_delay()`` returns the current delay and grows it for the
    following attempt; ``reset()`` returns to the floor.
    """

    def __init__(
        self,
        floor: Optional[float] = None,
        ceiling: Optional[float] = None,
        multiplier: Optional[float] = None,
    ):
        self.floor = floor if floor is not None else settings.reconnect_floor_seconds
        self.ceiling = ceiling if ceiling is not None else settings.reconnect_ceiling_seconds
        self.multiplier = multiplier if multiplier is not None else settings.reconnect_multiplier

        if self.floor <= 0:
            raise ValueError("backoff floor must be positive")
        if self.ceiling < self.floor:
            raise ValueError("backoff ceiling must be >= floor")
        if self.multiplier < 1:
            raise ValueError("backoff multiplier must be >= 1")

        self.delay = self.floor

    def reset(self) -> None:
        self.delay = self.floor

    def next_delay(self) -> float:
        delay = self.delay
        self.delay = min(self.delay * self.multiplier, self.ceiling)
        return delay


class Transport(Protocol):
    def open(self, url: str, headers: dict[str, str]) -> AsyncContextManager[AsyncIterator[ServerSentEvent]]:
        ...


class HttpxSSETransport:
    """Opens the event stream over HTTP with httpx."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, connect_timeout: Optional[float] = None):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._connect_timeout = connect_timeout if connect_timeout is not None else settings.http_timeout_seconds

    @asynccontextmanager
    async def open(self, url: str, headers: dict[str, str]) -> AsyncIterator[AsyncIterator[ServerSentEvent]]:
        request_headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache", **headers}
        # No read timeout: the stream is idle between events
        timeout = httpx.Timeout(self._connect_timeout, read=None)

        async with self._client.stream("GET", url, headers=request_headers, timeout=timeout) as response:
            response.raise_for_status()
            yield iter_sse(response.aiter_lines())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class Subscription:
    """Handle returned by ``StreamClient.subscribe``."""

    def __init__(self, client: "StreamClient", event_type: str, handler: EventHandler):
        self.client = client
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.client._remove_handler(self.event_type, self.handler)
            self.active = False


class StreamClient:
    """
    Managed connection to the event stream.

    States: disconnected -> connecting -> connected; a transport error or
    an unexpected close moves to reconnecting, and after the backoff delay
    back to connecting. Only ``disconnect()`` stops retrying.

    Events are delivered one at a time, in arrival order, to the handlers
    registered for their tag. Tags without handlers are dropped before
    decoding.

    Usage:
        client = StreamClient(settings.stream_url)
        client.subscribe("line.status", synchronizer.apply_status_event)
        client.connect()
        ...
        await client.aclose()
    """

    def __init__(
        self,
        url: str,
        transport: Optional[Transport] = None,
        backoff: Optional[Backoff] = None,
        connected_event: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.url = url
        self._log = get_logger(__name__, stream_url=url)
        self._transport = transport or HttpxSSETransport()
        self._backoff = backoff or Backoff()
        self._connected_event = connected_event or settings.stream_connected_event
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._handlers: dict[str, list[EventHandler]] = {}
        self._state_listeners: list[StateListener] = []
        self._watermarks: dict[str, datetime] = {}
        self._last_event_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = True

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def backoff_delay(self) -> float:
        return self._backoff.delay

    @property
    def subscribed_types(self) -> set[str]:
        return {event_type for event_type, handlers in self._handlers.items() if handlers}

    def last_event_at(self, channel: str) -> Optional[datetime]:
        """Timestamp of the newest event dispatched on a channel."""
        return self._watermarks.get(channel)

    def subscribe(self, event_type: str, handler: EventHandler) -> Subscription:
        self._handlers.setdefault(event_type, []).append(handler)
        return Subscription(self, event_type, handler)

    def _remove_handler(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register a state observer; returns a callable that removes it."""
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    def connect(self) -> None:
        """Start the connection loop. Must be called from a running event loop."""
        if self._task is not None and not self._task.done():
            self._log.warning("stream.already_connected")
            return

        self._closed = False
        self._task = asyncio.get_running_loop().create_task(self._run(), name="stream-client")

    def disconnect(self) -> None:
        """
        Stop dispatching and cancel any pending reconnect.

        Safe to call repeatedly and before a connection attempt completes.
        Reconnecting only resumes after another ``connect()``.
        """
        self._closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            self._log.info("stream.disconnecting")
        self._set_state(ConnectionState.DISCONNECTED)

    async def aclose(self) -> None:
        """Disconnect and wait for the connection loop and transport to shut down."""
        task = self._task
        self.disconnect()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if hasattr(self._transport, "aclose"):
            await self._transport.aclose()

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        stream_state.state(state.value)
        self._log.debug("stream.state_changed", previous=previous.value, state=state.value)

        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                self._log.error("stream.state_listener_failed", error=str(e), exc_info=True)

    async def _run(self) -> None:
        """
        Connection loop.

        CRITICAL: This loop must never exit on its own. Every failure is
        logged and followed by a reconnect after the backoff delay.
        """
        while not self._closed:
            self._set_state(ConnectionState.CONNECTING)

            try:
                await self._consume()
                if self._closed:
                    break
                raise StreamClosed("stream closed by server")

            except asyncio.CancelledError:
                raise

            except (httpx.HTTPError, StreamClosed, OSError) as e:
                self._log.error(
                    "stream.disconnected",
                    error=str(e),
                    retry_in=self._backoff.delay
                )

            except Exception as e:
                self._log.error(
                    "stream.unexpected_error",
                    error=str(e),
                    exc_info=True,
                    retry_in=self._backoff.delay
                )

            if self._closed:
                break

            delay = self._backoff.next_delay()
            self._set_state(ConnectionState.RECONNECTING)
            stream_reconnects_total.inc()
            stream_backoff_seconds.set(delay)
            await self._sleep(delay)

    async def _consume(self) -> None:
        headers = {}
        if self._last_event_id:
            headers["Last-Event-ID"] = self._last_event_id

        # Each attempt opens its own transport; the previous one is closed
        # when its context exits.
        async with self._transport.open(self.url, headers) as messages:
            async for message in messages:
                if self._closed:
                    return

                if message.id is not None:
                    self._last_event_id = message.id

                if message.event == self._connected_event:
                    self._backoff.reset()
                    stream_backoff_seconds.set(self._backoff.delay)
                    self._set_state(ConnectionState.CONNECTED)
                    self._log.info("stream.connected")
                    continue

                await self._dispatch(message)

    async def _dispatch(self, message: ServerSentEvent) -> None:
        stream_events_received_total.labels(event_type=message.event).inc()

        handlers = self._handlers.get(message.event)
        if not handlers:
            stream_events_dropped_total.labels(reason="unsubscribed").inc()
            return

        try:
            event = decode_event(message.event, message.data)
        except EventDecodeError as e:
            stream_events_dropped_total.labels(reason="malformed").inc()
            self._log.warning(
                "stream.decode_failed",
                event_type=message.event,
                error=e.message,
                details=e.details
            )
            return

        if event is None:
            stream_events_dropped_total.labels(reason="unknown_type").inc()
            return

        if self._is_stale(event):
            stream_events_dropped_total.labels(reason="stale").inc()
            self._log.debug("stream.stale_event_dropped", event_type=message.event, channel=event.channel)
            return

        delivered = False
        for handler in list(handlers):
            if self._closed:
                return
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered = True
            except Exception as e:
                self._log.error(
                    "stream.handler_failed",
                    event_type=message.event,
                    channel=event.channel,
                    error=str(e),
                    exc_info=True
                )

        if delivered:
            self._advance_watermark(event)

    def _is_stale(self, event: StreamEvent) -> bool:
        """Reject replays older than the newest event delivered on the same channel."""
        channel = event.channel
        timestamp = getattr(event, "timestamp", None)
        if channel is None or timestamp is None:
            return False

        last = self._watermarks.get(channel)
        return last is not None and timestamp < last

    def _advance_watermark(self, event: StreamEvent) -> None:
        """Move the channel watermark forward; only called after a handler accepted the event."""
        channel = event.channel
        timestamp = getattr(event, "timestamp", None)
        if channel is None or timestamp is None:
            return

        last = self._watermarks.get(channel)
        if last is None or timestamp > last:
            self._watermarks[channel] = timestamp
