"""
Unit tests for the event-stream client: backoff, state machine and dispatch.
Run: pytest tests/unit/test_stream_client.py -v
"""
import asyncio
import json
from contextlib import asynccontextmanager

import pytest
from prometheus_client import REGISTRY

from lineops.stream.client import Backoff, ConnectionState, StreamClient
from lineops.stream.sse import ServerSentEvent


def frame(event: str, data=None, id=None) -> ServerSentEvent:
    payload = data if isinstance(data, str) else json.dumps(data or {})
    return ServerSentEvent(event=event, data=payload, id=id)


def status_frame(line_id: str, status: str, timestamp: str, id=None) -> ServerSentEvent:
    return frame("line.status", {
        "type": "status",
        "timestamp": timestamp,
        "id": line_id,
        "code": line_id.upper(),
        "status": status,
    }, id=id)


CONNECTED = frame("connected", {"client_id": "c-1"})


async def _iterate(frames):
    for item in frames:
        yield item


class ScriptedTransport:
    """
    Transport replaying one scripted attempt per open() call.

    Each attempt is either an exception raised on open or a list of frames
    after which the server closes the stream. Once the script runs out,
    every attempt fails.
    """

    def __init__(self, attempts):
        self.attempts = list(attempts)
        self.headers = []

    @asynccontextmanager
    async def open(self, url, headers):
        self.headers.append(dict(headers))
        attempt = self.attempts.pop(0) if self.attempts else ConnectionError("connection refused")
        if isinstance(attempt, Exception):
            raise attempt
        yield _iterate(attempt)


class SleepRecorder:
    """Injected sleep that records delays and parks after ``stop_after`` calls."""

    def __init__(self, stop_after: int):
        self.stop_after = stop_after
        self.delays = []
        self.done = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if len(self.delays) >= self.stop_after:
            self.done.set()
            await asyncio.Event().wait()


def dropped(reason: str) -> float:
    return REGISTRY.get_sample_value("lineops_stream_events_dropped_total", {"reason": reason}) or 0.0


async def run_until_parked(client: StreamClient, sleep: SleepRecorder) -> None:
    client.connect()
    await asyncio.wait_for(sleep.done.wait(), timeout=2)
    await client.aclose()


class TestBackoff:
    """Tests for the reconnect delay sequence."""

    def test_doubles_until_ceiling(self):
        backoff = Backoff(floor=1, ceiling=30, multiplier=2)

        delays = [backoff.next_delay() for _ in range(7)]

        assert delays == [1, 2, 4, 8, 16, 30, 30]

    def test_reset_returns_to_floor(self):
        backoff = Backoff(floor=1, ceiling=30, multiplier=2)
        backoff.next_delay()
        backoff.next_delay()

        backoff.reset()

        assert backoff.next_delay() == 1

    @pytest.mark.parametrize("floor,ceiling,multiplier", [
        (0, 30, 2),
        (5, 1, 2),
        (1, 30, 0.5),
    ])
    def test_invalid_configuration_raises(self, floor, ceiling, multiplier):
        with pytest.raises(ValueError):
            Backoff(floor=floor, ceiling=ceiling, multiplier=multiplier)


class TestConnectionLoop:
    """Tests for the reconnect state machine."""

    async def test_consecutive_failures_back_off_exponentially(self):
        sleep = SleepRecorder(stop_after=7)
        client = StreamClient(
            "http://upstream/events/stream",
            transport=ScriptedTransport([]),
            backoff=Backoff(floor=1, ceiling=30, multiplier=2),
            sleep=sleep,
        )

        await run_until_parked(client, sleep)

        assert sleep.delays[:4] == [1, 2, 4, 8]
        assert sleep.delays[4:7] == [16, 30, 30]
        assert client.state == ConnectionState.DISCONNECTED

    async def test_connected_event_resets_backoff(self):
        sleep = SleepRecorder(stop_after=3)
        transport = ScriptedTransport([
            ConnectionError("down"),
            ConnectionError("down"),
            [CONNECTED],
        ])
        client = StreamClient("http://upstream/events/stream", transport=transport,
                              backoff=Backoff(floor=1, ceiling=30, multiplier=2), sleep=sleep)
        states = []
        client.on_state_change(states.append)

        await run_until_parked(client, sleep)

        assert sleep.delays == [1, 2, 1]
        assert ConnectionState.CONNECTED in states
        assert states[:3] == [
            ConnectionState.CONNECTING,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTING,
        ]

    async def test_disconnect_is_safe_before_and_after_connect(self):
        client = StreamClient("http://upstream/events/stream", transport=ScriptedTransport([]))

        client.disconnect()
        client.disconnect()
        assert client.state == ConnectionState.DISCONNECTED

        sleep = SleepRecorder(stop_after=1)
        client._sleep = sleep
        await run_until_parked(client, sleep)
        client.disconnect()

        assert client.state == ConnectionState.DISCONNECTED

    async def test_last_event_id_is_sent_on_reconnect(self):
        sleep = SleepRecorder(stop_after=2)
        transport = ScriptedTransport([
            [CONNECTED, status_frame("a", "on", "2024-01-01T00:00:00Z", id="42")],
        ])
        client = StreamClient("http://upstream/events/stream", transport=transport, sleep=sleep)
        client.subscribe("line.status", lambda event: None)

        await run_until_parked(client, sleep)

        assert "Last-Event-ID" not in transport.headers[0]
        assert transport.headers[1]["Last-Event-ID"] == "42"


class TestDispatch:
    """Tests for event delivery."""

    async def _deliver(self, frames, subscribe=("line.status",)):
        sleep = SleepRecorder(stop_after=1)
        client = StreamClient("http://upstream/events/stream",
                              transport=ScriptedTransport([[CONNECTED, *frames]]), sleep=sleep)
        received = []
        for event_type in subscribe:
            client.subscribe(event_type, received.append)

        await run_until_parked(client, sleep)
        return client, received

    async def test_events_reach_handlers_in_order(self):
        _, received = await self._deliver([
            status_frame("a", "on", "2024-01-01T00:00:01Z"),
            status_frame("b", "error", "2024-01-01T00:00:02Z"),
            status_frame("a", "off", "2024-01-01T00:00:03Z"),
        ])

        assert [(e.id, e.status.value) for e in received] == [("a", "on"), ("b", "error"), ("a", "off")]

    async def test_unsubscribed_types_are_dropped(self):
        before = dropped("unsubscribed")

        _, received = await self._deliver([frame("line.deleted", "not even json")])

        assert received == []
        assert dropped("unsubscribed") == before + 1

    async def test_malformed_payload_is_dropped_and_stream_continues(self):
        before = dropped("malformed")

        _, received = await self._deliver([
            frame("line.status", "{not json"),
            frame("line.status", {"id": "a"}),
            status_frame("a", "on", "2024-01-01T00:00:01Z"),
        ])

        assert len(received) == 1
        assert dropped("malformed") == before + 2

    async def test_unknown_tag_with_handler_is_ignored(self):
        _, received = await self._deliver([frame("line.renamed", {})], subscribe=("line.renamed",))

        assert received == []

    async def test_older_replay_on_same_channel_is_dropped(self):
        client, received = await self._deliver([
            status_frame("a", "error", "2024-01-01T00:00:03Z"),
            status_frame("a", "off", "2024-01-01T00:00:02Z"),
            status_frame("b", "on", "2024-01-01T00:00:01Z"),
        ])

        assert [(e.id, e.status.value) for e in received] == [("a", "error"), ("b", "on")]
        assert client.last_event_at("line.status:a").second == 3

    async def test_failing_handler_does_not_stop_delivery(self):
        sleep = SleepRecorder(stop_after=1)
        client = StreamClient("http://upstream/events/stream", transport=ScriptedTransport([[
            CONNECTED,
            status_frame("a", "on", "2024-01-01T00:00:01Z"),
            status_frame("a", "off", "2024-01-01T00:00:02Z"),
        ]]), sleep=sleep)
        received = []

        def broken(event):
            raise RuntimeError("boom")

        client.subscribe("line.status", broken)
        client.subscribe("line.status", received.append)

        await run_until_parked(client, sleep)

        assert len(received) == 2

    async def test_async_handlers_are_awaited(self):
        sleep = SleepRecorder(stop_after=1)
        client = StreamClient("http://upstream/events/stream", transport=ScriptedTransport([[
            CONNECTED, status_frame("a", "on", "2024-01-01T00:00:01Z"),
        ]]), sleep=sleep)
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append(event)

        client.subscribe("line.status", handler)
        await run_until_parked(client, sleep)

        assert len(received) == 1

    async def test_unsubscribe_stops_delivery(self):
        sleep = SleepRecorder(stop_after=1)
        client = StreamClient("http://upstream/events/stream", transport=ScriptedTransport([[
            CONNECTED, status_frame("a", "on", "2024-01-01T00:00:01Z"),
        ]]), sleep=sleep)
        received = []
        subscription = client.subscribe("line.status", received.append)

        subscription.unsubscribe()
        subscription.unsubscribe()
        await run_until_parked(client, sleep)

        assert received == []
        assert client.subscribed_types == set()

    async def test_failed_delivery_does_not_advance_watermark(self):
        """Test an older event still passes when every handler failed on the newer one."""
        sleep = SleepRecorder(stop_after=1)
        client = StreamClient("http://upstream/events/stream", transport=ScriptedTransport([[
            CONNECTED,
            status_frame("a", "error", "2024-01-01T00:00:03Z"),
            status_frame("a", "off", "2024-01-01T00:00:02Z"),
        ]]), sleep=sleep)
        received = []

        def rejects_errors(event):
            if event.status.value == "error":
                raise RuntimeError("store unavailable")
            received.append(event)

        client.subscribe("line.status", rejects_errors)
        await run_until_parked(client, sleep)

        assert [e.status.value for e in received] == ["off"]
        assert client.last_event_at("line.status:a").second == 2
