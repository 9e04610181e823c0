"""
Unit tests for the live sync service.
Run: pytest tests/unit/test_sync_service.py -v
"""
import asyncio
from datetime import datetime, timezone

from lineops.core.exceptions import UpstreamAPIError
from lineops.schemas.events import LineDeletedEvent
from lineops.schemas.status import ProductionLine, Status
from lineops.services.sync_service import LiveSync
from lineops.stream.client import ConnectionState


SINCE = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeLinesClient:

    def __init__(self, fail=False):
        self.fail = fail
        self.deleted = False
        self.list_calls = 0
        self.closed = False

    async def get_lines(self):
        self.list_calls += 1
        if self.fail:
            raise UpstreamAPIError("Network error - connection refused")
        if self.deleted:
            return []
        return [ProductionLine(id="line-1", code="L1", name="Packing", status=Status.ON, status_since=SINCE)]

    async def get_history(self, line_id, limit=None):
        return []

    async def aclose(self):
        self.closed = True


class FakeStreamClient:
    """Records wiring calls made by LiveSync."""

    def __init__(self):
        self.handlers = {}
        self.listeners = []
        self.connected = False
        self.closed = False

    def subscribe(self, event_type, handler):
        self.handlers[event_type] = handler
        client = self

        class _Subscription:
            def unsubscribe(self):
                client.handlers.pop(event_type, None)

        return _Subscription()

    def on_state_change(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def connect(self):
        self.connected = True

    async def aclose(self):
        self.closed = True

    def emit_state(self, state):
        for listener in list(self.listeners):
            listener(state)


async def park(delay):
    await asyncio.Event().wait()


class TestLiveSync:
    """Tests for LiveSync."""

    async def test_start_bootstraps_and_wires_stream(self):
        lines_client, stream = FakeLinesClient(), FakeStreamClient()
        sync = LiveSync(lines_client, stream_client=stream, sleep=park)

        await sync.start()

        assert len(sync.cache) == 1
        assert stream.connected is True
        assert set(stream.handlers) == {"line.status", "line.created", "line.updated", "line.deleted"}

        await sync.stop()

        assert stream.handlers == {}
        assert stream.listeners == []
        assert stream.closed is True
        assert lines_client.closed is True

    async def test_bootstrap_failure_does_not_prevent_start(self):
        sync = LiveSync(FakeLinesClient(fail=True), stream_client=FakeStreamClient(), sleep=park)

        await sync.start()

        assert len(sync.cache) == 0
        await sync.stop()

    async def test_reconnect_triggers_resync(self):
        lines_client, stream = FakeLinesClient(), FakeStreamClient()
        sync = LiveSync(lines_client, stream_client=stream, sleep=park)
        await sync.start()

        stream.emit_state(ConnectionState.CONNECTED)
        await asyncio.sleep(0)
        assert lines_client.list_calls == 1

        stream.emit_state(ConnectionState.RECONNECTING)
        stream.emit_state(ConnectionState.CONNECTED)
        await asyncio.sleep(0.01)

        assert lines_client.list_calls == 2
        await sync.stop()

    async def test_refresh_loop_refetches_stale_list(self):
        lines_client = FakeLinesClient()
        sleeps = []

        async def fast_sleep(delay):
            sleeps.append(delay)
            if len(sleeps) > 2:
                await asyncio.Event().wait()
            await asyncio.sleep(0)

        sync = LiveSync(lines_client, refresh_interval=0.5, sleep=fast_sleep)
        await sync.start()
        sync.synchronizer.invalidate_list()

        for _ in range(10):
            await asyncio.sleep(0)

        assert sleeps[0] == 0.5
        assert lines_client.list_calls == 2
        await sync.stop()

    async def test_deleted_line_is_dropped_on_next_refresh(self):
        lines_client, stream = FakeLinesClient(), FakeStreamClient()
        sync = LiveSync(lines_client, stream_client=stream, sleep=park)
        await sync.start()
        assert "line-1" in sync.cache

        stream.handlers["line.deleted"](LineDeletedEvent(type="deleted", timestamp=SINCE, id="line-1", code="L1"))
        assert sync.cache.list_stale is True

        lines_client.deleted = True
        await sync.synchronizer.refresh_list(lines_client)

        assert "line-1" not in sync.cache
        await sync.stop()
