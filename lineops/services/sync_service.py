"""
Live synchronization service.
Wires the REST client, the stream client and the cache together for the
lifetime of the application.
"""
import asyncio
from typing import Any, Awaitable, Callable, Optional

from lineops.core.config import settings
from lineops.core.exceptions import UpstreamAPIError
from lineops.core.logging import get_logger
from lineops.services.lines_client import LinesClient
from lineops.stream.cache import CacheSynchronizer, LineCache
from lineops.stream.client import ConnectionState, StreamClient


logger = get_logger(__name__)


class LiveSync:
    """
    Keeps a LineCache consistent with the upstream API.

    - seeds the cache from the REST API on start
    - applies live status events from the stream
    - refetches the line list while it is marked stale, which status
      changes and line created/updated/deleted events both trigger
    - re-seeds histories after a reconnect, so that events missed while
      disconnected are recovered
    """

    def __init__(
        self,
        lines_client: LinesClient,
        stream_client: Optional[StreamClient] = None,
        cache: Optional[LineCache] = None,
        refresh_interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.cache = cache or LineCache()
        self.synchronizer = CacheSynchronizer(self.cache)
        self.lines_client = lines_client
        self.stream_client = stream_client
        self.refresh_interval = refresh_interval if refresh_interval is not None else settings.list_refresh_seconds
        self._sleep = sleep

        self._subscriptions = []
        self._remove_state_listener: Optional[Callable[[], None]] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._resync_task: Optional[asyncio.Task] = None
        self._has_connected = False

    async def start(self) -> None:
        try:
            await self.synchronizer.bootstrap(self.lines_client)
        except UpstreamAPIError as e:
            # Stream events and the refresh loop fill the cache later
            logger.warning("sync.bootstrap_failed", error=e.message, status_code=e.status_code)

        if self.stream_client is not None:
            self._subscriptions = self.synchronizer.attach(self.stream_client)
            self._remove_state_listener = self.stream_client.on_state_change(self._on_state_change)
            self.stream_client.connect()

        self._refresh_task = asyncio.create_task(self._refresh_loop(), name="line-list-refresh")
        logger.info("sync.started", lines=len(self.cache), streaming=self.stream_client is not None)

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        if self._remove_state_listener is not None:
            self._remove_state_listener()
            self._remove_state_listener = None

        for task in (self._refresh_task, self._resync_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._refresh_task = None
        self._resync_task = None

        if self.stream_client is not None:
            await self.stream_client.aclose()
        await self.lines_client.aclose()
        logger.info("sync.stopped")

    def _on_state_change(self, state: ConnectionState) -> None:
        if state != ConnectionState.CONNECTED:
            return
        if not self._has_connected:
            self._has_connected = True
            return
        if self._resync_task is None or self._resync_task.done():
            self._resync_task = asyncio.create_task(self._resync(), name="line-resync")

    async def _resync(self) -> None:
        logger.info("sync.resync_after_reconnect")
        self.synchronizer.invalidate_list()
        try:
            await self.synchronizer.bootstrap(self.lines_client)
        except UpstreamAPIError as e:
            logger.warning("sync.resync_failed", error=e.message, status_code=e.status_code)

    async def _refresh_loop(self) -> None:
        while True:
            await self._sleep(self.refresh_interval)
            try:
                await self.synchronizer.refresh_list(self.lines_client)
            except Exception as e:
                logger.error("sync.refresh_failed", error=str(e), exc_info=True)
