"""
Elapsed time-in-status ticker.
Re-evaluates "time since the latest transition" on a fixed period. Purely
derived from the cached timestamp; never a source of truth.
"""
import asyncio
import inspect
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from lineops.core.config import settings
from lineops.core.logging import get_logger
from lineops.schemas.status import as_utc


logger = get_logger(__name__)

TickCallback = Callable[[int], Union[Any, Awaitable[Any]]]


def elapsed_seconds(since: Optional[datetime], now: datetime) -> int:
    """
    Whole seconds between ``since`` and ``now``.

    Returns 0 when ``since`` is unknown or lies in the future (clock skew).
    """
    if since is None:
        return 0
    diff = (as_utc(now) - as_utc(since)).total_seconds()
    return max(0, int(diff))


def format_duration(ms: int) -> str:
    """
    Format a duration for display.

    Examples:
        >>> format_duration(93_784_000)
        '1d 2h'
        >>> format_duration(7_000)
        '7s'
    """
    seconds = max(0, int(ms // 1000))
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ElapsedTimeTicker:
    """
    Periodic timer reporting seconds spent in the current status.

    The timer is an owned resource: use it as an async context manager (or
    pair ``start()`` with ``stop()``) so the underlying task is cancelled on
    every exit path.

    Usage:
        async with ElapsedTimeTicker(lambda: line.status_since, render):
            await shutdown.wait()
    """

    def __init__(
        self,
        source: Callable[[], Optional[datetime]],
        on_tick: TickCallback,
        period: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._source = source
        self._on_tick = on_tick
        self.period = period if period is not None else settings.ticker_period_seconds
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def for_line(cls, cache, line_id: str, on_tick: TickCallback, **kwargs) -> "ElapsedTimeTicker":
        """Ticker reading the line's latest transition time from the cache on every tick."""
        def source() -> Optional[datetime]:
            line = cache.get_line(line_id)
            return line.last_status_update if line else None

        return cls(source, on_tick, **kwargs)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def current(self) -> int:
        return elapsed_seconds(self._source(), self._clock())

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="elapsed-time-ticker")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> "ElapsedTimeTicker":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _run(self) -> None:
        while True:
            try:
                result = self._on_tick(self.current())
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("ticker.callback_failed", error=str(e), exc_info=True)
                return
            await self._sleep(self.period)
