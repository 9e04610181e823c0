"""
In-memory projection of production lines and their status logs.

LineCache is read by the API, analytics and tickers. CacheSynchronizer is
the only component that writes to it: live stream events and REST bulk
fetches are both merged through it so that older data never overwrites
newer state.
"""
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

from lineops.core.config import settings
from lineops.core.logging import get_logger
from lineops.core.metrics import cache_events_total, cached_lines_total
from lineops.core.exceptions import UpstreamAPIError
from lineops.schemas.events import LineChangedEvent, LineDeletedEvent, LineStatusEvent, StreamEventType
from lineops.schemas.status import MS_PER_HOUR, ProductionLine, Status, StatusChange


logger = get_logger(__name__)

MS_PER_DAY = 24 * MS_PER_HOUR

LINE_LIFECYCLE_EVENTS = (
    StreamEventType.LINE_CREATED,
    StreamEventType.LINE_UPDATED,
    StreamEventType.LINE_DELETED,
)


class LineCache:
    """Read side of the projection. Accessors return copies."""

    def __init__(self):
        self._lines: dict[str, ProductionLine] = {}
        self._logs: dict[str, list[StatusChange]] = {}
        self._seen: dict[str, set[tuple[int, Status]]] = {}
        self._list_ids: list[str] = []
        self._list_stale = True

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, line_id: str) -> bool:
        return line_id in self._lines

    @property
    def list_stale(self) -> bool:
        """True when the line list must be refetched before it is trusted."""
        return self._list_stale

    def get_line(self, line_id: str) -> Optional[ProductionLine]:
        return self._lines.get(line_id)

    def list_lines(self) -> list[ProductionLine]:
        """Lines in list order, followed by lines only known from the stream."""
        ordered = [self._lines[i] for i in self._list_ids if i in self._lines]
        listed = set(self._list_ids)
        ordered.extend(line for line_id, line in self._lines.items() if line_id not in listed)
        return ordered

    def get_log(self, line_id: str) -> list[StatusChange]:
        return list(self._logs.get(line_id, ()))

    def logs(self) -> dict[str, list[StatusChange]]:
        return {line_id: list(log) for line_id, log in self._logs.items()}


def _placeholder(change: StatusChange) -> ProductionLine:
    """Line known only from its status records."""
    code = change.line_code or change.line_id
    return ProductionLine(
        id=change.line_id,
        code=code,
        name=code,
        status=change.new_status,
        status_since=change.time,
    )


class CacheSynchronizer:
    """
    Sole writer of a LineCache.

    Merge rules for a status change of one line:
    - same status and cached last update >= event time: duplicate, dropped
    - event time older than the cached last update: stale, dropped
    - a record with the same time and status already in the log: dropped
    - otherwise the line's status and last update move to the event and
      the record is appended to the line's log

    Every applied change marks the line list for refresh instead of
    patching it in place. Line created/updated/deleted events only mark
    the list stale; the refetch brings in the new snapshot or drops the line.

    Each log keeps ``retention_days`` before its newest record, plus the
    last record before that horizon so the status at the horizon is known.
    A retention of 0 keeps everything.
    """

    def __init__(self, cache: LineCache, retention_days: Optional[int] = None):
        self.cache = cache
        if retention_days is None:
            retention_days = settings.log_retention_days
        self.retention_ms = retention_days * MS_PER_DAY if retention_days > 0 else None

    def attach(self, client) -> list:
        """Subscribe to the line events of a StreamClient. Returns the subscriptions."""
        subscriptions = [client.subscribe(StreamEventType.LINE_STATUS.value, self.apply_status_event)]
        for event_type in LINE_LIFECYCLE_EVENTS:
            subscriptions.append(client.subscribe(event_type.value, self.apply_line_event))
        return subscriptions

    def apply_status_event(self, event: LineStatusEvent) -> bool:
        """Apply one decoded stream event. Returns True if the cache changed."""
        return self.apply_status_change(event.to_status_change())

    def apply_line_event(self, event: Union[LineChangedEvent, LineDeletedEvent]) -> None:
        """A line was created, renamed, relabelled or deleted upstream."""
        line_id = event.id if isinstance(event, LineDeletedEvent) else (event.data.id if event.data else None)
        logger.info("cache.line_event", event_type=event.type, line_id=line_id)
        self.invalidate_list()

    def apply_status_change(self, change: StatusChange) -> bool:
        cache = self.cache
        line = cache._lines.get(change.line_id)
        last_update = line.last_status_update if line else None

        if line is not None and last_update is not None:
            if line.status == change.new_status and last_update >= change.time:
                cache_events_total.labels(outcome="duplicate").inc()
                logger.debug("cache.duplicate_dropped", line_id=change.line_id, status=change.new_status.value)
                return False
            if change.time < last_update:
                cache_events_total.labels(outcome="stale").inc()
                logger.debug(
                    "cache.stale_dropped",
                    line_id=change.line_id,
                    status=change.new_status.value,
                    event_time=change.time.isoformat(),
                    cached_time=last_update.isoformat()
                )
                return False

        key = (change.time_ms, change.new_status)
        if key in cache._seen.get(change.line_id, ()):
            cache_events_total.labels(outcome="duplicate").inc()
            return False

        if change.old_status is None and line is not None:
            change = change.model_copy(update={"old_status": line.status})

        if line is None:
            cache._lines[change.line_id] = _placeholder(change)
        else:
            cache._lines[change.line_id] = line.model_copy(update={
                "status": change.new_status,
                "status_since": change.time,
            })

        self._append(change, keep_sorted=True)
        self._prune(change.line_id)
        cache._list_stale = True
        cached_lines_total.set(len(cache))
        cache_events_total.labels(outcome="applied").inc()

        logger.info(
            "cache.status_applied",
            line_id=change.line_id,
            old_status=change.old_status.value if change.old_status else None,
            new_status=change.new_status.value,
            time=change.time.isoformat()
        )
        return True

    def seed_line(self, line: ProductionLine) -> bool:
        """
        Merge a fetched line snapshot.

        Descriptive fields always come from the snapshot. Status is only
        taken when the snapshot is not older than the cached status.

        Returns:
            True if the snapshot's status was taken
        """
        cache = self.cache
        existing = cache._lines.get(line.id)
        cached_at = existing.last_status_update if existing else None
        fetched_at = line.last_status_update

        if existing is not None and cached_at is not None and (fetched_at is None or fetched_at < cached_at):
            cache._lines[line.id] = line.model_copy(update={
                "status": existing.status,
                "status_since": cached_at,
            })
            logger.debug("cache.snapshot_status_kept", line_id=line.id, status=existing.status.value)
            return False

        cache._lines[line.id] = line
        cached_lines_total.set(len(cache))
        return True

    def seed_lines(self, lines: Iterable[ProductionLine], fetched_at: Optional[datetime] = None) -> None:
        """
        Replace the line list with a fetched one, merging each snapshot.

        Lines from the previous list that are missing from the fetched one
        were deleted upstream and are removed with their logs. Lines known
        only from the stream are removed as well when ``fetched_at`` shows
        the fetch was started after their last update; otherwise they are
        newer than the fetch and kept.

        Args:
            lines: Fetched line snapshots, in list order
            fetched_at: Time the fetch was started
        """
        cache = self.cache
        ids = []
        for line in lines:
            self.seed_line(line)
            ids.append(line.id)

        fetched = set(ids)
        previous = set(cache._list_ids)
        for line_id, line in list(cache._lines.items()):
            if line_id in fetched:
                continue
            if line_id in previous:
                self._remove_line(line_id, reason="deleted")
                continue
            last_update = line.last_status_update
            if fetched_at is not None and last_update is not None and last_update <= fetched_at:
                self._remove_line(line_id, reason="not_listed")

        cache._list_ids = ids
        cache._list_stale = False
        cached_lines_total.set(len(cache))
        logger.info("cache.lines_seeded", count=len(ids))

    def seed_history(self, line_id: str, changes: Iterable[StatusChange]) -> int:
        """
        Merge a fetched status log into the cached one.

        Records already present (same time and status) are skipped. If the
        newest fetched record is newer than the cached status, the line's
        status follows it.

        Returns:
            Number of records added
        """
        cache = self.cache
        added = 0
        for change in sorted(changes, key=lambda c: c.time_ms):
            if change.line_id != line_id:
                continue
            if (change.time_ms, change.new_status) in cache._seen.get(line_id, ()):
                continue
            self._append(change, keep_sorted=True)
            added += 1
        self._prune(line_id)

        log = cache._logs.get(line_id)
        if log:
            latest = log[-1]
            line = cache._lines.get(line_id)
            if line is None:
                cache._lines[line_id] = _placeholder(latest)
            elif line.last_status_update is None or latest.time > line.last_status_update:
                cache._lines[line_id] = line.model_copy(update={
                    "status": latest.new_status,
                    "status_since": latest.time,
                })

        if added:
            logger.info("cache.history_seeded", line_id=line_id, added=added)
        cached_lines_total.set(len(cache))
        return added

    def invalidate_list(self) -> None:
        self.cache._list_stale = True

    async def refresh_list(self, client) -> bool:
        """
        Refetch the line list if it is marked stale.

        Args:
            client: LinesClient used for the fetch

        Returns:
            True if a refresh happened
        """
        if not self.cache.list_stale:
            return False

        fetched_at = datetime.now(timezone.utc)
        try:
            lines = await client.get_lines()
        except UpstreamAPIError as e:
            logger.warning("cache.list_refresh_failed", error=e.message, status_code=e.status_code)
            return False

        self.seed_lines(lines, fetched_at=fetched_at)
        return True

    async def bootstrap(self, client, history_limit: Optional[int] = None) -> None:
        """Seed the cache from the REST API: the line list and every line's history."""
        fetched_at = datetime.now(timezone.utc)
        lines = await client.get_lines()
        self.seed_lines(lines, fetched_at=fetched_at)

        for line in lines:
            try:
                history = await client.get_history(line.id, limit=history_limit)
            except UpstreamAPIError as e:
                logger.warning("cache.history_fetch_failed", line_id=line.id, error=e.message)
                continue
            self.seed_history(line.id, history)

    def _append(self, change: StatusChange, keep_sorted: bool = False) -> None:
        cache = self.cache
        log = cache._logs.setdefault(change.line_id, [])
        log.append(change)
        if keep_sorted and len(log) > 1 and log[-2].time > change.time:
            # Stable: records sharing a timestamp keep arrival order
            log.sort(key=lambda c: c.time_ms)
        cache._seen.setdefault(change.line_id, set()).add((change.time_ms, change.new_status))

    def _prune(self, line_id: str) -> None:
        """Drop records past the retention horizon, keeping the last one before it."""
        log = self.cache._logs.get(line_id)
        if self.retention_ms is None or not log:
            return

        horizon_ms = log[-1].time_ms - self.retention_ms
        if len(log) < 2 or log[1].time_ms > horizon_ms:
            return

        keep_from = 0
        for index, change in enumerate(log):
            if change.time_ms > horizon_ms:
                break
            keep_from = index

        dropped = log[:keep_from]
        del log[:keep_from]
        seen = self.cache._seen.get(line_id, set())
        for change in dropped:
            seen.discard((change.time_ms, change.new_status))
        logger.debug("cache.log_pruned", line_id=line_id, dropped=len(dropped))

    def _remove_line(self, line_id: str, reason: str) -> None:
        cache = self.cache
        cache._lines.pop(line_id, None)
        cache._logs.pop(line_id, None)
        cache._seen.pop(line_id, None)
        logger.info("cache.line_removed", line_id=line_id, reason=reason)

