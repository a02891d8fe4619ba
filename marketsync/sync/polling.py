"""
PollingLoop - periodic count probe that announces new data without replacing it.

The loop is one asyncio task. Before each probe two guards apply:
- throttle: at least ``min_gap`` since the previous probe
- interaction: nothing while the user is interacting, nor until
  ``quiet_period`` has elapsed since the last interaction

A probe returning more records than last observed emits a NewDataEvent
carrying only the difference. The usual probe reads the sync watermarks
(make_watermark_probe); make_count_probe counts one view through the gateway.
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from marketsync.datastore.store import ServerCacheStore
from marketsync.enrichment.types import DateRange, ResourceType
from marketsync.services.errors import ServiceError
from marketsync.settings import global_settings
from marketsync.sync.gateway import Gateway
from marketsync.utils import Clock, utc_now

Probe = Callable[[], Awaitable[int]]


class TickOutcome(str, Enum):
    THROTTLED = "throttled"
    DEFERRED = "deferred"
    POLLED = "polled"
    FAILED = "failed"


@dataclass(frozen=True)
class NewDataEvent:
    """More records exist than the view currently shows."""

    previous: int
    current: int
    new_count: int
    detected_at: datetime


Subscriber = Callable[[NewDataEvent], Any]


class PollingLoop:
    """
    Usage:
        loop = PollingLoop(make_count_probe(gateway, ResourceType.CLAIM, ["acc-1"]))
        loop.subscribe(lambda event: print(f"{event.new_count} new claims"))
        loop.start()
        ...
        loop.begin_interaction()   # user starts selecting rows
        loop.end_interaction()
        ...
        await loop.stop()
    """

    def __init__(
        self,
        probe: Probe,
        interval: timedelta | None = None,
        min_gap: timedelta | None = None,
        quiet_period: timedelta | None = None,
        clock: Clock = utc_now,
        baseline: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._probe = probe
        if interval is None:
            interval = timedelta(seconds=global_settings.poll_interval_seconds)
        if min_gap is None:
            min_gap = timedelta(seconds=global_settings.poll_min_gap_seconds)
        if quiet_period is None:
            quiet_period = timedelta(seconds=global_settings.poll_quiet_period_seconds)
        self.interval = interval
        self.min_gap = min_gap
        self.quiet_period = quiet_period
        self._clock = clock
        self._sleep = sleep

        self._last_count = baseline
        self._last_poll: datetime | None = None
        self._last_interaction: datetime | None = None
        self._interacting = False
        self._enabled = True
        self._subscribers: list[Subscriber] = []
        self._task: asyncio.Task | None = None

    @property
    def last_count(self) -> int | None:
        return self._last_count

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    def begin_interaction(self) -> None:
        self._interacting = True
        self._last_interaction = self._clock()

    def end_interaction(self) -> None:
        self._interacting = False
        self._last_interaction = self._clock()

    def touch(self) -> None:
        """Record a momentary interaction (scroll, click)."""
        self._last_interaction = self._clock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` (sync or async); returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _quiet_remaining(self, now: datetime) -> timedelta:
        if self._interacting:
            return max(self.quiet_period, timedelta.resolution)
        if self._last_interaction is None:
            return timedelta(0)
        return max(timedelta(0), self._last_interaction + self.quiet_period - now)

    async def tick(self) -> TickOutcome:
        """Probe once if both guards allow it."""
        now = self._clock()
        if self._last_poll is not None and now - self._last_poll < self.min_gap:
            return TickOutcome.THROTTLED
        if self._quiet_remaining(now) > timedelta(0):
            logger.debug("Poll deferred: user is interacting")
            return TickOutcome.DEFERRED

        self._last_poll = now
        try:
            count = await self._probe()
        except ServiceError as e:
            logger.warning(f"Poll failed: {e}")
            return TickOutcome.FAILED

        previous = self._last_count
        self._last_count = count
        if previous is not None and count > previous:
            await self._emit(
                NewDataEvent(
                    previous=previous,
                    current=count,
                    new_count=count - previous,
                    detected_at=now,
                )
            )
        return TickOutcome.POLLED

    async def _emit(self, event: NewDataEvent) -> None:
        logger.info(f"{event.new_count} new records available ({event.previous} -> {event.current})")
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"New-data subscriber failed: {type(e).__name__}: {e}")

    async def _run(self) -> None:
        while True:
            delay = self.interval
            if self._enabled:
                outcome = await self.tick()
                if outcome == TickOutcome.DEFERRED:
                    delay = min(self.interval, self._quiet_remaining(self._clock()))
                elif outcome == TickOutcome.THROTTLED and self._last_poll is not None:
                    delay = min(self.interval, self._last_poll + self.min_gap - self._clock())
            await self._sleep(max(delay.total_seconds(), 0.1))

    def start(self) -> None:
        if self.is_running:
            logger.warning("Polling loop is already running")
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Polling loop started: every {self.interval.total_seconds():.0f}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Polling loop stopped")


def make_count_probe(
    gateway: Gateway,
    resource_type: ResourceType,
    account_ids: list[str],
    date_range: DateRange | None = None,
) -> Probe:
    """
    Probe counting the records the gateway resolves for a view.

    Client tiers are bypassed so their copies never hide new records, and the
    probe runs on its own channel so it never supersedes the view's request.
    A batch missing any account raises instead of reporting a short count.
    """

    async def probe() -> int:
        batch = await gateway.get_enriched(
            resource_type,
            account_ids,
            date_range,
            channel=f"poll:{resource_type.value}",
            use_client_cache=False,
        )
        if batch.errors:
            raise ServiceError(
                f"Count incomplete, failed accounts: {sorted(batch.errors)}",
                service_id="polling",
            )
        return len(batch.records)

    return probe


def make_watermark_probe(
    store: ServerCacheStore,
    resource_type: ResourceType,
    account_ids: list[str],
) -> Probe:
    """
    Probe summing the record counts the background sync has recorded.

    Reads one watermark row per account instead of resolving any payload, so
    it is the default count source for the loop. An account without a
    watermark yet makes the count incomplete and the tick fails.
    """

    async def probe() -> int:
        watermarks = await asyncio.gather(
            *(store.get_watermark(account_id, resource_type) for account_id in account_ids)
        )
        missing = [
            account_id
            for account_id, watermark in zip(account_ids, watermarks)
            if watermark is None
        ]
        if missing:
            raise ServiceError(
                f"No sync watermark yet for accounts: {sorted(missing)}",
                service_id="polling",
            )
        return sum(watermark.record_count for watermark in watermarks)

    return probe
