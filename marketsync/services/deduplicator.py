"""
RequestDeduplicator - single-flight execution of identical concurrent work.

When several callers need the same marketplace resource or the same cache
refresh at once, only one load runs and every caller awaits its result.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestDeduplicator:
    """
    Deduplicates concurrent async work by key.

    The shared task is shielded: cancelling one waiter (for example a
    superseded request) leaves the load running for the other waiters.

    Usage:
        dedup = RequestDeduplicator()

        record = await dedup.dedupe(
            key=str(enrichment_key),
            request_fn=lambda: loader.load(enrichment_key),
        )
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Execute ``request_fn`` unless work for ``key`` is already in flight.

        Args:
            key: Unique identifier for this piece of work
            request_fn: Async function to execute if no duplicate exists

        Returns:
            Result from request_fn (either fresh or from the in-flight task)
        """
        task = await self.start(key, request_fn)
        return await asyncio.shield(task)

    async def start(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> "asyncio.Task[T]":
        """Return the in-flight task for ``key``, creating it if needed."""
        async with self._lock:
            if key in self._in_flight:
                self._stats.deduplicated += 1
                self._log(f"DEDUPE: Joining in-flight work: {key[:60]}")
                return self._in_flight[key]

            self._stats.total += 1
            self._log(f"NEW: Starting work: {key[:60]}")
            task = asyncio.create_task(self._execute_and_cleanup(key, request_fn))
            self._in_flight[key] = task
            return task

    async def _execute_and_cleanup(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute work and clean up when done."""
        try:
            return await request_fn()
        finally:
            async with self._lock:
                self._in_flight.pop(key, None)
                self._log(f"DONE: {key[:60]}")

    def is_in_flight(self, key: str) -> bool:
        """Check whether work for ``key`` is running."""
        return key in self._in_flight

    async def wait_all(self) -> None:
        """Wait until every in-flight task has settled (errors are not raised)."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def cancel_all(self) -> int:
        """Cancel all in-flight work."""
        async with self._lock:
            count = len(self._in_flight)
            for task in self._in_flight.values():
                task.cancel()
            self._in_flight.clear()
            if count:
                self._log(f"CANCEL_ALL: {count} tasks cancelled")
            return count

    def get_in_flight_count(self) -> int:
        """Get number of in-flight tasks."""
        return len(self._in_flight)

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Loads actually started
        self.deduplicated: int = 0  # Callers that joined a running load
        self.in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
