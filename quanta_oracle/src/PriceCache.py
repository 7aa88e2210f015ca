"""PriceCache: TTL cache with stale fallback and single-flight refresh.

An entry older than its TTL is refreshed on the next get(). If the refresh
fails, the previous entry is served unchanged (its age keeps growing, so
staleness stays observable). Only when there is nothing to fall back on does
the failure reach the caller, as StaleCacheExhausted.

Concurrent get() calls for the same expired key share one refresh task and
all observe its single outcome. The task is shielded, so a caller that gets
cancelled does not abort the refresh for the others.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .errors import StaleCacheExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 30.0


@dataclass
class CacheEntry(Generic[T]):
    """Single cache entry.

    :ivar value: Cached value.
    :ivar fetched_at: Clock reading when the value was stored.
    :ivar ttl_seconds: Maximum age before the entry needs a refresh.
    """

    value: T
    fetched_at: float
    ttl_seconds: float

    def age(self, now: float | None = None) -> float:
        """Seconds since the value was stored."""
        return (time.time() if now is None else now) - self.fetched_at

    def is_expired(self, now: float | None = None) -> bool:
        """True once the entry is older than its TTL."""
        return self.age(now) > self.ttl_seconds


class PriceCache:
    """Per-key TTL cache serving stale values over hard failure.

    :ivar ttl_seconds: TTL applied to new entries.

    .. code-block:: python

        async with PriceCache(ttl_seconds=30) as cache:
            price = await cache.get(asset.cache_key, lambda: aggregator.aggregate(asset))
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        :param ttl_seconds: Entry TTL in seconds (default: 30).
        :param clock: Time source, in seconds.
        :raises ValueError: If ttl_seconds is not positive.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._in_flight: dict[str, asyncio.Task] = {}

    async def __aenter__(self) -> PriceCache:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def get(self, key: str, refresh: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value, refreshing it when missing or expired.

        :param key: Cache key.
        :param refresh: Async callable producing a fresh value.
        :returns: Fresh value, current cached value, or stale value if the
            refresh failed.
        :raises StaleCacheExhausted: If the refresh failed and there is no
            entry to fall back on. The refresh error is chained.
        """
        entry = self._entries.get(key)
        if entry is not None and not entry.is_expired(self._clock()):
            return entry.value

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(key, refresh))
            self._in_flight[key] = task
            task.add_done_callback(lambda t: self._refresh_done(key, t))
        else:
            logger.debug(f"Joining in-flight refresh for {key}")

        return await asyncio.shield(task)

    def peek(self, key: str) -> CacheEntry[Any] | None:
        """Return the entry for a key without refreshing it."""
        return self._entries.get(key)

    def invalidate(self, key: str) -> None:
        """Drop the entry for a key."""
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Drop all entries."""
        self._entries.clear()

    async def aclose(self) -> None:
        """Cancel in-flight refreshes and wait for them to finish."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    async def _refresh(self, key: str, refresh: Callable[[], Awaitable[T]]) -> T:
        try:
            value = await refresh()
        except Exception as e:
            entry = self._entries.get(key)
            if entry is None:
                logger.error(f"Refresh for {key} failed with nothing cached: {e}")
                raise StaleCacheExhausted(key) from e
            logger.warning(
                f"Refresh for {key} failed, serving value "
                f"{entry.age(self._clock()):.1f}s old: {e}"
            )
            return entry.value

        return self._store(key, value)

    def _store(self, key: str, value: T) -> T:
        current = self._entries.get(key)
        new_ts = getattr(value, "timestamp", None)
        old_ts = getattr(current.value, "timestamp", None) if current else None
        if new_ts is not None and old_ts is not None and new_ts < old_ts:
            logger.warning(
                f"Refusing to replace {key} with an older value "
                f"({new_ts} < {old_ts})"
            )
            return current.value

        self._entries[key] = CacheEntry(value, self._clock(), self.ttl_seconds)
        return value

    def _refresh_done(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Retrieve the exception so an unawaited failure is not reported twice
        if not task.cancelled():
            task.exception()
