"""FetchCoordinator: Concurrent fan-out to price sources.

This module queries every configured price source for the tracked asset at
once and captures each source's outcome independently.

Architecture:
    - Calls fetch_snapshot() on all sources concurrently
    - Each source is bounded by its own timeout, so the whole round takes
      as long as the slowest source's timeout, not the sum
    - A failing source never blocks or fails its siblings
    - Returns valid snapshots in source priority order plus per-source
      failure reasons
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import SourceUnavailable

if TYPE_CHECKING:
    from .fetchers import BaseFetcher
    from .PriceSnapshot import PriceSnapshot
    from .TrackedAsset import TrackedAsset

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Outcome of one fan-out round.

    :ivar snapshots: Valid snapshots in source priority order.
    :ivar failures: Dict mapping source name to failure reason.
    """

    snapshots: list[PriceSnapshot] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def responded(self) -> list[str]:
        """Names of sources that returned a snapshot."""
        return [s.source for s in self.snapshots]


class FetchCoordinator:
    """Coordinates concurrent fetching from multiple price sources.

    :ivar fetchers: Fetcher instances in priority order.
    """

    def __init__(self, fetchers: list[BaseFetcher]) -> None:
        """Initialize the fetch coordinator.

        :param fetchers: Fetcher instances in priority order.
        :raises ValueError: If two fetchers share a name.
        """
        names = [f.name for f in fetchers]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate price sources configured: {names}")
        self.fetchers = list(fetchers)

    async def fetch_all(self, asset: TrackedAsset) -> FetchResult:
        """Fetch a snapshot for the asset from every source.

        :param asset: Asset to price.
        :returns: FetchResult with snapshots and failures.
        """
        result = FetchResult()
        if not self.fetchers:
            return result

        outcomes = await asyncio.gather(
            *(fetcher.fetch_snapshot(asset) for fetcher in self.fetchers),
            return_exceptions=True,
        )

        for fetcher, outcome in zip(self.fetchers, outcomes, strict=True):
            if isinstance(outcome, SourceUnavailable):
                logger.warning(f"[{fetcher.name}] {outcome.reason}")
                result.failures[fetcher.name] = outcome.reason
            elif isinstance(outcome, BaseException):
                # fetch_snapshot() normalizes errors; this covers cancellation
                reason = f"{type(outcome).__name__}: {outcome}"
                logger.warning(f"[{fetcher.name}] Fetch error: {reason}")
                result.failures[fetcher.name] = reason
            else:
                result.snapshots.append(outcome)

        logger.debug(
            f"Fetched {asset}: {len(result.snapshots)} ok, "
            f"{len(result.failures)} failed"
        )
        return result
