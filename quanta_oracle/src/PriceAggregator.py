"""PriceAggregator: Combine per-source snapshots into one USD price.

Two ways of getting an answer:
    - fetch_first(): try sources in priority order, first success wins
    - aggregate(): query all sources concurrently and combine the valid
      snapshots with a named strategy

Combination (combine()):
    1. Discard invalid snapshots (non-positive price)
    2. Zero left: AllSourcesUnavailable; one left: use it directly
    3. liquidity_weighted: sum(price * liquidity) / sum(liquidity) over
       snapshots with measured positive liquidity, or the plain arithmetic
       mean when none has one
    4. best_liquidity: the snapshot with the most liquidity, ties going to
       the higher-priority source
    5. Compute the largest relative deviation of any snapshot from the
       chosen price and flag the result low-confidence above the threshold

.. code-block:: python

    >>> aggregator = PriceAggregator([dexscreener, geckoterminal], max_deviation_percent=5.0)
    >>> result = aggregator.combine([
    ...     PriceSnapshot("dexscreener", Decimal("1.00"), liquidity_usd=Decimal(3000)),
    ...     PriceSnapshot("geckoterminal", Decimal("1.04"), liquidity_usd=Decimal(1000)),
    ... ])
    >>> result.price_usd
    Decimal('1.01')
    >>> result.low_confidence
    False
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from .errors import AllSourcesUnavailable, SourceUnavailable
from .FetchCoordinator import FetchCoordinator
from .PriceSnapshot import AggregatedPrice, AggregationStrategy, PriceSnapshot

if TYPE_CHECKING:
    from .fetchers import BaseFetcher
    from .TrackedAsset import TrackedAsset

logger = logging.getLogger(__name__)


def parse_strategy(strategy: AggregationStrategy | str) -> AggregationStrategy:
    """Resolve a strategy name a caller may request.

    :param strategy: Strategy enum member or its name.
    :returns: The strategy.
    :raises ValueError: If the name is unknown or not requestable.
    """
    try:
        resolved = AggregationStrategy(strategy)
    except ValueError:
        resolved = None
    if resolved not in AggregationStrategy.requestable():
        allowed = ", ".join(s.value for s in AggregationStrategy.requestable())
        raise ValueError(f"Unknown aggregation strategy '{strategy}'. Available: {allowed}")
    return resolved


def max_relative_deviation(
    snapshots: list[PriceSnapshot] | tuple[PriceSnapshot, ...], reference: Decimal
) -> Decimal:
    """Largest |price - reference| / reference over the snapshots."""
    if not snapshots or reference <= 0:
        return Decimal(0)
    return max(abs(s.price_usd - reference) / reference for s in snapshots)


class PriceAggregator:
    """Aggregates snapshots from prioritized price sources.

    :ivar strategy: Default strategy for aggregate().
    :ivar max_deviation_percent: Deviation above which a result is low-confidence.
    :ivar coordinator: Concurrent fan-out over the sources.

    .. code-block:: python

        >>> agg = PriceAggregator(fetchers, strategy="best_liquidity")
        >>> price = await agg.aggregate(asset)
        >>> price.strategy
        <AggregationStrategy.BEST_LIQUIDITY: 'best_liquidity'>
    """

    def __init__(
        self,
        fetchers: list[BaseFetcher],
        strategy: AggregationStrategy | str = AggregationStrategy.LIQUIDITY_WEIGHTED,
        max_deviation_percent: float = 5.0,
    ) -> None:
        """Initialize the aggregator.

        :param fetchers: Price sources in priority order (highest first).
        :param strategy: Default combination strategy (default: liquidity_weighted).
        :param max_deviation_percent: Max deviation of any snapshot from the
            aggregated price before the result is flagged (default 5%).
        :raises ValueError: If parameters are invalid.
        """
        if not fetchers:
            raise ValueError("At least one price source must be configured")
        if max_deviation_percent <= 0:
            raise ValueError("max_deviation_percent must be positive")

        self.strategy = parse_strategy(strategy)
        self.max_deviation_percent = max_deviation_percent
        self.coordinator = FetchCoordinator(fetchers)

    @property
    def fetchers(self) -> list[BaseFetcher]:
        """Price sources in priority order."""
        return self.coordinator.fetchers

    @property
    def deviation_threshold(self) -> Decimal:
        """Low-confidence threshold as a fraction."""
        return Decimal(str(self.max_deviation_percent)) / 100

    async def fetch_first(self, asset: TrackedAsset) -> AggregatedPrice:
        """Return the first successful snapshot, trying sources in order.

        :param asset: Asset to price.
        :returns: AggregatedPrice with strategy ``fallback_chain``.
        :raises AllSourcesUnavailable: If every source fails.
        """
        failures: dict[str, str] = {}
        for fetcher in self.fetchers:
            try:
                snapshot = await fetcher.fetch_snapshot(asset)
            except SourceUnavailable as e:
                logger.info(f"[{fetcher.name}] {e.reason}, trying next source")
                failures[fetcher.name] = e.reason
                continue

            return AggregatedPrice(
                price_usd=snapshot.price_usd,
                snapshots=(snapshot,),
                strategy=AggregationStrategy.FALLBACK_CHAIN,
                total_liquidity_usd=snapshot.liquidity_usd,
                failures=failures,
            )

        raise AllSourcesUnavailable(failures)

    async def aggregate(
        self,
        asset: TrackedAsset,
        strategy: AggregationStrategy | str | None = None,
    ) -> AggregatedPrice:
        """Query all sources concurrently and combine the results.

        :param asset: Asset to price.
        :param strategy: Strategy override for this call.
        :returns: Aggregated price.
        :raises AllSourcesUnavailable: If no source produced a valid snapshot.
        :raises ValueError: If the strategy is unknown.
        """
        result = await self.coordinator.fetch_all(asset)
        aggregated = self.combine(result.snapshots, strategy, failures=result.failures)
        logger.info(
            f"{asset}: ${aggregated.price_usd} via {aggregated.strategy.value} "
            f"from {aggregated.sources}"
            + (f", failed: {list(result.failures)}" if result.failures else "")
        )
        return aggregated

    def combine(
        self,
        snapshots: list[PriceSnapshot],
        strategy: AggregationStrategy | str | None = None,
        *,
        failures: dict[str, str] | None = None,
    ) -> AggregatedPrice:
        """Combine snapshots into one price. Performs no I/O.

        :param snapshots: Snapshots in source priority order.
        :param strategy: Strategy to use (default: the aggregator's).
        :param failures: Sources that already failed, carried into the result.
        :returns: Aggregated price.
        :raises AllSourcesUnavailable: If no snapshot is valid.
        :raises ValueError: If the strategy is unknown.
        """
        chosen = parse_strategy(strategy) if strategy is not None else self.strategy
        failures = dict(failures or {})

        valid: list[PriceSnapshot] = []
        for snapshot in snapshots:
            if snapshot.is_valid:
                valid.append(snapshot)
            else:
                failures[snapshot.source] = f"invalid snapshot (price={snapshot.price_usd})"

        if not valid:
            raise AllSourcesUnavailable(failures)

        if len(valid) == 1:
            only = valid[0]
            return AggregatedPrice(
                price_usd=only.price_usd,
                snapshots=(only,),
                strategy=AggregationStrategy.SINGLE_SOURCE,
                total_liquidity_usd=only.liquidity_usd,
                failures=failures,
            )

        if chosen == AggregationStrategy.BEST_LIQUIDITY:
            price, used, total_liquidity = self._best_liquidity(valid)
        else:
            price, used, total_liquidity = self._liquidity_weighted(valid)

        max_deviation = max_relative_deviation(valid, price)
        low_confidence = max_deviation > self.deviation_threshold
        if low_confidence:
            logger.warning(
                f"Sources disagree: max deviation {max_deviation * 100:.2f}% "
                f"exceeds {self.max_deviation_percent}% "
                f"({', '.join(f'{s.source}=${s.price_usd}' for s in valid)})"
            )

        return AggregatedPrice(
            price_usd=price,
            snapshots=tuple(valid),
            strategy=used,
            total_liquidity_usd=total_liquidity,
            low_confidence=low_confidence,
            max_deviation=max_deviation,
            failures=failures,
        )

    @staticmethod
    def _liquidity_weighted(
        snapshots: list[PriceSnapshot],
    ) -> tuple[Decimal, AggregationStrategy, Decimal | None]:
        """Weight by measured liquidity, or take the mean when none is known."""
        weighted = [s for s in snapshots if s.has_liquidity]
        if not weighted:
            mean = sum((s.price_usd for s in snapshots), Decimal(0)) / len(snapshots)
            return mean, AggregationStrategy.ARITHMETIC_MEAN, None

        total = sum((s.liquidity_usd for s in weighted), Decimal(0))
        price = sum((s.price_usd * s.liquidity_usd for s in weighted), Decimal(0)) / total
        # Keep rounding from leaving the observed range
        low = min(s.price_usd for s in weighted)
        high = max(s.price_usd for s in weighted)
        price = min(max(price, low), high)
        return price, AggregationStrategy.LIQUIDITY_WEIGHTED, total

    @staticmethod
    def _best_liquidity(
        snapshots: list[PriceSnapshot],
    ) -> tuple[Decimal, AggregationStrategy, Decimal | None]:
        """Pick the deepest pool; earlier sources win ties."""
        best = snapshots[0]
        for snapshot in snapshots[1:]:
            if _liquidity_rank(snapshot) > _liquidity_rank(best):
                best = snapshot
        return best.price_usd, AggregationStrategy.BEST_LIQUIDITY, best.liquidity_usd


def _liquidity_rank(snapshot: PriceSnapshot) -> tuple[bool, Decimal]:
    return (snapshot.has_liquidity, snapshot.liquidity_usd or Decimal(0))
