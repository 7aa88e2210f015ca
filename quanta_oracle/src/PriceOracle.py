"""PriceOracle: Main orchestrator for the tracked asset's price feed.

This module wires the price sources, aggregator, cache, deviation monitor
and oracle updater together and runs the periodic loops.

Architecture:
    - Price sources are built by name from the fetcher registry
    - PriceAggregator combines them with one named strategy
    - PriceCache holds the latest aggregated price (stale fallback,
      single-flight refresh); every consumer reads through it
    - OracleUpdater pushes the cached price on-chain when it moved enough
      or the on-chain record went stale
    - DeviationMonitor reports source disagreement, independent of the cache
    - Both loops stop on a shared asyncio.Event
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .DeviationMonitor import DeviationMonitor
from .errors import OracleError
from .fetchers import BaseFetcher, get_available_fetchers, get_fetcher
from .OracleUpdater import OracleUpdater
from .PriceAggregator import PriceAggregator
from .PriceCache import PriceCache
from .TrackedAsset import TrackedAsset

if TYPE_CHECKING:
    from .OracleClient import OracleClient
    from .PriceSnapshot import AggregatedPrice

logger = logging.getLogger(__name__)


class PriceOracle:
    """Main orchestrator for the aggregated price feed.

    :ivar asset: Asset being priced.
    :ivar sources: Price source names in priority order.
    :ivar fetchers: Fetcher instances in priority order.
    :ivar aggregator: Combines source snapshots.
    :ivar cache: Latest aggregated price.
    :ivar monitor: Cross-source deviation check.
    :ivar updater: On-chain updater, None without an oracle client.
    :ivar update_period: Seconds between update cycles.
    :ivar monitor_period: Seconds between deviation checks.
    """

    def __init__(
        self,
        asset: TrackedAsset | str,
        sources: list[str],
        source_options: dict[str, dict[str, Any]] | None = None,
        api_keys: dict[str, str] | None = None,
        oracle_client: OracleClient | None = None,
        strategy: str = "liquidity_weighted",
        cache_ttl: float = 30.0,
        max_deviation_percent: float = 5.0,
        change_threshold_percent: float = 0.1,
        require_confidence: bool = False,
        update_period: float = 60.0,
        monitor_period: float = 300.0,
        fetch_timeout: float = 10.0,
    ) -> None:
        """Initialize the price oracle.

        :param asset: Asset or "symbol:address[@network]" string.
        :param sources: Source names in priority order (e.g., ["pool", "geckoterminal"]).
        :param source_options: Per-source constructor options (pool_address,
            rpc_url, ...). A "quote_source" option names a source used to
            price the pool's quote token in USD.
        :param api_keys: Dict mapping source names to API keys.
        :param oracle_client: Client for the on-chain oracle; None disables updates.
        :param strategy: Aggregation strategy (default: liquidity_weighted).
        :param cache_ttl: Seconds an aggregated price stays fresh (default: 30).
        :param max_deviation_percent: Low-confidence and monitor warning
            threshold (default: 5.0).
        :param change_threshold_percent: Change that warrants an on-chain
            update (default: 0.1).
        :param require_confidence: Do not publish low-confidence prices.
        :param update_period: Seconds between update cycles (default: 60).
        :param monitor_period: Seconds between deviation checks (default: 300).
        :param fetch_timeout: Per-source fetch deadline (default: 10).
        :raises ValueError: If sources or parameters are invalid.
        """
        if isinstance(asset, str):
            asset = TrackedAsset.from_string(asset)
        self.asset = asset

        # Validate sources against registered fetchers
        available = get_available_fetchers()
        invalid = [s for s in sources if s not in available]
        if invalid:
            raise ValueError(f"Unknown sources: {invalid}. Available: {available}")
        if not sources:
            raise ValueError("At least one price source must be specified")
        if update_period <= 0 or monitor_period <= 0:
            raise ValueError("update_period and monitor_period must be positive")
        self.sources = list(sources)
        self.update_period = update_period
        self.monitor_period = monitor_period

        source_options = source_options or {}
        api_keys = api_keys or {}
        self.fetchers: list[BaseFetcher] = [
            self._build_fetcher(source, source_options, api_keys, fetch_timeout)
            for source in self.sources
        ]

        self.aggregator = PriceAggregator(
            self.fetchers,
            strategy=strategy,
            max_deviation_percent=max_deviation_percent,
        )
        self.cache = PriceCache(ttl_seconds=cache_ttl)
        self.monitor = DeviationMonitor(
            self.aggregator,
            self.asset,
            max_deviation_percent=max_deviation_percent,
        )

        self.updater: OracleUpdater | None = None
        if oracle_client is not None:
            self.updater = OracleUpdater(
                oracle_client,
                self.get_current_price,
                change_threshold_percent=change_threshold_percent,
                require_confidence=require_confidence,
            )

        logger.info(
            f"PriceOracle initialized: asset={self.asset}, sources={self.sources}, "
            f"strategy={self.aggregator.strategy.value}, cache_ttl={cache_ttl}s, "
            f"updates={'on' if self.updater else 'off'}"
        )

    async def __aenter__(self) -> PriceOracle:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @staticmethod
    def _build_fetcher(
        source: str,
        source_options: dict[str, dict[str, Any]],
        api_keys: dict[str, str],
        fetch_timeout: float,
    ) -> BaseFetcher:
        options = dict(source_options.get(source, {}))
        quote_source = options.pop("quote_source", None)
        if quote_source:
            # Priced by token address; pool options of that source do not apply
            options["quote_price_fetcher"] = get_fetcher(
                quote_source, api_key=api_keys.get(quote_source), timeout=fetch_timeout
            )
        return get_fetcher(
            source, api_key=api_keys.get(source), timeout=fetch_timeout, **options
        )

    async def get_current_price(self) -> AggregatedPrice:
        """Return the aggregated price, refreshed at most once per TTL.

        :returns: Latest aggregated price (possibly stale if sources are down).
        :raises StaleCacheExhausted: If nothing is cached and every source
            failed; the AllSourcesUnavailable is chained.
        """
        return await self.cache.get(
            self.asset.cache_key, lambda: self.aggregator.aggregate(self.asset)
        )

    async def run_once(self, monitor_only: bool = False) -> None:
        """Run a single deviation check and, unless disabled, one update cycle.

        :param monitor_only: Skip the update cycle.
        """
        try:
            await self.monitor.check()
        except OracleError as e:
            logger.error(f"Deviation check failed: {e}")

        if self.updater is not None and not monitor_only:
            outcome = await self.updater.run_cycle()
            logger.info(
                f"Update cycle: {outcome.decision.reason.value}, "
                f"submitted={outcome.submitted}"
            )

    async def run(
        self,
        stop_event: asyncio.Event | None = None,
        monitor_only: bool = False,
    ) -> None:
        """Run the monitor and updater loops until stopped.

        A fatal updater error (not authorized, paused) stops the monitor too
        and is re-raised.

        :param stop_event: Set to stop both loops after their current cycle.
        :param monitor_only: Do not run the updater loop.
        """
        stop_event = stop_event or asyncio.Event()

        async def until_done(loop) -> None:
            try:
                await loop
            finally:
                stop_event.set()

        loops = [until_done(self.monitor.run(stop_event, self.monitor_period))]
        if self.updater is not None and not monitor_only:
            loops.append(until_done(self.updater.run(stop_event, self.update_period)))
        elif not monitor_only:
            logger.warning("No oracle client configured, running monitor only")

        results = await asyncio.gather(*loops, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def aclose(self) -> None:
        """Cancel pending refreshes and close the shared HTTP client."""
        await self.cache.aclose()
        await BaseFetcher.close_shared_client()
