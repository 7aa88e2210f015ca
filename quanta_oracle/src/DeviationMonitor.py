"""DeviationMonitor: Periodic cross-source consistency check.

Each check queries every source once, adds the aggregator's own combined
price, and measures how far any single answer strays from the mean of all
answers. A spread above the threshold is logged as a warning. The monitor
only observes: it never touches the cache or the oracle.

.. code-block:: python

    >>> report = analyze({"a": Decimal("1.00"), "b": Decimal("1.00"),
    ...                   "c": Decimal("1.10")}, threshold=Decimal("0.05"))
    >>> report.level
    'warning'
    >>> report.max_deviation_source
    'c'
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Mapping

from .errors import AllSourcesUnavailable
from .scheduling import run_periodically

if TYPE_CHECKING:
    from .PriceAggregator import PriceAggregator
    from .TrackedAsset import TrackedAsset

logger = logging.getLogger(__name__)

# Key under which the aggregator's combined price appears in a report
AGGREGATED_SOURCE = "aggregated"


@dataclass(frozen=True)
class DeviationReport:
    """Result of one consistency check.

    :ivar prices: Source name to USD price, for sources that responded.
    :ivar failures: Source name to failure reason.
    :ivar mean_price: Arithmetic mean of the responding prices.
    :ivar max_deviation: Largest relative deviation from the mean.
    :ivar max_deviation_source: Source with that deviation.
    :ivar threshold: Warning threshold as a fraction.
    :ivar level: "warning" above the threshold, "info" otherwise.
    :ivar timestamp: Unix time of the check.
    """

    prices: Mapping[str, Decimal]
    failures: Mapping[str, str]
    mean_price: Decimal
    max_deviation: Decimal
    max_deviation_source: str
    threshold: Decimal
    level: str
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "prices", MappingProxyType(dict(self.prices)))
        object.__setattr__(self, "failures", MappingProxyType(dict(self.failures)))

    @property
    def is_warning(self) -> bool:
        return self.level == "warning"


def analyze(
    prices: dict[str, Decimal],
    threshold: Decimal,
    failures: dict[str, str] | None = None,
    now: float | None = None,
) -> DeviationReport:
    """Compute mean and maximum deviation for a set of prices.

    :param prices: Source name to price; must not be empty.
    :param threshold: Warning threshold as a fraction (0.05 = 5%).
    :param failures: Sources that did not respond.
    :param now: Report timestamp (default: current time).
    :returns: Deviation report.
    :raises AllSourcesUnavailable: If no prices are given.
    """
    failures = dict(failures or {})
    if not prices:
        raise AllSourcesUnavailable(failures)

    mean = sum(prices.values(), Decimal(0)) / len(prices)
    worst_source, worst = "", Decimal(0)
    for source, price in prices.items():
        deviation = abs(price - mean) / mean
        if deviation > worst:
            worst_source, worst = source, deviation
    if not worst_source:
        worst_source = next(iter(prices))

    return DeviationReport(
        prices=dict(prices),
        failures=failures,
        mean_price=mean,
        max_deviation=worst,
        max_deviation_source=worst_source,
        threshold=threshold,
        level="warning" if worst > threshold else "info",
        timestamp=time.time() if now is None else now,
    )


class DeviationMonitor:
    """Observability loop comparing sources against each other.

    :ivar aggregator: Aggregator whose sources are checked.
    :ivar asset: Asset to price.
    :ivar max_deviation_percent: Warning threshold in percent.
    :ivar on_report: Optional callback receiving every report.
    """

    def __init__(
        self,
        aggregator: PriceAggregator,
        asset: TrackedAsset,
        max_deviation_percent: float = 5.0,
        on_report: Callable[[DeviationReport], None] | None = None,
    ) -> None:
        """Initialize the monitor.

        :param aggregator: Aggregator whose sources and combination are checked.
        :param asset: Asset to price.
        :param max_deviation_percent: Warning threshold (default: 5%).
        :param on_report: Called with each report.
        :raises ValueError: If the threshold is not positive.
        """
        if max_deviation_percent <= 0:
            raise ValueError("max_deviation_percent must be positive")
        self.aggregator = aggregator
        self.asset = asset
        self.max_deviation_percent = max_deviation_percent
        self.on_report = on_report

    @property
    def threshold(self) -> Decimal:
        return Decimal(str(self.max_deviation_percent)) / 100

    async def check(self) -> DeviationReport:
        """Query all sources once and report their spread.

        :returns: Deviation report.
        :raises AllSourcesUnavailable: If no source responded.
        """
        result = await self.aggregator.coordinator.fetch_all(self.asset)
        prices = {s.source: s.price_usd for s in result.snapshots}

        if len(result.snapshots) > 1:
            combined = self.aggregator.combine(result.snapshots, failures=result.failures)
            prices[AGGREGATED_SOURCE] = combined.price_usd

        report = analyze(prices, self.threshold, failures=result.failures)
        self._log_report(report)
        if self.on_report is not None:
            self.on_report(report)
        return report

    async def run(self, stop_event: asyncio.Event, interval: float = 300.0) -> int:
        """Run checks until stopped.

        :param stop_event: Set to stop after the current check.
        :param interval: Seconds between checks (default: 300).
        :returns: Number of checks run.
        """
        return await run_periodically(self.check, interval, stop_event, name="monitor")

    def _log_report(self, report: DeviationReport) -> None:
        breakdown = ", ".join(f"{s}=${p}" for s, p in report.prices.items())
        message = (
            f"{self.asset}: mean ${report.mean_price:.10f}, max deviation "
            f"{report.max_deviation * 100:.2f}% ({report.max_deviation_source}) "
            f"[{breakdown}]"
        )
        if report.failures:
            message += f", no response: {list(report.failures)}"
        if report.is_warning:
            logger.warning(f"Price deviation above {self.max_deviation_percent}%: {message}")
        else:
            logger.info(message)
