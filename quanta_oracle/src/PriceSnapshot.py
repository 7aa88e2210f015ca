"""Price observation and aggregation result types.

A :class:`PriceSnapshot` is one observation from one source. An
:class:`AggregatedPrice` is the single answer the aggregator builds from a
set of snapshots. Both are immutable once created.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class AggregationStrategy(str, Enum):
    """Named method used to produce an aggregated price.

    ``LIQUIDITY_WEIGHTED`` and ``BEST_LIQUIDITY`` are the strategies callers
    request; the remaining members describe what actually happened.
    """

    LIQUIDITY_WEIGHTED = "liquidity_weighted"
    BEST_LIQUIDITY = "best_liquidity"
    ARITHMETIC_MEAN = "arithmetic_mean"
    SINGLE_SOURCE = "single_source"
    FALLBACK_CHAIN = "fallback_chain"

    @classmethod
    def requestable(cls) -> tuple[AggregationStrategy, ...]:
        """Strategies a caller may ask the aggregator for."""
        return (cls.LIQUIDITY_WEIGHTED, cls.BEST_LIQUIDITY)


def to_decimal(value: Any) -> Decimal | None:
    """Convert an API value (str, int, float) to Decimal.

    :param value: Raw value from a JSON payload or contract call.
    :returns: Decimal, or None if the value is missing or not numeric.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


@dataclass(frozen=True)
class PriceSnapshot:
    """A single timestamped price observation from one source.

    :ivar source: Name of the adapter that produced the observation.
    :ivar price_usd: Price of the tracked asset in USD.
    :ivar liquidity_usd: Measured pool liquidity in USD, None if unknown.
    :ivar price_in_quote: Price in the pool's quote token, if known.
    :ivar volume_24h: 24h traded volume in USD, if known.
    :ivar price_change_percent_24h: 24h price change in percent, if known.
    :ivar pool: Pool address or identifier the price came from.
    :ivar fetched_at: Unix timestamp when the observation was made.
    :ivar source_age_seconds: Age of a previously published price, if the
        source reports one.
    """

    source: str
    price_usd: Decimal
    liquidity_usd: Decimal | None = None
    price_in_quote: Decimal | None = None
    volume_24h: Decimal | None = None
    price_change_percent_24h: Decimal | None = None
    pool: str | None = None
    fetched_at: float = field(default_factory=time.time)
    source_age_seconds: float | None = None

    @property
    def is_valid(self) -> bool:
        """A snapshot is usable only with a positive price and sane liquidity."""
        if self.price_usd is None or not self.price_usd > 0:
            return False
        if self.liquidity_usd is not None and self.liquidity_usd < 0:
            return False
        return True

    @property
    def has_liquidity(self) -> bool:
        """True when the snapshot carries a measured, positive liquidity."""
        return self.liquidity_usd is not None and self.liquidity_usd > 0


@dataclass(frozen=True)
class AggregatedPrice:
    """Result of combining one or more snapshots.

    :ivar price_usd: Aggregated USD price.
    :ivar snapshots: Contributing snapshots in adapter priority order.
    :ivar strategy: Method actually used to produce the price.
    :ivar total_liquidity_usd: Liquidity behind the price, None if unknown.
    :ivar low_confidence: True when sources disagree beyond the threshold.
    :ivar max_deviation: Largest relative deviation of a snapshot from the price.
    :ivar timestamp: Unix timestamp when the aggregation was produced.
    :ivar failures: Sources that failed during this call, with reasons.
    """

    price_usd: Decimal
    snapshots: tuple[PriceSnapshot, ...]
    strategy: AggregationStrategy
    total_liquidity_usd: Decimal | None = None
    low_confidence: bool = False
    max_deviation: Decimal = Decimal(0)
    timestamp: float = field(default_factory=time.time)
    failures: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "failures", MappingProxyType(dict(self.failures)))

    @property
    def sources(self) -> list[str]:
        """Names of the contributing sources."""
        return [s.source for s in self.snapshots]

    @property
    def age(self) -> float:
        """Seconds since this price was produced."""
        return time.time() - self.timestamp
