"""
QUANTA Price Oracle - Aggregation and Update Module

This module provides price aggregation for one tracked token and keeps an
on-chain oracle in line with it:
- TrackedAsset: Identity of the token being priced
- PriceAggregator: Liquidity-weighted or best-liquidity combination
- PriceCache: TTL cache with stale fallback and single-flight refresh
- OracleClient: On-chain oracle reads and price submission
- OracleUpdater: Change/staleness decision and serialized submission
- DeviationMonitor: Cross-source consistency reports
- PriceOracle: Main orchestrator for the periodic loops
- fetchers: Modular price source implementations
"""

from .DeviationMonitor import DeviationMonitor, DeviationReport
from .errors import (
    AllSourcesUnavailable,
    ContractPaused,
    NotAuthorized,
    OracleError,
    OracleTimeout,
    OutOfBounds,
    SourceUnavailable,
    StaleCacheExhausted,
    SubmissionFailed,
)
from .OracleClient import OracleClient, OracleState, Web3OracleClient
from .OracleUpdater import OracleUpdater, UpdateDecision, UpdateOutcome, decide_update
from .PriceAggregator import PriceAggregator
from .PriceCache import CacheEntry, PriceCache
from .PriceOracle import PriceOracle
from .PriceSnapshot import AggregatedPrice, AggregationStrategy, PriceSnapshot
from .TrackedAsset import TrackedAsset

__all__ = [
    "AggregatedPrice",
    "AggregationStrategy",
    "AllSourcesUnavailable",
    "CacheEntry",
    "ContractPaused",
    "DeviationMonitor",
    "DeviationReport",
    "NotAuthorized",
    "OracleClient",
    "OracleError",
    "OracleState",
    "OracleTimeout",
    "OracleUpdater",
    "OutOfBounds",
    "PriceAggregator",
    "PriceCache",
    "PriceOracle",
    "PriceSnapshot",
    "SourceUnavailable",
    "StaleCacheExhausted",
    "SubmissionFailed",
    "TrackedAsset",
    "UpdateDecision",
    "UpdateOutcome",
    "Web3OracleClient",
    "decide_update",
]
