"""
Price sources for the tracked asset.

Each source is a fetcher registered under a name, selected from
configuration, and queried through ``fetch_snapshot()``.

Usage:
    from quanta_oracle.src.fetchers import get_fetcher, get_available_fetchers

    # Get list of available fetchers
    available = get_available_fetchers()
    # ['dexscreener', 'geckoterminal', 'moralis', 'oracle_contract', 'pool']

    # Create a fetcher instance
    fetcher = get_fetcher("geckoterminal", pool_address="0xa62c...")
    snapshot = await fetcher.fetch_snapshot(asset)

    # For fetchers requiring API keys
    fetcher = get_fetcher("moralis", api_key="your-api-key")
"""

# Import base classes and utilities
from .base import (
    FETCHER_REGISTRY,
    BaseFetcher,
    FetcherConfigError,
    FetcherError,
    FetcherHTTPError,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)

# Import all fetcher implementations to trigger registration
from .dexscreener import DexScreenerFetcher
from .geckoterminal import GeckoTerminalFetcher
from .moralis import MoralisFetcher
from .oracle_contract import OracleContractFetcher
from .pool import PoolFetcher

__all__ = [
    # Base classes
    "BaseFetcher",
    "FetcherError",
    "FetcherConfigError",
    "FetcherHTTPError",
    # Registry functions
    "register_fetcher",
    "get_fetcher",
    "get_available_fetchers",
    "FETCHER_REGISTRY",
    # Fetcher implementations
    "DexScreenerFetcher",
    "GeckoTerminalFetcher",
    "MoralisFetcher",
    "OracleContractFetcher",
    "PoolFetcher",
]
