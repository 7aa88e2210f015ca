#!/usr/bin/env python3
"""QUANTA Price Oracle.

Aggregates the QUANTA token's USD price from on-chain pools and DEX
aggregator APIs, keeps the latest price cached, and pushes it to the
on-chain oracle when it moves or goes stale.

Configure with CLI flags or environment variables (flags take precedence).
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from decimal import Decimal, InvalidOperation

from .src.ContractUtility import NETWORKS, ContractUtility
from .src.fetchers import get_available_fetchers
from .src.OracleClient import (
    DEFAULT_MAX_PRICE,
    DEFAULT_MIN_PRICE,
    DEFAULT_STALE_AFTER_SECONDS,
    Web3OracleClient,
)
from .src.PriceOracle import PriceOracle
from .src.PriceSnapshot import AggregationStrategy

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

DEFAULT_ASSET = "quanta:0x5aCdC563450Cc35055D7344287C327FAFb2B371A@base"

# QUANTA/VIRTUAL (read on-chain) and QUANTA/USDC (via GeckoTerminal) on Base
DEFAULT_POOLS = (
    "pool=0xd17616d20d81d6e2eaa8f6eca5583a28793da685,"
    "geckoterminal=0xa62ceb34708e2ecef26fb79feec271ae2e388a07"
)

# Sources reading the chain directly
ONCHAIN_SOURCES = ("pool", "oracle_contract")


def parse_api_keys(api_key_str: str | None) -> dict[str, str]:
    """Parse comma-separated API key string into a dictionary.

    Format: source1=key1,source2=key2
    Example: moralis=abc123

    :param api_key_str: Comma-separated API key string.
    :returns: Dict mapping source names to API keys.
    """
    if not api_key_str:
        return {}

    api_keys = {}
    for item in api_key_str.split(","):
        item = item.strip()
        if "=" in item:
            source, key = item.split("=", 1)
            api_keys[source.strip().lower()] = key.strip()
    return api_keys


def parse_env_api_keys() -> dict[str, str]:
    """Parse API keys from individual environment variables.

    Looks for: API_KEY_MORALIS, API_KEY_GECKOTERMINAL, etc.

    :returns: Dict mapping source names to API keys.
    """
    api_keys = {}
    prefixes = ["API_KEY_", "APIKEY_"]

    for key, value in os.environ.items():
        for prefix in prefixes:
            if key.startswith(prefix) and value:
                source = key[len(prefix):].lower()
                api_keys[source] = value
                break

    return api_keys


def parse_pools(pools_str: str | None) -> dict[str, str]:
    """Parse "source=pool_address" pairs.

    :param pools_str: Comma-separated pool assignments.
    :returns: Dict mapping source names to pool addresses.
    """
    # Same "name=value,..." format as API keys
    return parse_api_keys(pools_str)


def parse_decimal(value: str) -> Decimal:
    """argparse type for decimal prices."""
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"Invalid decimal value '{value}'") from e


def build_source_options(
    sources: list[str],
    pools: dict[str, str],
    network: str,
    rpc_url: str | None,
    oracle_address: str | None,
    quote_source: str | None,
    oracle_max_age: float | None,
) -> dict[str, dict]:
    """Assemble per-source constructor options.

    :returns: Dict mapping source names to fetcher options.
    """
    options: dict[str, dict] = {source: {} for source in sources}
    for source, pool in pools.items():
        options.setdefault(source, {})["pool_address"] = pool

    rpc = rpc_url or NETWORKS.get(network)
    for source in ONCHAIN_SOURCES:
        if rpc and source in options:
            options[source]["rpc_url"] = rpc

    if "oracle_contract" in options:
        options["oracle_contract"]["network"] = network
        options["oracle_contract"]["oracle_address"] = oracle_address
        options["oracle_contract"]["max_age_seconds"] = oracle_max_age
        options["oracle_contract"].pop("pool_address", None)

    if "pool" in options and quote_source:
        options["pool"]["quote_source"] = quote_source
    return options


async def run_oracle(price_oracle: PriceOracle, once: bool, monitor_only: bool) -> None:
    """Run the oracle until SIGINT/SIGTERM, then shut down cleanly."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    async with price_oracle:
        if once:
            await price_oracle.run_once(monitor_only=monitor_only)
        else:
            await price_oracle.run(stop_event, monitor_only=monitor_only)
    logger.info("Shut down")


def main() -> None:
    """Main entry point for the QUANTA Price Oracle CLI."""
    available_sources = get_available_fetchers()
    strategies = [s.value for s in AggregationStrategy.requestable()]

    parser = argparse.ArgumentParser(
        description="QUANTA Price Oracle: multi-source price aggregation and oracle updates",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price sources:
  {', '.join(available_sources)}

Examples:
  # Watch prices only, no on-chain writes
  python -m quanta_oracle.main --monitor-only

  # Single update cycle against a deployed oracle
  ORACLE_ADDRESS=0x... UPDATER_PRIVATE_KEY=0x... python -m quanta_oracle.main --once

  # Add Moralis with an API key, pick the deepest pool only
  python -m quanta_oracle.main --sources pool,geckoterminal,moralis \\
      --api-keys moralis=your-api-key --strategy best_liquidity

Environment variables (CLI args take precedence):
  ASSET, NETWORK, SOURCES, POOLS, QUOTE_SOURCE, RPC_URL, ORACLE_ADDRESS,
  UPDATER_PRIVATE_KEY, CACHE_TTL, CHANGE_THRESHOLD_PERCENT,
  MAX_DEVIATION_PERCENT, MIN_PRICE, MAX_PRICE, STALE_AFTER, UPDATE_PERIOD,
  MONITOR_PERIOD, FETCH_TIMEOUT, STRATEGY, API_KEY_MORALIS, etc.
""",
    )

    parser.add_argument(
        "--asset",
        type=str,
        help="Tracked asset as symbol:address[@network]",
        default=os.environ.get("ASSET") or DEFAULT_ASSET,
    )

    parser.add_argument(
        "--network",
        type=str,
        help="Network for RPC defaults (base, base-sepolia, localnet)",
        default=os.environ.get("NETWORK") or "base",
    )

    parser.add_argument(
        "--sources",
        type=str,
        help=f"Comma-separated price sources in priority order. Available: {', '.join(available_sources)}",
        default=os.environ.get("SOURCES") or "pool,geckoterminal,dexscreener",
    )

    parser.add_argument(
        "--pools",
        type=str,
        help="Pool per source as source=address,... (default: QUANTA/VIRTUAL and QUANTA/USDC)",
        default=os.environ.get("POOLS") or DEFAULT_POOLS,
    )

    parser.add_argument(
        "--quote-source",
        dest="quote_source",
        type=str,
        help="Source pricing the on-chain pool's quote token in USD (default: dexscreener, 'none' for a stablecoin)",
        default=os.environ.get("QUOTE_SOURCE") or "dexscreener",
    )

    parser.add_argument(
        "--rpc-url",
        dest="rpc_url",
        type=str,
        help="JSON-RPC endpoint (default: the network's public RPC)",
        default=os.environ.get("RPC_URL"),
    )

    parser.add_argument(
        "--oracle-address",
        dest="oracle_address",
        type=str,
        help="Price oracle contract address",
        default=os.environ.get("ORACLE_ADDRESS"),
    )

    parser.add_argument(
        "--strategy",
        type=str,
        choices=strategies,
        help="Aggregation strategy (default: liquidity_weighted)",
        default=os.environ.get("STRATEGY") or "liquidity_weighted",
    )

    parser.add_argument(
        "--cache-ttl",
        dest="cache_ttl",
        type=float,
        help="Seconds an aggregated price stays fresh (default: 30)",
        default=float(os.environ.get("CACHE_TTL") or "30"),
    )

    parser.add_argument(
        "--change-threshold",
        dest="change_threshold",
        type=float,
        help="Price change percent that triggers an update (default: 0.1)",
        default=float(os.environ.get("CHANGE_THRESHOLD_PERCENT") or "0.1"),
    )

    parser.add_argument(
        "--max-deviation",
        dest="max_deviation",
        type=float,
        help="Source deviation percent flagged as low confidence (default: 5.0)",
        default=float(os.environ.get("MAX_DEVIATION_PERCENT") or "5.0"),
    )

    parser.add_argument(
        "--min-price",
        dest="min_price",
        type=parse_decimal,
        help=f"Lowest price the oracle accepts (default: {DEFAULT_MIN_PRICE})",
        default=parse_decimal(os.environ.get("MIN_PRICE") or str(DEFAULT_MIN_PRICE)),
    )

    parser.add_argument(
        "--max-price",
        dest="max_price",
        type=parse_decimal,
        help=f"Highest price the oracle accepts (default: {DEFAULT_MAX_PRICE})",
        default=parse_decimal(os.environ.get("MAX_PRICE") or str(DEFAULT_MAX_PRICE)),
    )

    parser.add_argument(
        "--stale-after",
        dest="stale_after",
        type=float,
        help="Seconds after which the on-chain price is stale (default: 3600)",
        default=float(os.environ.get("STALE_AFTER") or DEFAULT_STALE_AFTER_SECONDS),
    )

    parser.add_argument(
        "--update-period",
        dest="update_period",
        type=float,
        help="Seconds between update cycles (default: 60)",
        default=float(os.environ.get("UPDATE_PERIOD") or "60"),
    )

    parser.add_argument(
        "--monitor-period",
        dest="monitor_period",
        type=float,
        help="Seconds between deviation checks (default: 300)",
        default=float(os.environ.get("MONITOR_PERIOD") or "300"),
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Timeout for each price source in seconds (default: 10.0)",
        default=float(os.environ.get("FETCH_TIMEOUT") or "10.0"),
    )

    parser.add_argument(
        "--api-keys",
        dest="api_keys",
        type=str,
        help="Comma-separated API keys (e.g., moralis=abc)",
        default=os.environ.get("API_KEYS"),
    )

    parser.add_argument(
        "--require-confidence",
        dest="require_confidence",
        action="store_true",
        default=(os.environ.get("REQUIRE_CONFIDENCE") or "").lower() in ("1", "true", "yes"),
        help="Do not publish prices flagged as low confidence",
    )

    parser.add_argument(
        "--monitor-only",
        dest="monitor_only",
        action="store_true",
        help="Only run the deviation monitor, never write on-chain",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one monitor check and one update cycle, then exit",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if args.cache_ttl <= 0:
        parser.error("--cache-ttl must be positive")

    if args.update_period <= 0 or args.monitor_period <= 0:
        parser.error("--update-period and --monitor-period must be positive")

    if args.min_price <= 0 or args.min_price > args.max_price:
        parser.error("--min-price must be positive and not above --max-price")

    sources = [s.strip().lower() for s in args.sources.split(",") if s.strip()]
    if not sources:
        parser.error("At least one source must be specified")

    invalid_sources = [s for s in sources if s not in available_sources]
    if invalid_sources:
        parser.error(
            f"Unknown sources: {invalid_sources}. "
            f"Available: {', '.join(available_sources)}"
        )

    quote_source = args.quote_source.strip().lower()
    if quote_source == "none":
        quote_source = None
    elif quote_source not in available_sources:
        parser.error(f"Unknown quote source: {quote_source}")

    # Parse API keys (CLI + environment)
    api_keys = parse_env_api_keys()
    api_keys.update(parse_api_keys(args.api_keys))

    source_options = build_source_options(
        sources,
        parse_pools(args.pools),
        network=args.network,
        rpc_url=args.rpc_url,
        oracle_address=args.oracle_address,
        quote_source=quote_source,
        oracle_max_age=args.stale_after,
    )

    private_key = os.environ.get("UPDATER_PRIVATE_KEY")
    updates_enabled = not args.monitor_only and args.oracle_address and private_key

    # Log configuration
    logger.info("=" * 60)
    logger.info("QUANTA Price Oracle")
    logger.info("=" * 60)
    logger.info(f"Asset:             {args.asset}")
    logger.info(f"Network:           {args.network}")
    logger.info(f"Sources:           {', '.join(sources)}")
    logger.info(f"Strategy:          {args.strategy}")
    logger.info(f"Cache TTL:         {args.cache_ttl}s")
    logger.info(f"Max Deviation:     {args.max_deviation}%")
    logger.info(f"Change Threshold:  {args.change_threshold}%")
    logger.info(f"Price Bounds:      [{args.min_price}, {args.max_price}]")
    logger.info(f"Oracle:            {args.oracle_address or 'not configured'}")
    logger.info(f"Updates:           {'enabled' if updates_enabled else 'disabled'}")
    if api_keys:
        logger.info(f"API Keys:          {', '.join(api_keys.keys())}")
    logger.info("=" * 60)

    try:
        oracle_client = None
        if updates_enabled:
            contract_utility = ContractUtility(
                args.network, rpc_url=args.rpc_url, private_key=private_key
            )
            oracle_client = Web3OracleClient(
                args.oracle_address,
                contract_utility,
                min_price=args.min_price,
                max_price=args.max_price,
                stale_after_seconds=args.stale_after,
            )
            logger.info(f"Updater:           {contract_utility.address}")

        price_oracle = PriceOracle(
            asset=args.asset,
            sources=sources,
            source_options=source_options,
            api_keys=api_keys,
            oracle_client=oracle_client,
            strategy=args.strategy,
            cache_ttl=args.cache_ttl,
            max_deviation_percent=args.max_deviation,
            change_threshold_percent=args.change_threshold,
            require_confidence=args.require_confidence,
            update_period=args.update_period,
            monitor_period=args.monitor_period,
            fetch_timeout=args.fetch_timeout,
        )
        asyncio.run(run_oracle(price_oracle, once=args.once, monitor_only=args.monitor_only))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
