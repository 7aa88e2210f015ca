"""On-chain Uniswap V2 style pool reader.

Reads reserves and token metadata straight from the pool contract over
JSON-RPC. Works with any pair exposing getReserves()/token0()/token1(),
including Virtuals Protocol pools on Base.

Price: quoteReserve / baseReserve, each scaled by its token's decimals.
USD conversion: multiplied by the quote token's USD price when a quote
price fetcher is configured; otherwise the quote token is taken to be a
USD stablecoin.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal

from web3 import Web3

from ..errors import SourceUnavailable
from ..PriceSnapshot import PriceSnapshot
from ..TrackedAsset import TrackedAsset
from .base import BaseFetcher, FetcherConfigError, register_fetcher

logger = logging.getLogger(__name__)

PAIR_ABI = [
    {
        "name": "getReserves",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
    },
    {
        "name": "token0",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "token1",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]

ERC20_ABI = [
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]


@dataclass(frozen=True)
class PoolReserves:
    """Raw pool state as read from chain.

    :ivar token0: Address of token0.
    :ivar token1: Address of token1.
    :ivar reserve0: Raw reserve of token0 (smallest unit).
    :ivar reserve1: Raw reserve of token1 (smallest unit).
    :ivar decimals0: Decimals of token0.
    :ivar decimals1: Decimals of token1.
    """

    token0: str
    token1: str
    reserve0: int
    reserve1: int
    decimals0: int
    decimals1: int


@dataclass(frozen=True)
class PoolPrice:
    """Tracked asset's price derived from pool reserves.

    :ivar price_in_quote: Asset price in units of the quote token.
    :ivar asset_reserve: Asset reserve, decimal-adjusted.
    :ivar quote_token: Address of the other token in the pool.
    """

    price_in_quote: Decimal
    asset_reserve: Decimal
    quote_token: str


def price_from_reserves(asset: TrackedAsset, reserves: PoolReserves) -> PoolPrice:
    """Compute the asset's price in quote token from pool reserves.

    :param asset: Tracked asset; must be token0 or token1 of the pool.
    :param reserves: Pool state.
    :returns: Price in quote token and the asset-side reserve.
    :raises ValueError: If the asset is not in the pool or a reserve is zero.
    """
    if asset.matches(reserves.token0):
        base_raw, base_dec = reserves.reserve0, reserves.decimals0
        quote_raw, quote_dec = reserves.reserve1, reserves.decimals1
        quote_token = reserves.token1
    elif asset.matches(reserves.token1):
        base_raw, base_dec = reserves.reserve1, reserves.decimals1
        quote_raw, quote_dec = reserves.reserve0, reserves.decimals0
        quote_token = reserves.token0
    else:
        raise ValueError(f"{asset.symbol} is neither token0 nor token1 of the pool")

    if base_raw <= 0 or quote_raw <= 0:
        raise ValueError(f"empty pool (reserves {reserves.reserve0}/{reserves.reserve1})")

    base_reserve = Decimal(base_raw) / (Decimal(10) ** base_dec)
    quote_reserve = Decimal(quote_raw) / (Decimal(10) ** quote_dec)
    return PoolPrice(
        price_in_quote=quote_reserve / base_reserve,
        asset_reserve=base_reserve,
        quote_token=quote_token,
    )


@register_fetcher
class PoolFetcher(BaseFetcher):
    """Fetcher reading a V2 pool contract directly.

    :ivar pool_address: Pool contract address.
    :ivar rpc_url: JSON-RPC endpoint.
    :ivar quote_price_fetcher: Optional fetcher pricing the quote token in USD.
    """

    name = "pool"
    DEFAULT_RPC_URL = "https://mainnet.base.org"

    def __init__(
        self,
        pool_address: str | None = None,
        rpc_url: str | None = None,
        quote_price_fetcher: BaseFetcher | None = None,
        w3: Web3 | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize the pool reader.

        :param pool_address: Pool contract address.
        :param rpc_url: JSON-RPC endpoint (default: Base mainnet public RPC).
        :param quote_price_fetcher: Fetcher used to price the quote token in
            USD. None means the quote token is a USD stablecoin.
        :param w3: Optional pre-built Web3 instance.
        :param api_key: Unused, accepted for registry uniformity.
        :param timeout: Fetch deadline in seconds.
        """
        super().__init__(api_key=api_key, timeout=timeout)
        self.pool_address = pool_address
        self.rpc_url = rpc_url or self.DEFAULT_RPC_URL
        self.quote_price_fetcher = quote_price_fetcher
        self._w3 = w3

    @property
    def w3(self) -> Web3:
        """Web3 connection, created on first use."""
        if self._w3 is None:
            self._w3 = Web3(
                Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout})
            )
        return self._w3

    def _read_pool(self) -> PoolReserves:
        """Read reserves and token decimals (blocking).

        :returns: Raw pool state.
        """
        pair = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.pool_address), abi=PAIR_ABI
        )
        reserve0, reserve1, _ = pair.functions.getReserves().call()
        token0 = pair.functions.token0().call()
        token1 = pair.functions.token1().call()

        decimals = []
        for token in (token0, token1):
            erc20 = self.w3.eth.contract(
                address=Web3.to_checksum_address(token), abi=ERC20_ABI
            )
            decimals.append(erc20.functions.decimals().call())

        return PoolReserves(
            token0=token0,
            token1=token1,
            reserve0=reserve0,
            reserve1=reserve1,
            decimals0=decimals[0],
            decimals1=decimals[1],
        )

    async def _fetch(self, asset: TrackedAsset) -> PriceSnapshot:
        """Read the pool and price the asset in USD.

        :param asset: Asset to price.
        :returns: Snapshot with USD price and pool liquidity.
        """
        if not self.pool_address:
            raise FetcherConfigError("pool address not configured")

        reserves = await asyncio.to_thread(self._read_pool)
        try:
            pool_price = price_from_reserves(asset, reserves)
        except ValueError as e:
            raise self._unavailable(str(e)) from e

        quote_usd = Decimal(1)
        if self.quote_price_fetcher is not None:
            quote_asset = TrackedAsset("quote", pool_price.quote_token, asset.network)
            try:
                quote_snapshot = await self.quote_price_fetcher.fetch_snapshot(quote_asset)
            except SourceUnavailable as e:
                raise self._unavailable(f"quote token price: {e.reason}") from e
            quote_usd = quote_snapshot.price_usd

        price_usd = pool_price.price_in_quote * quote_usd
        # Both sides of a V2 pool hold equal value
        liquidity_usd = pool_price.asset_reserve * price_usd * 2

        return self._snapshot(
            price_usd,
            price_in_quote=pool_price.price_in_quote,
            liquidity_usd=liquidity_usd,
            pool=self.pool_address.lower(),
        )
