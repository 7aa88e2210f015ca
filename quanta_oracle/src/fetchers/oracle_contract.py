"""Oracle contract reader.

Reads the price previously published to the on-chain oracle via
``getRawPrice()``, which returns the price scaled by 1e18 and its age in
seconds. Useful as a last-resort source and for comparing the published
value against live markets.
"""

from __future__ import annotations

import asyncio
import logging

from web3 import Web3

from ..ContractUtility import ORACLE_ABI, ContractUtility, from_scaled_price
from ..PriceSnapshot import PriceSnapshot
from ..TrackedAsset import TrackedAsset
from .base import BaseFetcher, FetcherConfigError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class OracleContractFetcher(BaseFetcher):
    """Fetcher reading the oracle's published price.

    :ivar oracle_address: Oracle contract address.
    :ivar max_age_seconds: Reject published prices older than this, if set.
    """

    name = "oracle_contract"

    def __init__(
        self,
        oracle_address: str | None = None,
        rpc_url: str | None = None,
        network: str = "base",
        max_age_seconds: float | None = None,
        w3: Web3 | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize the oracle reader.

        :param oracle_address: Oracle contract address.
        :param rpc_url: JSON-RPC endpoint (default: the network's public RPC).
        :param network: Network name used to pick the default RPC.
        :param max_age_seconds: Maximum acceptable age of the published price.
        :param w3: Optional pre-built Web3 instance.
        :param api_key: Unused, accepted for registry uniformity.
        :param timeout: Fetch deadline in seconds.
        """
        super().__init__(api_key=api_key, timeout=timeout)
        self.oracle_address = oracle_address
        self.rpc_url = rpc_url
        self.network = network
        self.max_age_seconds = max_age_seconds
        self._w3 = w3

    @property
    def w3(self) -> Web3:
        """Web3 connection, created on first use."""
        if self._w3 is None:
            self._w3 = ContractUtility(
                self.network, rpc_url=self.rpc_url, request_timeout=self.timeout
            ).w3
        return self._w3

    def _read_raw_price(self) -> tuple[int, int]:
        """Call getRawPrice() (blocking).

        :returns: Tuple of (price scaled by 1e18, age in seconds).
        """
        oracle = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.oracle_address),
            abi=ORACLE_ABI,
        )
        price, age = oracle.functions.getRawPrice().call()
        return price, age

    async def _fetch(self, asset: TrackedAsset) -> PriceSnapshot:
        """Read the published price.

        :param asset: Asset the oracle publishes (used for logging only).
        :returns: Snapshot without liquidity, carrying the published age.
        """
        if not self.oracle_address:
            raise FetcherConfigError("oracle address not configured")

        raw_price, age = await asyncio.to_thread(self._read_raw_price)
        if raw_price <= 0:
            raise self._unavailable("no price published")
        if self.max_age_seconds is not None and age > self.max_age_seconds:
            logger.debug(
                f"[{self.name}] {asset}: published price is {age}s old "
                f"(max {self.max_age_seconds}s)"
            )
            raise self._unavailable("stale")

        return self._snapshot(
            from_scaled_price(raw_price),
            pool=self.oracle_address.lower(),
            source_age_seconds=float(age),
        )
