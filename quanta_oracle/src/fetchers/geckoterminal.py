"""GeckoTerminal fetcher.

Endpoint: https://api.geckoterminal.com/api/v2/networks/{network}/pools/{pool}
Rate Limit: 30 calls/min (no key required)
Liquidity: Yes (reserve_in_usd, measured by the indexer)
"""

import logging

from ..PriceSnapshot import PriceSnapshot
from ..TrackedAsset import TrackedAsset
from .base import BaseFetcher, FetcherConfigError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class GeckoTerminalFetcher(BaseFetcher):
    """Fetcher for the GeckoTerminal pool API.

    Reads one configured pool. The tracked asset may be either the pool's
    base or quote token; the matching side's USD price is used.
    """

    name = "geckoterminal"
    BASE_URL = "https://api.geckoterminal.com/api/v2"

    def __init__(
        self,
        pool_address: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize with the pool to read.

        :param pool_address: Pool contract address.
        :param api_key: Unused, accepted for registry uniformity.
        :param timeout: Fetch deadline in seconds.
        """
        super().__init__(api_key=api_key, timeout=timeout)
        self.pool_address = pool_address.lower() if pool_address else None

    async def _fetch(self, asset: TrackedAsset) -> PriceSnapshot:
        """Fetch the pool's price data.

        :param asset: Asset to price.
        :returns: Snapshot with price, liquidity, volume and 24h change.
        """
        if not self.pool_address:
            raise FetcherConfigError("pool address not configured")

        url = f"{self.BASE_URL}/networks/{asset.network}/pools/{self.pool_address}"
        response = await self._get(url, headers={"Accept": "application/json"})
        data = response.json()["data"]
        attrs = data["attributes"]

        # Token ids look like "base_0x5acd..."; default to base side
        relationships = data.get("relationships") or {}
        base_id = self._token_id(relationships, "base_token")
        quote_id = self._token_id(relationships, "quote_token")
        if base_id and quote_id and asset.address not in (base_id, quote_id):
            raise self._unavailable(f"{asset.symbol} is not in pool {self.pool_address}")

        if quote_id == asset.address:
            price_usd = attrs.get("quote_token_price_usd")
            price_in_quote = attrs.get("quote_token_price_base_token")
        else:
            price_usd = attrs.get("base_token_price_usd")
            price_in_quote = attrs.get("base_token_price_quote_token")

        return self._snapshot(
            price_usd,
            price_in_quote=price_in_quote,
            liquidity_usd=attrs.get("reserve_in_usd"),
            volume_24h=(attrs.get("volume_usd") or {}).get("h24"),
            price_change_percent_24h=(attrs.get("price_change_percentage") or {}).get("h24"),
            pool=self.pool_address,
        )

    @staticmethod
    def _token_id(relationships: dict, side: str) -> str:
        """Token address from a relationship id such as "base_0x5acd..."."""
        token_id = ((relationships.get(side) or {}).get("data") or {}).get("id") or ""
        return token_id.rsplit("_", 1)[-1].lower()
