"""Moralis fetcher.

Endpoint: https://deep-index.moralis.io/api/v2.2/erc20/{address}/price?chain={network}
Rate Limit: Compute-unit based
API Key: Required (X-API-Key header)
Liquidity: pairTotalLiquidityUsd when the response includes it
"""

import logging

from ..PriceSnapshot import PriceSnapshot
from ..TrackedAsset import TrackedAsset
from .base import BaseFetcher, FetcherConfigError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class MoralisFetcher(BaseFetcher):
    """Fetcher for the Moralis ERC-20 price API.

    API key is REQUIRED. Liquidity is only taken from the response; when the
    API omits it the snapshot carries no liquidity figure.
    """

    name = "moralis"
    BASE_URL = "https://deep-index.moralis.io/api/v2.2"

    async def _fetch(self, asset: TrackedAsset) -> PriceSnapshot:
        """Fetch the token's USD price.

        :param asset: Asset to price.
        :returns: Snapshot with Moralis' price and pair liquidity.
        """
        if not self.has_api_key:
            raise FetcherConfigError("API key required but not provided")

        response = await self._get(
            f"{self.BASE_URL}/erc20/{asset.address}/price",
            params={"chain": asset.network},
            headers={"X-API-Key": self.api_key, "Accept": "application/json"},
        )
        data = response.json()

        return self._snapshot(
            data.get("usdPrice"),
            liquidity_usd=data.get("pairTotalLiquidityUsd"),
            price_change_percent_24h=data.get("24hrPercentChange"),
            pool=data.get("pairAddress"),
        )
