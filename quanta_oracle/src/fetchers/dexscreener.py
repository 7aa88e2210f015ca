"""DexScreener fetcher.

Endpoint: https://api.dexscreener.com/latest/dex/tokens/{address}
Rate Limit: 300 calls/min (no key required)
Liquidity: Per pair (liquidity.usd), missing for some pools
"""

import logging
from decimal import Decimal

from ..PriceSnapshot import PriceSnapshot, to_decimal
from ..TrackedAsset import TrackedAsset
from .base import BaseFetcher, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class DexScreenerFetcher(BaseFetcher):
    """Fetcher for the DexScreener token API.

    The endpoint lists every pair containing the token across chains. Only
    pairs on the asset's network whose base token is the asset are kept, and
    the one with the highest reported liquidity wins. Pairs that report no
    liquidity rank below any pair that does.
    """

    name = "dexscreener"
    BASE_URL = "https://api.dexscreener.com/latest/dex"

    async def _fetch(self, asset: TrackedAsset) -> PriceSnapshot:
        """Fetch the most liquid pair for the asset.

        :param asset: Asset to price.
        :returns: Snapshot from the deepest pair.
        """
        response = await self._get(f"{self.BASE_URL}/tokens/{asset.address}")
        pairs = response.json().get("pairs") or []

        candidates = [
            p for p in pairs
            if str(p.get("chainId", "")).lower() == asset.network
            and asset.matches(str((p.get("baseToken") or {}).get("address", "")))
        ]
        if not candidates:
            raise self._unavailable(f"no {asset.network} pairs for {asset.symbol}")

        best = max(candidates, key=self._liquidity_rank)
        liquidity = (best.get("liquidity") or {}).get("usd")
        logger.debug(
            f"[dexscreener] {len(candidates)} pairs for {asset}, "
            f"using {best.get('pairAddress')} (liquidity={liquidity})"
        )

        return self._snapshot(
            best.get("priceUsd"),
            price_in_quote=best.get("priceNative"),
            liquidity_usd=liquidity,
            volume_24h=(best.get("volume") or {}).get("h24"),
            price_change_percent_24h=(best.get("priceChange") or {}).get("h24"),
            pool=best.get("pairAddress"),
        )

    @staticmethod
    def _liquidity_rank(pair: dict) -> tuple[bool, Decimal]:
        """Sort key: pairs with known liquidity first, then by amount."""
        liquidity = to_decimal((pair.get("liquidity") or {}).get("usd"))
        if liquidity is None:
            return (False, Decimal(0))
        return (True, liquidity)
