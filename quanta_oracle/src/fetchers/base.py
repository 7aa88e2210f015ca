"""Base fetcher interface and shared HTTP client management.

All price sources inherit from BaseFetcher and implement ``_fetch()``.
The public entry point ``fetch_snapshot()`` wraps it with the fetcher's own
timeout and normalizes every failure (transport, parse, malformed data) to
:class:`SourceUnavailable`, so callers only ever see a valid snapshot or
that one exception.

A shared httpx.AsyncClient is used across all HTTP fetchers to avoid
connection overhead.

.. code-block:: python

    @register_fetcher
    class MyFetcher(BaseFetcher):
        name = "myfetcher"

        async def _fetch(self, asset: TrackedAsset) -> PriceSnapshot:
            response = await self._get(f"https://api.example.com/{asset.address}")
            return self._snapshot(response.json()["price"], pool=None)
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from ..errors import SourceUnavailable
from ..PriceSnapshot import PriceSnapshot, to_decimal

if TYPE_CHECKING:
    from ..TrackedAsset import TrackedAsset

logger = logging.getLogger(__name__)


class FetcherError(Exception):
    """Base exception for fetcher errors."""

    pass


class FetcherConfigError(FetcherError):
    """Raised when fetcher configuration is invalid (e.g., missing API key)."""

    pass


class FetcherHTTPError(FetcherError):
    """Raised when HTTP request fails.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str):
        """Initialize the HTTP error.

        :param status_code: HTTP status code.
        :param message: Error message from response.
        """
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class BaseFetcher(ABC):
    """Abstract base class for price sources.

    Subclasses must implement:
        - name: Class variable identifying the source (e.g., "geckoterminal")
        - _fetch(): Async method producing a snapshot for the tracked asset

    :cvar name: Unique identifier for this fetcher.
    :cvar DEFAULT_TIMEOUT: Default deadline for one fetch, in seconds.
    :ivar api_key: Optional API key for authenticated endpoints.
    :ivar timeout: Deadline for one fetch_snapshot() call, in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    # Fetcher identification
    name: ClassVar[str] = ""

    # Default deadline for a whole fetch (seconds)
    DEFAULT_TIMEOUT = 10.0

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        """Initialize the fetcher.

        :param api_key: Optional API key for authenticated endpoints.
        :param timeout: Fetch deadline in seconds (default: 10).
        """
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    def __repr__(self) -> str:
        return f"{type(self).__name__}(timeout={self.timeout})"

    @property
    def has_api_key(self) -> bool:
        """Check if this fetcher has an API key configured."""
        return self.api_key is not None and len(self.api_key) > 0

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is shared across all fetcher instances to reuse connections.

        :returns: Shared httpx.AsyncClient instance.
        """
        if BaseFetcher._shared_client is None or BaseFetcher._shared_client.is_closed:
            BaseFetcher._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return BaseFetcher._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = BaseFetcher._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        BaseFetcher._shared_client = None

    async def fetch_snapshot(self, asset: TrackedAsset) -> PriceSnapshot:
        """Fetch one price observation for the tracked asset.

        :param asset: Asset to price.
        :returns: A valid snapshot (positive price).
        :raises SourceUnavailable: On any failure, including the timeout.
        """
        try:
            snapshot = await asyncio.wait_for(self._fetch(asset), timeout=self.timeout)
        except SourceUnavailable:
            raise
        except asyncio.TimeoutError as e:
            raise SourceUnavailable(self.name, f"timeout after {self.timeout}s") from e
        except FetcherError as e:
            raise SourceUnavailable(self.name, str(e)) from e
        except Exception as e:
            # Parse errors, RPC errors, malformed payloads
            raise SourceUnavailable(self.name, f"{type(e).__name__}: {e}") from e

        if not snapshot.is_valid:
            raise SourceUnavailable(
                self.name, f"invalid snapshot (price={snapshot.price_usd})"
            )
        logger.debug(
            f"[{self.name}] {asset}: ${snapshot.price_usd} "
            f"(liquidity={snapshot.liquidity_usd})"
        )
        return snapshot

    @abstractmethod
    async def _fetch(self, asset: TrackedAsset) -> PriceSnapshot:
        """Fetch a snapshot without timeout or error normalization.

        May raise anything; fetch_snapshot() converts it.

        :param asset: Asset to price.
        :returns: Snapshot for the asset.
        """
        pass

    def _unavailable(self, reason: str) -> SourceUnavailable:
        """Build a SourceUnavailable for this fetcher."""
        return SourceUnavailable(self.name, reason)

    def _snapshot(self, price_usd: Any, **fields: Any) -> PriceSnapshot:
        """Build a snapshot, converting numeric fields to Decimal.

        :param price_usd: Raw USD price.
        :param fields: Other PriceSnapshot fields; numeric ones are converted.
        :returns: PriceSnapshot attributed to this fetcher.
        :raises SourceUnavailable: If the price is missing or not numeric.
        """
        price = to_decimal(price_usd)
        if price is None:
            raise self._unavailable(f"no usable price in response ({price_usd!r})")
        for key in ("liquidity_usd", "price_in_quote", "volume_24h", "price_change_percent_24h"):
            if key in fields and not isinstance(fields[key], Decimal):
                fields[key] = to_decimal(fields[key])
        fields.setdefault("fetched_at", time.time())
        return PriceSnapshot(source=self.name, price_usd=price, **fields)

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises FetcherHTTPError: On non-2xx response.
        :raises FetcherError: On network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
            if not response.is_success:
                logger.debug(
                    "HTTP GET %s failed with status %s: %s",
                    url,
                    response.status_code,
                    response.text[:200],
                )
                raise FetcherHTTPError(response.status_code, response.text[:200])
            return response
        except httpx.TimeoutException as e:
            raise FetcherError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FetcherError(f"Request failed: {e}") from e


# Registry of available fetchers (populated by subclass imports)
FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Decorator to register a fetcher class in the global registry.

    :param cls: Fetcher class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If fetcher has no name defined.

    .. code-block:: python

        @register_fetcher
        class DexScreenerFetcher(BaseFetcher):
            name = "dexscreener"
            ...
    """
    if not cls.name:
        raise ValueError(f"Fetcher {cls.__name__} must define a 'name' class variable")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(name: str, **options: Any) -> BaseFetcher:
    """Get a fetcher instance by name.

    :param name: Fetcher name (e.g., "geckoterminal", "pool").
    :param options: Constructor options for the fetcher (api_key, timeout,
        pool_address, rpc_url, ...).
    :returns: Fetcher instance.
    :raises ValueError: If fetcher name is unknown.
    """
    if name not in FETCHER_REGISTRY:
        available = ", ".join(sorted(FETCHER_REGISTRY.keys()))
        raise ValueError(f"Unknown fetcher '{name}'. Available: {available}")
    return FETCHER_REGISTRY[name](**options)


def get_available_fetchers() -> list[str]:
    """Get list of available fetcher names.

    :returns: Sorted list of registered fetcher names.
    """
    return sorted(FETCHER_REGISTRY.keys())
