"""TrackedAsset: Identity of the token being priced.

A tracked asset is identified by its token contract address on a network.
Addresses are kept lowercase so that pool token resolution and cache keys
compare case-insensitively, regardless of checksum formatting.

.. code-block:: python

    >>> asset = TrackedAsset("QUANTA", "0x5aCdC563450Cc35055D7344287C327FAFb2B371A")
    >>> str(asset)
    'quanta@base'
    >>> asset.cache_key
    'base:0x5acdc563450cc35055d7344287c327fafb2b371a'
    >>> asset = TrackedAsset.from_string("quanta:0x5acdc563450cc35055d7344287c327fafb2b371a@base")
    >>> asset.network
    'base'
"""

from __future__ import annotations

from web3 import Web3

DEFAULT_NETWORK = "base"


class TrackedAsset:
    """A token whose USD price is tracked.

    :ivar symbol: Token symbol (lowercase).
    :ivar address: Token contract address (lowercase hex).
    :ivar network: Network slug used by aggregator APIs (e.g., "base").
    """

    def __init__(self, symbol: str, address: str, network: str = DEFAULT_NETWORK) -> None:
        """Initialize a tracked asset.

        :param symbol: Token symbol (e.g., "quanta").
        :param address: Token contract address, any case.
        :param network: Network slug (default: "base").
        :raises ValueError: If the address is not a valid hex address.
        """
        if not Web3.is_address(address):
            raise ValueError(f"Invalid token address '{address}'")
        self.symbol = symbol.lower()
        self.address = address.lower()
        self.network = network.lower()

    def __str__(self) -> str:
        """Return a short display name."""
        return f"{self.symbol}@{self.network}"

    def __repr__(self) -> str:
        """Return a developer-friendly string representation."""
        return f"TrackedAsset({self.symbol!r}, {self.address!r}, {self.network!r})"

    def __hash__(self) -> int:
        """Return hash for use in dicts and sets."""
        return hash(self.cache_key)

    def __eq__(self, other: object) -> bool:
        """Assets are equal when they refer to the same token on the same network."""
        if not isinstance(other, TrackedAsset):
            return NotImplemented
        return self.cache_key == other.cache_key

    @property
    def cache_key(self) -> str:
        """Key under which aggregated prices for this asset are cached."""
        return f"{self.network}:{self.address}"

    @property
    def checksum_address(self) -> str:
        """EIP-55 checksum form of the address, as web3 expects."""
        return Web3.to_checksum_address(self.address)

    def matches(self, address: str) -> bool:
        """Check whether an address refers to this token (case-insensitive).

        :param address: Address to compare, any case.
        :returns: True if the address is this asset's token.
        """
        return address.lower() == self.address

    @classmethod
    def from_string(cls, asset_str: str) -> TrackedAsset:
        """Parse an asset string in format "symbol:address[@network]".

        :param asset_str: Asset string like "quanta:0x5acd...@base".
        :returns: New TrackedAsset instance.
        :raises ValueError: If the string format or address is invalid.
        """
        network = DEFAULT_NETWORK
        body = asset_str.strip()
        if "@" in body:
            body, network = body.rsplit("@", 1)
        parts = body.split(":")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(
                f"Invalid asset format '{asset_str}'. "
                "Expected 'symbol:address[@network]'"
            )
        return cls(parts[0], parts[1], network or DEFAULT_NETWORK)
