"""Error taxonomy for price aggregation and oracle updates.

Fetcher transport errors (see :mod:`.fetchers.base`) never leave an adapter;
they are normalized to :class:`SourceUnavailable` at the adapter boundary.
Everything raised past that boundary derives from :class:`OracleError`.
"""

from __future__ import annotations

from decimal import Decimal


class OracleError(Exception):
    """Base exception for the price oracle."""

    pass


class SourceUnavailable(OracleError):
    """A single price source failed. Recoverable, excluded from aggregation.

    :ivar source: Name of the adapter that failed.
    :ivar reason: Short human-readable cause.
    """

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"[{source}] unavailable: {reason}")


class AllSourcesUnavailable(OracleError):
    """Every queried source failed.

    :ivar failures: Dict mapping source name to failure reason.
    """

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = dict(failures)
        if failures:
            detail = ", ".join(f"{s}: {r}" for s, r in failures.items())
        else:
            detail = "no sources configured"
        super().__init__(f"All price sources unavailable ({detail})")


class StaleCacheExhausted(OracleError):
    """Cache had no entry to fall back on and the refresh failed.

    :ivar key: Cache key that could not be served.
    """

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"No cached value for '{key}' and refresh failed")


class OutOfBounds(OracleError):
    """Candidate price lies outside the oracle's sanity bounds.

    The update is refused; the price is never clamped.
    """

    def __init__(
        self,
        price: Decimal,
        min_price: Decimal | None = None,
        max_price: Decimal | None = None,
    ) -> None:
        self.price = price
        self.min_price = min_price
        self.max_price = max_price
        if min_price is not None and max_price is not None:
            message = f"Price {price} outside bounds [{min_price}, {max_price}]"
        else:
            message = f"Price {price} rejected as out of bounds"
        super().__init__(message)


class NotAuthorized(OracleError):
    """The updater identity may not write to the oracle."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        super().__init__(f"Address {identity} is not an authorized updater")


class ContractPaused(OracleError):
    """The oracle contract is paused and refuses updates."""

    def __init__(self, message: str = "Oracle contract is paused") -> None:
        super().__init__(message)


class SubmissionFailed(OracleError):
    """A price update transaction failed or reverted for another reason."""

    pass


class OracleTimeout(OracleError):
    """An oracle read or submission exceeded its deadline."""

    pass
