"""
Shared test fixtures.

Provides:
- The tracked QUANTA asset
- StubFetcher: a scripted price source
- FakeOracleClient: an in-memory oracle record
"""

import asyncio
import time
from decimal import Decimal

import pytest

from quanta_oracle.src.fetchers import BaseFetcher
from quanta_oracle.src.OracleClient import OracleClient, OracleState
from quanta_oracle.src.TrackedAsset import TrackedAsset

QUANTA_ADDRESS = "0x5aCdC563450Cc35055D7344287C327FAFb2B371A"
UPDATER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


class StubFetcher(BaseFetcher):
    """Price source returning a scripted price or raising a scripted error."""

    def __init__(self, name, price=None, liquidity=None, error=None, delay=0.0, timeout=None):
        super().__init__(timeout=timeout)
        self.name = name
        self.price = price
        self.liquidity = liquidity
        self.error = error
        self.delay = delay
        self.calls = 0

    async def _fetch(self, asset):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self._snapshot(self.price, liquidity_usd=self.liquidity)


class FakeOracleClient(OracleClient):
    """In-memory oracle that accepts prices within its bounds."""

    def __init__(
        self,
        price="1.000",
        last_update=None,
        stale_after=3600.0,
        min_price="0.000000001",
        max_price="1",
        paused=False,
        updaters=(UPDATER,),
        submit_delay=0.0,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.price = Decimal(price)
        self.last_update = time.time() if last_update is None else last_update
        self.stale_after = stale_after
        self.min_price = Decimal(min_price)
        self.max_price = Decimal(max_price)
        self.paused = paused
        self.updaters = frozenset(u.lower() for u in updaters)
        self.submit_delay = submit_delay
        self.submissions: list[Decimal] = []
        self.reads = 0

    @property
    def identity(self):
        return UPDATER

    async def _read_state(self, identity):
        self.reads += 1
        return OracleState(
            price_usd=self.price,
            last_update_timestamp=self.last_update,
            stale_after_seconds=self.stale_after,
            min_price=self.min_price,
            max_price=self.max_price,
            is_paused=self.paused,
            authorized_updaters=self.updaters,
        )

    async def _submit_update(self, price):
        self.submissions.append(price)
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        self.price = price
        self.last_update = time.time()
        return {"status": 1, "transactionHash": f"0x{len(self.submissions):064x}"}


@pytest.fixture
def asset() -> TrackedAsset:
    """The QUANTA token on Base."""
    return TrackedAsset("QUANTA", QUANTA_ADDRESS)


@pytest.fixture
def stub_fetcher():
    """Factory for scripted price sources."""
    return StubFetcher


@pytest.fixture
def fake_oracle():
    """Factory for in-memory oracle clients."""
    return FakeOracleClient

