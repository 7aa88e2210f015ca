"""Unit tests for FetchCoordinator."""

import time
from decimal import Decimal

import pytest

from quanta_oracle.src.errors import SourceUnavailable
from quanta_oracle.src.FetchCoordinator import FetchCoordinator, FetchResult


class TestFetchCoordinatorInit:
    """Test FetchCoordinator initialization."""

    def test_duplicate_sources(self, stub_fetcher) -> None:
        """The same source configured twice is rejected."""
        with pytest.raises(ValueError, match="Duplicate price sources"):
            FetchCoordinator([stub_fetcher("a"), stub_fetcher("a")])

    def test_preserves_order(self, stub_fetcher) -> None:
        fetchers = [stub_fetcher("b"), stub_fetcher("a")]
        assert FetchCoordinator(fetchers).fetchers == fetchers


class TestFetchAll:
    """Test concurrent fan-out."""

    async def test_no_fetchers(self, asset) -> None:
        result = await FetchCoordinator([]).fetch_all(asset)
        assert result.snapshots == []
        assert result.failures == {}

    async def test_snapshots_in_priority_order(self, stub_fetcher, asset) -> None:
        """Order follows configuration, not completion time."""
        coordinator = FetchCoordinator([
            stub_fetcher("slow", price="1.00", delay=0.05),
            stub_fetcher("fast", price="1.01"),
        ])
        result = await coordinator.fetch_all(asset)

        assert result.responded == ["slow", "fast"]
        assert [s.price_usd for s in result.snapshots] == [Decimal("1.00"), Decimal("1.01")]

    async def test_failures_isolated(self, stub_fetcher, asset) -> None:
        """A failing source is recorded without affecting the others."""
        coordinator = FetchCoordinator([
            stub_fetcher("a", price="1.00"),
            stub_fetcher("b", error=SourceUnavailable("b", "HTTP 503: unavailable")),
            stub_fetcher("c", error=ValueError("bad json")),
            stub_fetcher("d", price="0"),
        ])
        result = await coordinator.fetch_all(asset)

        assert result.responded == ["a"]
        assert result.failures == {
            "b": "HTTP 503: unavailable",
            "c": "ValueError: bad json",
            "d": "invalid snapshot (price=0)",
        }

    async def test_sources_fetched_concurrently(self, stub_fetcher, asset) -> None:
        """Three 0.1s sources finish in about 0.1s, not 0.3s."""
        coordinator = FetchCoordinator(
            [stub_fetcher(name, price="1", delay=0.1) for name in ("a", "b", "c")]
        )
        started = time.monotonic()
        result = await coordinator.fetch_all(asset)

        assert time.monotonic() - started < 0.25
        assert len(result.snapshots) == 3

    async def test_slow_source_bounded_by_its_timeout(self, stub_fetcher, asset) -> None:
        coordinator = FetchCoordinator([
            stub_fetcher("hung", price="1", delay=5.0, timeout=0.05),
            stub_fetcher("ok", price="1.02"),
        ])
        started = time.monotonic()
        result = await coordinator.fetch_all(asset)

        assert time.monotonic() - started < 1.0
        assert result.responded == ["ok"]
        assert result.failures == {"hung": "timeout after 0.05s"}


class TestFetchResult:
    """Test the FetchResult container."""

    def test_empty(self) -> None:
        result = FetchResult()
        assert result.responded == []
        assert result.failures == {}
