"""Unit tests for DeviationMonitor."""

import asyncio
import logging
from decimal import Decimal

import pytest

from quanta_oracle.src.DeviationMonitor import (
    AGGREGATED_SOURCE,
    DeviationMonitor,
    analyze,
)
from quanta_oracle.src.errors import AllSourcesUnavailable, SourceUnavailable
from quanta_oracle.src.PriceAggregator import PriceAggregator

THRESHOLD = Decimal("0.05")


def prices(**values: str) -> dict[str, Decimal]:
    return {name: Decimal(value) for name, value in values.items()}


class TestAnalyze:
    """Test the deviation computation."""

    def test_warning_above_threshold(self) -> None:
        """{1.00, 1.00, 1.10}: mean ~1.0333, max deviation ~6.45%."""
        report = analyze(prices(a="1.00", b="1.00", c="1.10"), THRESHOLD)

        assert abs(report.mean_price - Decimal("1.0333")) < Decimal("0.0001")
        assert abs(report.max_deviation - Decimal("0.0645")) < Decimal("0.0001")
        assert report.max_deviation_source == "c"
        assert report.level == "warning"
        assert report.is_warning

    def test_info_within_threshold(self) -> None:
        """{1.00, 1.01, 0.99}: no warning."""
        report = analyze(prices(a="1.00", b="1.01", c="0.99"), THRESHOLD)

        assert report.mean_price == Decimal("1.00")
        assert report.max_deviation == Decimal("0.01")
        assert report.level == "info"

    def test_single_source(self) -> None:
        report = analyze(prices(a="0.02"), THRESHOLD)
        assert report.max_deviation == 0
        assert report.max_deviation_source == "a"
        assert report.level == "info"

    def test_no_prices(self) -> None:
        """Zero responses raise AllSourcesUnavailable."""
        with pytest.raises(AllSourcesUnavailable) as exc_info:
            analyze({}, THRESHOLD, failures={"a": "down"})
        assert exc_info.value.failures == {"a": "down"}

    def test_failures_carried(self) -> None:
        report = analyze(prices(a="1"), THRESHOLD, failures={"b": "timeout after 10.0s"})
        assert report.failures == {"b": "timeout after 10.0s"}

    def test_report_is_read_only(self) -> None:
        """Neither the report's mappings nor the caller's inputs alias each other."""
        observed = prices(a="1.00", b="1.01")
        failures = {"c": "down"}
        report = analyze(observed, THRESHOLD, failures=failures)

        with pytest.raises(TypeError):
            report.prices["x"] = Decimal("9")
        with pytest.raises(TypeError):
            report.failures["x"] = "down"

        observed["d"] = Decimal("5")
        failures["e"] = "down"
        assert set(report.prices) == {"a", "b"}
        assert report.failures == {"c": "down"}


class TestDeviationMonitor:
    """Test monitor checks against scripted sources."""

    def test_invalid_threshold(self, stub_fetcher, asset) -> None:
        aggregator = PriceAggregator([stub_fetcher("a")])
        with pytest.raises(ValueError, match="max_deviation_percent must be positive"):
            DeviationMonitor(aggregator, asset, max_deviation_percent=0)

    async def test_check_includes_aggregated_price(self, stub_fetcher, asset) -> None:
        """Every source plus the aggregator's own result is compared."""
        aggregator = PriceAggregator([
            stub_fetcher("a", price="1.00", liquidity="100"),
            stub_fetcher("b", price="1.02", liquidity="100"),
        ])
        report = await DeviationMonitor(aggregator, asset).check()

        assert report.prices == {
            "a": Decimal("1.00"),
            "b": Decimal("1.02"),
            AGGREGATED_SOURCE: Decimal("1.01"),
        }
        assert report.mean_price == Decimal("1.01")
        assert report.level == "info"

    async def test_warning_logged(self, stub_fetcher, asset, caplog) -> None:
        aggregator = PriceAggregator([
            stub_fetcher("a", price="1.00"),
            stub_fetcher("b", price="1.30"),
        ])
        with caplog.at_level(logging.WARNING, logger="quanta_oracle.src.DeviationMonitor"):
            report = await DeviationMonitor(aggregator, asset).check()

        assert report.is_warning
        assert "Price deviation above 5.0%" in caplog.text

    async def test_failed_sources_reported(self, stub_fetcher, asset) -> None:
        aggregator = PriceAggregator([
            stub_fetcher("a", price="1.00"),
            stub_fetcher("b", error=SourceUnavailable("b", "HTTP 429: slow down")),
        ])
        report = await DeviationMonitor(aggregator, asset).check()

        assert report.prices == {"a": Decimal("1.00")}
        assert report.failures == {"b": "HTTP 429: slow down"}

    async def test_no_sources_respond(self, stub_fetcher, asset) -> None:
        aggregator = PriceAggregator([stub_fetcher("a", error=RuntimeError("down"))])
        with pytest.raises(AllSourcesUnavailable):
            await DeviationMonitor(aggregator, asset).check()

    async def test_callback_receives_report(self, stub_fetcher, asset) -> None:
        received = []
        aggregator = PriceAggregator([stub_fetcher("a", price="1")])
        monitor = DeviationMonitor(aggregator, asset, on_report=received.append)

        report = await monitor.check()
        assert received == [report]

    async def test_loop_survives_failed_check(self, stub_fetcher, asset) -> None:
        """A check with no responses is logged and the loop continues."""
        source = stub_fetcher("a", error=RuntimeError("down"))
        monitor = DeviationMonitor(PriceAggregator([source]), asset)
        stop = asyncio.Event()

        task = asyncio.create_task(monitor.run(stop, interval=0.01))
        await asyncio.sleep(0.05)
        stop.set()
        cycles = await asyncio.wait_for(task, timeout=1)

        assert cycles >= 2
        assert source.calls == cycles
