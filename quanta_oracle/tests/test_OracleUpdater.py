"""Unit tests for OracleUpdater and decide_update."""

import asyncio
import time
from decimal import Decimal

import pytest

from quanta_oracle.src.errors import (
    AllSourcesUnavailable,
    ContractPaused,
    NotAuthorized,
    OracleTimeout,
    OutOfBounds,
)
from quanta_oracle.src.OracleClient import OracleState
from quanta_oracle.src.OracleUpdater import (
    OracleUpdater,
    UpdateReason,
    decide_update,
)
from quanta_oracle.src.PriceSnapshot import AggregatedPrice, AggregationStrategy

NOW = 1_700_000_000.0
THRESHOLD = Decimal("0.001")


def price(value: str, low_confidence: bool = False) -> AggregatedPrice:
    return AggregatedPrice(
        price_usd=Decimal(value),
        snapshots=(),
        strategy=AggregationStrategy.LIQUIDITY_WEIGHTED,
        low_confidence=low_confidence,
    )


def state(on_chain: str = "1.000", age: float = 60.0, **overrides) -> OracleState:
    fields = dict(
        price_usd=Decimal(on_chain),
        last_update_timestamp=NOW - age,
        stale_after_seconds=3600.0,
        min_price=Decimal("0.000000001"),
        max_price=Decimal("1"),
        is_paused=False,
        authorized_updaters=frozenset(),
    )
    fields.update(overrides)
    return OracleState(**fields)


def fixed_price(value: str, low_confidence: bool = False):
    async def get_price():
        return price(value, low_confidence)

    return get_price


class TestDecideUpdate:
    """Test the pure decision function."""

    def test_small_change_not_warranted(self) -> None:
        """$1.000 on-chain vs $1.0005: 0.05% < 0.1%, no update."""
        decision = decide_update(price("1.0005"), state("1.000"), THRESHOLD, now=NOW)
        assert not decision.should_update
        assert decision.reason == UpdateReason.WITHIN_THRESHOLD
        assert decision.relative_change == Decimal("0.0005")

    def test_change_above_threshold(self) -> None:
        """$1.000 on-chain vs $1.002: 0.2% >= 0.1%, update."""
        decision = decide_update(price("1.002"), state("1.000"), THRESHOLD, now=NOW)
        assert decision.should_update
        assert decision.reason == UpdateReason.PRICE_CHANGE

    def test_change_exactly_at_threshold(self) -> None:
        """The threshold itself warrants an update."""
        decision = decide_update(price("0.999"), state("1.000"), THRESHOLD, now=NOW)
        assert decision.should_update

    def test_stale_forces_update(self) -> None:
        """A stale record is refreshed even without a price change."""
        decision = decide_update(price("1.000"), state("1.000", age=3601), THRESHOLD, now=NOW)
        assert decision.should_update
        assert decision.is_stale
        assert decision.reason == UpdateReason.STALE
        assert decision.age_seconds == 3601

    def test_stale_and_changed(self) -> None:
        decision = decide_update(price("1.01"), state("1.000", age=7200), THRESHOLD, now=NOW)
        assert decision.reason == UpdateReason.PRICE_CHANGE_AND_STALE

    def test_oracle_reports_stale(self) -> None:
        """The oracle's own staleness flag is honored."""
        decision = decide_update(
            price("1.000"), state("1.000", reported_stale=True), THRESHOLD, now=NOW
        )
        assert decision.is_stale
        assert decision.should_update

    def test_nothing_published_yet(self) -> None:
        """An on-chain price of zero always warrants an update."""
        decision = decide_update(price("0.01"), state("0"), THRESHOLD, now=NOW)
        assert decision.should_update
        assert decision.relative_change.is_infinite()

    def test_low_confidence_held_back_when_required(self) -> None:
        decision = decide_update(
            price("1.002", low_confidence=True),
            state("1.000"),
            THRESHOLD,
            now=NOW,
            require_confidence=True,
        )
        assert not decision.should_update
        assert decision.reason == UpdateReason.LOW_CONFIDENCE

    def test_low_confidence_allowed_by_default(self) -> None:
        decision = decide_update(
            price("1.002", low_confidence=True), state("1.000"), THRESHOLD, now=NOW
        )
        assert decision.should_update


class TestOracleUpdaterInit:
    """Test OracleUpdater initialization."""

    def test_default_threshold(self, fake_oracle) -> None:
        updater = OracleUpdater(fake_oracle(), fixed_price("1"))
        assert updater.change_threshold == Decimal("0.001")

    def test_negative_threshold(self, fake_oracle) -> None:
        with pytest.raises(ValueError, match="must not be negative"):
            OracleUpdater(fake_oracle(), fixed_price("1"), change_threshold_percent=-1)


class TestRunCycle:
    """Test full update cycles against an in-memory oracle."""

    async def test_no_update_within_threshold(self, fake_oracle) -> None:
        client = fake_oracle(price="1.000", max_price="2")
        outcome = await OracleUpdater(client, fixed_price("1.0005")).run_cycle()
        assert not outcome.submitted
        assert client.submissions == []

    async def test_update_submitted_and_confirmed(self, fake_oracle) -> None:
        """A warranted update is submitted and the state re-read."""
        client = fake_oracle(price="0.5", max_price="1")
        outcome = await OracleUpdater(client, fixed_price("0.502")).run_cycle()

        assert outcome.submitted
        assert client.submissions == [Decimal("0.502")]
        assert outcome.receipt["status"] == 1
        assert outcome.confirmed_state.price_usd == Decimal("0.502")
        assert client.reads == 2

    async def test_out_of_bounds_not_submitted_even_if_stale(self, fake_oracle) -> None:
        """$2.00 with a $1.00 max raises OutOfBounds without submitting."""
        client = fake_oracle(price="0.9", last_update=time.time() - 10_000)
        with pytest.raises(OutOfBounds) as exc_info:
            await OracleUpdater(client, fixed_price("2.00")).run_cycle()
        assert exc_info.value.max_price == Decimal("1")
        assert client.submissions == []

    async def test_below_min_price(self, fake_oracle) -> None:
        client = fake_oracle(price="0.5")
        with pytest.raises(OutOfBounds):
            await OracleUpdater(client, fixed_price("0.0000000001")).run_cycle()
        assert client.submissions == []

    async def test_not_authorized(self, fake_oracle) -> None:
        """An identity outside the updater set fails before fetching a price."""
        client = fake_oracle(price="0.5", updaters=())
        get_price = fixed_price("0.6")
        with pytest.raises(NotAuthorized):
            await OracleUpdater(client, get_price).run_cycle()
        assert client.submissions == []

    async def test_paused(self, fake_oracle) -> None:
        client = fake_oracle(price="0.5", paused=True)
        with pytest.raises(ContractPaused):
            await OracleUpdater(client, fixed_price("0.6")).run_cycle()
        assert client.submissions == []

    async def test_price_unavailable_propagates(self, fake_oracle) -> None:
        async def no_price():
            raise AllSourcesUnavailable({"a": "down"})

        client = fake_oracle(price="0.5")
        with pytest.raises(AllSourcesUnavailable):
            await OracleUpdater(client, no_price).run_cycle()
        assert client.submissions == []

    async def test_concurrent_cycles_submit_once(self, fake_oracle) -> None:
        """The second cycle waits for the first and then sees the new price."""
        client = fake_oracle(price="0.5", submit_delay=0.05)
        updater = OracleUpdater(client, fixed_price("0.6"))

        first, second = await asyncio.gather(updater.run_cycle(), updater.run_cycle())

        assert client.submissions == [Decimal("0.6")]
        assert [first.submitted, second.submitted].count(True) == 1
        skipped = second if first.submitted else first
        assert skipped.decision.reason == UpdateReason.WITHIN_THRESHOLD
        assert skipped.decision.on_chain_price == Decimal("0.6")

    async def test_read_timeout(self, fake_oracle) -> None:
        """A hanging oracle read surfaces as OracleTimeout."""
        client = fake_oracle(price="0.5", read_timeout=0.05)

        async def hang(identity):
            await asyncio.sleep(10)

        client._read_state = hang
        with pytest.raises(OracleTimeout):
            await OracleUpdater(client, fixed_price("0.6")).run_cycle()

    async def test_submit_timeout(self, fake_oracle) -> None:
        """Confirmation exceeding the deadline surfaces as OracleTimeout."""
        client = fake_oracle(price="0.5", submit_delay=0.2, submit_timeout=0.05)
        with pytest.raises(OracleTimeout):
            await OracleUpdater(client, fixed_price("0.6")).run_cycle()

    async def test_timed_out_submission_not_repeated(self, fake_oracle) -> None:
        """The next cycle waits for the late transaction and sees its price."""
        client = fake_oracle(price="0.5", submit_delay=0.2, submit_timeout=0.05)
        updater = OracleUpdater(client, fixed_price("0.6"))

        with pytest.raises(OracleTimeout):
            await updater.run_cycle()
        outcome = await updater.run_cycle()

        assert client.submissions == [Decimal("0.6")]
        assert not outcome.submitted
        assert outcome.decision.on_chain_price == Decimal("0.6")

    async def test_concurrent_cycle_waits_out_timed_out_submission(self, fake_oracle) -> None:
        """A queued cycle does not race a submission that missed its deadline."""
        client = fake_oracle(price="0.5", submit_delay=0.2, submit_timeout=0.05)
        updater = OracleUpdater(client, fixed_price("0.6"))

        results = await asyncio.gather(
            updater.run_cycle(), updater.run_cycle(), return_exceptions=True
        )

        assert client.submissions == [Decimal("0.6")]
        assert sum(isinstance(r, OracleTimeout) for r in results) == 1
        skipped = next(r for r in results if not isinstance(r, BaseException))
        assert skipped.decision.reason == UpdateReason.WITHIN_THRESHOLD

    async def test_out_of_bounds_rejected_without_warranted_update(self, fake_oracle) -> None:
        """Bounds are checked even when the change is below the threshold."""
        client = fake_oracle(price="1.000", max_price="1")
        with pytest.raises(OutOfBounds):
            await OracleUpdater(client, fixed_price("1.0005")).run_cycle()
        assert client.submissions == []


class TestUpdaterLoop:
    """Test the periodic update loop."""

    async def test_stops_on_event(self, fake_oracle) -> None:
        client = fake_oracle(price="0.5")
        updater = OracleUpdater(client, fixed_price("0.5"))
        stop = asyncio.Event()

        task = asyncio.create_task(updater.run(stop, interval=0.01))
        await asyncio.sleep(0.05)
        stop.set()
        cycles = await asyncio.wait_for(task, timeout=1)

        assert cycles >= 2
        assert client.submissions == []

    async def test_paused_is_fatal(self, fake_oracle) -> None:
        client = fake_oracle(price="0.5", paused=True)
        updater = OracleUpdater(client, fixed_price("0.6"))
        with pytest.raises(ContractPaused):
            await updater.run(asyncio.Event(), interval=0.01)

    async def test_other_errors_logged_and_loop_continues(self, fake_oracle) -> None:
        """OutOfBounds does not stop the loop."""
        client = fake_oracle(price="0.5")
        updater = OracleUpdater(client, fixed_price("5"))
        stop = asyncio.Event()

        task = asyncio.create_task(updater.run(stop, interval=0.01))
        await asyncio.sleep(0.05)
        stop.set()
        cycles = await asyncio.wait_for(task, timeout=1)

        assert cycles >= 2
        assert client.submissions == []
