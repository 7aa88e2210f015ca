"""OracleUpdater: Decide when to push the aggregated price on-chain.

One update cycle, run while holding the oracle client's submission lock:
    1. Read the oracle state
    2. Check the updater is authorized and the oracle is not paused
    3. Get the current aggregated price (through the cache)
    4. Decide: update iff the price moved by at least the change threshold
       or the on-chain record is stale
    5. Refuse prices outside the oracle's bounds, whatever the decision
    6. Submit, then re-read the state to see what the oracle accepted

A second cycle waiting on the lock re-reads the state the first one left,
so two cycles never push the same change twice. Failed submissions are not
retried here; the next scheduled cycle decides again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .errors import ContractPaused, NotAuthorized, OutOfBounds
from .scheduling import run_periodically

if TYPE_CHECKING:
    from .OracleClient import OracleClient, OracleState
    from .PriceSnapshot import AggregatedPrice

logger = logging.getLogger(__name__)

INFINITE_CHANGE = Decimal("Infinity")


class UpdateReason(str, Enum):
    """Why an update was or was not warranted."""

    PRICE_CHANGE = "price_change"
    STALE = "stale"
    PRICE_CHANGE_AND_STALE = "price_change+stale"
    WITHIN_THRESHOLD = "within_threshold"
    LOW_CONFIDENCE = "low_confidence"


@dataclass(frozen=True)
class UpdateDecision:
    """Outcome of comparing a candidate price to the oracle record.

    :ivar should_update: True if the candidate should be submitted.
    :ivar reason: Why.
    :ivar relative_change: |candidate - on_chain| / on_chain (Infinity when
        nothing is published yet).
    :ivar age_seconds: Age of the on-chain record.
    :ivar is_stale: True if the record is past its staleness window.
    :ivar candidate_price: Aggregated price being considered.
    :ivar on_chain_price: Currently published price.
    """

    should_update: bool
    reason: UpdateReason
    relative_change: Decimal
    age_seconds: float
    is_stale: bool
    candidate_price: Decimal
    on_chain_price: Decimal


@dataclass(frozen=True)
class UpdateOutcome:
    """Result of one update cycle.

    :ivar decision: The decision taken.
    :ivar submitted: True if a transaction was confirmed.
    :ivar receipt: Transaction receipt, if submitted.
    :ivar confirmed_state: Oracle state re-read after submission.
    """

    decision: UpdateDecision
    submitted: bool = False
    receipt: dict[str, Any] | None = None
    confirmed_state: OracleState | None = None


def decide_update(
    candidate: AggregatedPrice,
    state: OracleState,
    change_threshold: Decimal,
    now: float,
    require_confidence: bool = False,
) -> UpdateDecision:
    """Decide whether a candidate price should be published. Performs no I/O.

    :param candidate: Aggregated price.
    :param state: Current oracle state.
    :param change_threshold: Minimum relative change (fraction, e.g. 0.001).
    :param now: Current unix time.
    :param require_confidence: Hold back low-confidence prices.
    :returns: The decision.
    """
    price = candidate.price_usd
    on_chain = state.price_usd
    age = state.age(now)
    is_stale = age > state.stale_after_seconds or state.reported_stale

    if on_chain <= 0:
        relative_change = INFINITE_CHANGE
    else:
        relative_change = abs(price - on_chain) / on_chain
    changed = relative_change >= change_threshold

    if changed and is_stale:
        reason = UpdateReason.PRICE_CHANGE_AND_STALE
    elif changed:
        reason = UpdateReason.PRICE_CHANGE
    elif is_stale:
        reason = UpdateReason.STALE
    else:
        reason = UpdateReason.WITHIN_THRESHOLD
    should_update = changed or is_stale

    if should_update and require_confidence and candidate.low_confidence:
        should_update = False
        reason = UpdateReason.LOW_CONFIDENCE

    return UpdateDecision(
        should_update=should_update,
        reason=reason,
        relative_change=relative_change,
        age_seconds=age,
        is_stale=is_stale,
        candidate_price=price,
        on_chain_price=on_chain,
    )


class OracleUpdater:
    """Keeps the on-chain oracle in line with the aggregated price.

    :ivar client: Oracle collaborator; its lock serializes cycles.
    :ivar get_price: Coroutine function returning the current AggregatedPrice.
    :ivar change_threshold_percent: Minimum change that warrants an update.
    :ivar require_confidence: Skip low-confidence prices.
    """

    def __init__(
        self,
        client: OracleClient,
        get_price: Callable[[], Awaitable[AggregatedPrice]],
        change_threshold_percent: float = 0.1,
        require_confidence: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the updater.

        :param client: Oracle client.
        :param get_price: Source of the price to publish, normally the cache.
        :param change_threshold_percent: Change that warrants an update
            (default: 0.1%).
        :param require_confidence: Do not publish low-confidence prices
            (default: False).
        :param clock: Time source, in seconds.
        :raises ValueError: If the threshold is negative.
        """
        if change_threshold_percent < 0:
            raise ValueError("change_threshold_percent must not be negative")
        self.client = client
        self.get_price = get_price
        self.change_threshold_percent = change_threshold_percent
        self.require_confidence = require_confidence
        self._clock = clock

    @property
    def change_threshold(self) -> Decimal:
        """Change threshold as a fraction."""
        return Decimal(str(self.change_threshold_percent)) / 100

    async def run_cycle(self) -> UpdateOutcome:
        """Run one read, decide, validate, submit, confirm cycle.

        :returns: What happened.
        :raises NotAuthorized: If the updater may not write the oracle.
        :raises ContractPaused: If the oracle is paused.
        :raises OutOfBounds: If the price is outside the oracle's bounds,
            whether or not an update is warranted. Nothing is submitted.
        :raises AllSourcesUnavailable: If no price could be obtained.
        :raises StaleCacheExhausted: If no price could be obtained.
        :raises SubmissionFailed: If the transaction failed.
        :raises OracleTimeout: If a read or the submission timed out.
        """
        async with self.client.submission_lock:
            identity = self.client.identity
            state = await self.client.read_state(identity)
            if not state.is_authorized(identity):
                raise NotAuthorized(identity)
            if state.is_paused:
                raise ContractPaused()

            candidate = await self.get_price()
            decision = decide_update(
                candidate,
                state,
                self.change_threshold,
                now=self._clock(),
                require_confidence=self.require_confidence,
            )
            self._log_decision(decision)
            if not state.in_bounds(decision.candidate_price):
                raise OutOfBounds(decision.candidate_price, state.min_price, state.max_price)
            if not decision.should_update:
                return UpdateOutcome(decision=decision)

            receipt = await self.client.submit_update(decision.candidate_price)
            confirmed = await self.client.read_state(identity)
            if confirmed.price_usd != decision.candidate_price:
                logger.warning(
                    f"Oracle reports ${confirmed.price_usd} after submitting "
                    f"${decision.candidate_price}"
                )
            else:
                logger.info(f"Oracle updated to ${confirmed.price_usd}")

            return UpdateOutcome(
                decision=decision,
                submitted=True,
                receipt=receipt,
                confirmed_state=confirmed,
            )

    async def run(self, stop_event: asyncio.Event, interval: float = 60.0) -> int:
        """Run update cycles until stopped.

        NotAuthorized and ContractPaused end the loop and propagate; any
        other failure is logged and retried at the next period.

        :param stop_event: Set to stop after the current cycle.
        :param interval: Seconds between cycles (default: 60).
        :returns: Number of cycles run.
        """
        return await run_periodically(
            self.run_cycle,
            interval,
            stop_event,
            name="updater",
            fatal_errors=(NotAuthorized, ContractPaused),
        )

    @staticmethod
    def _log_decision(decision: UpdateDecision) -> None:
        change = (
            "n/a" if decision.relative_change.is_infinite()
            else f"{decision.relative_change * 100:.4f}%"
        )
        logger.info(
            f"On-chain ${decision.on_chain_price}, off-chain "
            f"${decision.candidate_price}, change {change}, "
            f"age {decision.age_seconds:.0f}s -> "
            f"{'update' if decision.should_update else 'skip'} "
            f"({decision.reason.value})"
        )
