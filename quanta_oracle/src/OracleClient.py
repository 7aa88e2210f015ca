"""OracleClient: Read and write the on-chain price oracle.

:class:`OracleClient` is the interface the update engine talks to. It puts a
deadline on every call and owns the lock that serializes submissions for one
oracle. :class:`Web3OracleClient` implements it against the oracle contract
with a locally held updater key.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from .ContractUtility import ContractUtility, from_scaled_price, to_scaled_price
from .errors import (
    ContractPaused,
    NotAuthorized,
    OracleTimeout,
    OutOfBounds,
    SubmissionFailed,
)

logger = logging.getLogger(__name__)

# Bounds enforced by the deployed oracle: 1e9 and 1e18 wei
DEFAULT_MIN_PRICE = Decimal("0.000000001")
DEFAULT_MAX_PRICE = Decimal("1")
DEFAULT_STALE_AFTER_SECONDS = 3600.0


@dataclass(frozen=True)
class OracleState:
    """Snapshot of the oracle record.

    :ivar price_usd: Published price in USD.
    :ivar last_update_timestamp: Unix time of the last accepted update.
    :ivar stale_after_seconds: Age after which the record counts as stale.
    :ivar min_price: Lowest price the oracle accepts.
    :ivar max_price: Highest price the oracle accepts.
    :ivar is_paused: True when the oracle refuses updates.
    :ivar authorized_updaters: Lowercase addresses allowed to update.
    :ivar reported_stale: The oracle's own staleness flag, if it exposes one.
    """

    price_usd: Decimal
    last_update_timestamp: float
    stale_after_seconds: float
    min_price: Decimal
    max_price: Decimal
    is_paused: bool
    authorized_updaters: frozenset[str]
    reported_stale: bool = False

    def age(self, now: float | None = None) -> float:
        """Seconds since the last update."""
        return (time.time() if now is None else now) - self.last_update_timestamp

    def is_authorized(self, identity: str) -> bool:
        """Check whether an address may update (case-insensitive)."""
        return identity.lower() in self.authorized_updaters

    def in_bounds(self, price: Decimal) -> bool:
        """Check whether a price lies in [min_price, max_price]."""
        return self.min_price <= price <= self.max_price


class OracleClient(ABC):
    """Abstract oracle collaborator.

    Subclasses implement the blocking-free ``_read_state()`` and
    ``_submit_update()``; the public methods add deadlines.

    :ivar read_timeout: Deadline for read_state(), in seconds.
    :ivar submit_timeout: Deadline for submit_update() including confirmation.
    :ivar submission_lock: Serializes update cycles against this oracle.
    """

    def __init__(self, read_timeout: float = 10.0, submit_timeout: float = 120.0) -> None:
        if read_timeout <= 0 or submit_timeout <= 0:
            raise ValueError("Oracle timeouts must be positive")
        self.read_timeout = read_timeout
        self.submit_timeout = submit_timeout
        self.submission_lock = asyncio.Lock()

    @property
    @abstractmethod
    def identity(self) -> str:
        """Address updates are submitted from."""
        pass

    async def read_state(self, identity: str | None = None) -> OracleState:
        """Read the oracle record.

        :param identity: Address whose authorization to check (default: own).
        :returns: Current oracle state.
        :raises OracleTimeout: If the read exceeds read_timeout.
        """
        identity = identity or self.identity
        try:
            return await asyncio.wait_for(self._read_state(identity), self.read_timeout)
        except asyncio.TimeoutError as e:
            raise OracleTimeout(f"Oracle read timed out after {self.read_timeout}s") from e

    async def submit_update(self, price: Decimal) -> dict[str, Any]:
        """Submit a new price and wait for confirmation.

        The submission runs in its own task. If the deadline passes or the
        caller is cancelled, the task is still awaited before OracleTimeout
        or the cancellation propagates, so a sent transaction is never
        abandoned.

        :param price: New price in USD.
        :returns: Transaction receipt.
        :raises OutOfBounds: If the oracle rejects the price as out of bounds.
        :raises NotAuthorized: If the oracle rejects the sender.
        :raises ContractPaused: If the oracle is paused.
        :raises SubmissionFailed: On any other revert or failure.
        :raises OracleTimeout: If confirmation exceeds submit_timeout.
        """
        task = asyncio.create_task(self._submit_update(price))
        try:
            return await asyncio.wait_for(asyncio.shield(task), self.submit_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                f"Price update not confirmed within {self.submit_timeout}s, "
                f"waiting for the transaction to settle"
            )
            await self._settle(task)
            raise OracleTimeout(
                f"Price update not confirmed within {self.submit_timeout}s"
            ) from e
        except asyncio.CancelledError:
            logger.warning("Cancelled during submission, waiting for the transaction")
            await self._settle(task)
            raise

    @staticmethod
    async def _settle(task: asyncio.Task) -> None:
        """Wait for an abandoned submission and log how it ended.

        The caller keeps the submission lock meanwhile, so the next cycle
        reads the state this submission left behind.
        """
        await asyncio.wait([task])
        if task.cancelled():
            logger.warning("Late price update was cancelled")
        elif task.exception() is not None:
            logger.error(f"Late price update failed: {task.exception()}")
        else:
            logger.info("Late price update settled")

    @abstractmethod
    async def _read_state(self, identity: str) -> OracleState:
        pass

    @abstractmethod
    async def _submit_update(self, price: Decimal) -> dict[str, Any]:
        pass


class Web3OracleClient(OracleClient):
    """Oracle client for the deployed price oracle contract.

    Bounds and the staleness window are deployment configuration; the
    contract itself is read for price, last update, pause flag, its own
    staleness flag and the updater role.

    :ivar contract_utility: Web3 connection and signing account.
    :ivar oracle: Bound oracle contract.
    """

    def __init__(
        self,
        oracle_address: str,
        contract_utility: ContractUtility,
        min_price: Decimal = DEFAULT_MIN_PRICE,
        max_price: Decimal = DEFAULT_MAX_PRICE,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        read_timeout: float = 10.0,
        submit_timeout: float = 120.0,
    ) -> None:
        """Initialize the client.

        :param oracle_address: Oracle contract address.
        :param contract_utility: Connection with the updater key loaded.
        :param min_price: Lowest price the oracle accepts (default: $0.000000001).
        :param max_price: Highest price the oracle accepts (default: $1.00).
        :param stale_after_seconds: Staleness window (default: 3600).
        :param read_timeout: Deadline for reads (default: 10).
        :param submit_timeout: Deadline for submission and receipt (default: 120).
        :raises ValueError: If the bounds are inconsistent.
        """
        super().__init__(read_timeout=read_timeout, submit_timeout=submit_timeout)
        if min_price <= 0 or min_price > max_price:
            raise ValueError(f"Invalid price bounds [{min_price}, {max_price}]")
        self.contract_utility = contract_utility
        self.oracle = contract_utility.get_oracle(oracle_address)
        self.min_price = min_price
        self.max_price = max_price
        self.stale_after_seconds = stale_after_seconds

    @property
    def identity(self) -> str:
        address = self.contract_utility.address
        if address is None:
            raise NotAuthorized("<no updater key>")
        return address

    @property
    def w3(self) -> Web3:
        return self.contract_utility.w3

    async def _read_state(self, identity: str) -> OracleState:
        return await asyncio.to_thread(self._read_state_sync, identity)

    def _read_state_sync(self, identity: str) -> OracleState:
        fns = self.oracle.functions
        raw_price, _age = fns.getRawPrice().call()
        last_update = fns.getLastUpdate().call()
        is_paused = fns.paused().call()
        reported_stale = fns.isStale().call()
        is_updater = fns.isUpdater(Web3.to_checksum_address(identity)).call()

        return OracleState(
            price_usd=from_scaled_price(raw_price),
            last_update_timestamp=float(last_update),
            stale_after_seconds=self.stale_after_seconds,
            min_price=self.min_price,
            max_price=self.max_price,
            is_paused=bool(is_paused),
            authorized_updaters=frozenset({identity.lower()}) if is_updater else frozenset(),
            reported_stale=bool(reported_stale),
        )

    async def _submit_update(self, price: Decimal) -> dict[str, Any]:
        return await asyncio.to_thread(self._submit_update_sync, price)

    def _submit_update_sync(self, price: Decimal) -> dict[str, Any]:
        scaled = to_scaled_price(price)
        try:
            tx_hash = self.oracle.functions.updatePrice(scaled).transact(
                {"from": self.identity}
            )
        except ContractLogicError as e:
            raise self._map_revert(price, e) from e
        logger.info(f"Submitted updatePrice({scaled}): tx {tx_hash.hex()}")

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.submit_timeout
            )
        except TimeExhausted as e:
            raise OracleTimeout(f"Transaction {tx_hash.hex()} not mined in time") from e

        if receipt["status"] != 1:
            raise SubmissionFailed(f"Transaction {tx_hash.hex()} reverted")
        logger.info(
            f"Price update confirmed in block {receipt['blockNumber']} "
            f"(gas used: {receipt['gasUsed']})"
        )
        return dict(receipt)

    def _map_revert(self, price: Decimal, error: ContractLogicError) -> Exception:
        message = str(error.message or error).lower()
        if "out of bounds" in message:
            return OutOfBounds(price, self.min_price, self.max_price)
        if "paused" in message:
            return ContractPaused(f"Oracle contract is paused: {error}")
        if "updater" in message or "authorized" in message:
            return NotAuthorized(self.identity)
        return SubmissionFailed(f"updatePrice reverted: {error}")
