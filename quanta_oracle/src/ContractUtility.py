"""ContractUtility: Web3 initialization, oracle ABI and price scaling."""

from __future__ import annotations

from decimal import Decimal

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.middleware import SignAndSendRawMiddlewareBuilder

# Prices are stored on-chain as integers scaled by 10**18
NUM_DECIMALS = 18
PRICE_SCALE = Decimal(10) ** NUM_DECIMALS

NETWORKS = {
    "base": "https://mainnet.base.org",
    "base-sepolia": "https://sepolia.base.org",
    "localnet": "http://localhost:8545",
}

ORACLE_ABI = [
    {
        "name": "getRawPrice",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "price", "type": "uint256"},
            {"name": "age", "type": "uint256"},
        ],
    },
    {
        "name": "getLastUpdate",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "isUpdater",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "isStale",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "paused",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "updatePrice",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "newPrice", "type": "uint256"}],
        "outputs": [],
    },
]


def to_scaled_price(price: Decimal) -> int:
    """Convert a USD price to its on-chain integer form.

    :param price: Price in USD.
    :returns: Price multiplied by 10**18, truncated.
    """
    return int(price * PRICE_SCALE)


def from_scaled_price(raw: int) -> Decimal:
    """Convert an on-chain integer price to USD.

    :param raw: Price scaled by 10**18.
    :returns: Price in USD.
    """
    return Decimal(raw) / PRICE_SCALE


class ContractUtility:
    """Utility for Web3 connection and oracle contract binding.

    :ivar rpc_url: JSON-RPC endpoint.
    :ivar w3: Configured Web3 instance.
    :ivar account: Signing account, or None for read-only use.
    """

    def __init__(
        self,
        network_name: str,
        rpc_url: str | None = None,
        private_key: str | None = None,
        request_timeout: float = 10.0,
    ) -> None:
        """Initialize the contract utility.

        :param network_name: Network name ("base", "base-sepolia", "localnet").
        :param rpc_url: Overrides the default RPC for the network.
        :param private_key: Updater key; enables transaction signing.
        :param request_timeout: HTTP timeout for each RPC request.
        """
        self.rpc_url = rpc_url or NETWORKS.get(network_name, network_name)
        self.w3 = Web3(
            Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": request_timeout})
        )

        self.account: LocalAccount | None = None
        if private_key:
            self.account = Account.from_key(private_key)
            self.w3.middleware_onion.add(SignAndSendRawMiddlewareBuilder.build(self.account))
            self.w3.eth.default_account = self.account.address

    @property
    def address(self) -> str | None:
        """Address of the signing account, if any."""
        return self.account.address if self.account is not None else None

    def get_oracle(self, address: str):
        """Bind the oracle contract at an address.

        :param address: Oracle contract address, any case.
        :returns: web3 Contract instance.
        """
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(address), abi=ORACLE_ABI
        )
