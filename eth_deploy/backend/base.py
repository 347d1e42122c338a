"""Chain backend interface.

A chain backend knows how a particular chain family

- Builds an unsigned deployment transaction

- Derives CREATE2 style deterministic addresses

- Tells whether a historical deployment transaction is the same as a freshly built one

- Prices, sends and confirms transactions

The rest of the deployment machinery only talks to :py:class:`ChainBackend`.
"""

import datetime
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

from cachetools import TTLCache
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.datastructures import AttributeDict
from web3.exceptions import TransactionNotFound

from eth_deploy.artifacts import ExtendedArtifact
from eth_deploy.confirmation import wait_for_confirmation
from eth_deploy.gas import GasPriceSuggestion, apply_gas, estimate_gas_price
from eth_deploy.signer import SentTransaction, Signer

logger = logging.getLogger(__name__)


#: How long gas price suggestions are reused
DEFAULT_GAS_PRICE_TTL = 15


class UnsupportedTransaction(Exception):
    """The backend cannot represent the transaction."""


class NodeDesyncError(Exception):
    """The node does not know a transaction we have sent or recorded.

    Usually the node is not fully synced, or the deployments folder belongs to another chain.
    """

    def __init__(self, name: str, tx_hash: str):
        super().__init__(f"Cannot get the transaction {tx_hash} for {name}, please check your node synced status")
        self.name = name
        self.tx_hash = tx_hash


def get_transaction_data_field(tx: AttributeDict | dict) -> str:
    """Get the transaction payload.

    Some nodes return ``input``, some ``data``.
    """
    value = tx.get("input", tx.get("data"))
    if value is None:
        return "0x"
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if not value.startswith("0x"):
        value = "0x" + value
    return value.lower()


def normalise_salt(salt: str | bytes | None) -> HexBytes:
    """Turn a user given salt to 32 bytes.

    - ``None`` or ``True`` means 32 zero bytes

    - Shorter salts are left padded with zeroes

    :raise ValueError:
        Salt is longer than 32 bytes
    """
    if salt is None or salt is True:
        return HexBytes(b"\x00" * 32)
    salt = HexBytes(salt)
    if len(salt) > 32:
        raise ValueError(f"Salt must be at most 32 bytes, got {len(salt)}")
    return HexBytes(salt.rjust(32, b"\x00"))


class ChainBackend(ABC):
    """Base class for chain specific deployment rules."""

    #: Human readable backend name for logging
    name = "base"

    #: First byte of CREATE2 preimage
    create2_prefix: bytes = b"\xff"

    #: Can we send deployments through the deterministic deployment factory
    supports_deterministic_send = True

    #: Does the chain have account nonces
    uses_nonce = True

    #: Well-known proxy and diamond artifacts must come from the tron-solc build
    uses_tron_default_artifacts = False

    def __init__(self, web3: Web3, gas_price_ttl: float = DEFAULT_GAS_PRICE_TTL):
        self.web3 = web3
        #: Gas price read-through cache, refreshed when the TTL runs out
        self.fee_cache = TTLCache(maxsize=4, ttl=gas_price_ttl)

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name}>"

    @abstractmethod
    def build_deploy_transaction(self, artifact: ExtendedArtifact, bytecode: str, args: Sequence[Any], overrides: dict) -> dict:
        """Build an unsigned deployment transaction.

        :param bytecode:
            Creation bytecode with libraries already linked

        :param args:
            Constructor arguments

        :param overrides:
            ``from``, ``value`` and other transaction fields set by the user

        :raise UnsupportedTransaction:
            The payload cannot be represented as inline data for this backend
        """

    @abstractmethod
    def compute_create2_address(self, factory_address: HexAddress, salt: bytes, deploy_tx: dict) -> HexAddress:
        """Derive the deterministic address of a deployment.

        Pure: depends only on the arguments, never on the chain state.

        :param deploy_tx:
            Unsigned deployment transaction from :py:meth:`build_deploy_transaction`
        """

    @abstractmethod
    def is_equivalent_transaction(self, historical_tx: dict, fresh_tx: dict, deployment=None) -> bool:
        """Does the historical deployment transaction deploy the same thing as the fresh one.

        :param historical_tx:
            Transaction as returned by the node

        :param fresh_tx:
            Freshly built unsigned transaction

        :param deployment:
            Stored :py:class:`eth_deploy.ledger.Deployment` record
        """

    def get_gas_price_suggestion(self) -> GasPriceSuggestion:
        """Read-through cached gas price suggestion."""
        suggestion = self.fee_cache.get("suggestion")
        if suggestion is None:
            suggestion = estimate_gas_price(self.web3)
            logger.debug("Gas price suggestion refreshed: %s", suggestion)
            self.fee_cache["suggestion"] = suggestion
        return suggestion

    def get_gas_price(self) -> int:
        """Read-through cached ``eth_gasPrice``."""
        gas_price = self.fee_cache.get("gas_price")
        if gas_price is None:
            gas_price = self.web3.eth.gas_price
            self.fee_cache["gas_price"] = gas_price
        return gas_price

    def fill_fees(self, tx: dict, gas_price: int = None, max_fee_per_gas: int = None, max_priority_fee_per_gas: int = None) -> dict:
        """Set gas price or EIP-1559 fee fields, never both."""
        return apply_gas(tx, self.get_gas_price_suggestion(), gas_price=gas_price, max_fee_per_gas=max_fee_per_gas, max_priority_fee_per_gas=max_priority_fee_per_gas)

    def estimate_gas(self, tx: dict) -> int:
        tx = {k: v for k, v in tx.items() if k in ("from", "to", "data", "value", "gas")}
        return self.web3.eth.estimate_gas(tx)

    def get_nonce(self, address: HexAddress, block_identifier="latest") -> int:
        return self.web3.eth.get_transaction_count(address, block_identifier)

    def get_code(self, address: HexAddress) -> HexBytes:
        return HexBytes(self.web3.eth.get_code(address))

    def get_transaction(self, tx_hash: HexBytes | str) -> Optional[AttributeDict]:
        """Get a transaction by hash, or ``None`` if the node does not know it."""
        try:
            return self.web3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None

    def get_deployed_address(self, receipt: dict) -> HexAddress:
        """Read the address of the created contract from a receipt."""
        return receipt["contractAddress"]

    def send_transaction(self, signer: Signer, tx: dict) -> SentTransaction:
        """Broadcast a fully populated transaction.

        :raise eth_deploy.signer.UnknownSignerError:
            We cannot sign for the sender
        """
        return signer.send_transaction(self.web3, tx)

    def wait_for_receipt(self, tx_hash: HexBytes | str, wait_confirmations: int = 0, poll_delay=datetime.timedelta(seconds=1)) -> dict:
        """Block until the transaction is confirmed.

        :raise eth_deploy.confirmation.ChainExecutionFailed:
            Transaction was mined but failed
        """
        return wait_for_confirmation(self.web3, tx_hash, wait_confirmations=wait_confirmations, poll_delay=poll_delay)
