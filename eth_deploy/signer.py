"""Resolve who signs a deployment transaction.

A ``from`` value given by the user can be

- A named account, like ``deployer``, configured in :py:class:`eth_deploy.config.NetworkConfig`

- A private key (64 hex characters, with or without 0x prefix)

- An address unlocked on the JSON-RPC node, like Anvil or Ethereum Tester accounts

- An address we cannot sign for

The last case is not an error by itself. We build the full transaction
and raise :py:class:`UnknownSignerError` carrying the unsigned payload,
so it can be signed and sent out-of-band, e.g. through a multisig.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3Exception

from eth_deploy.hotwallet import HotWallet
from eth_deploy.tx import send_and_map_errors

logger = logging.getLogger(__name__)


class UnknownSignerError(Exception):
    """We do not have the signing capability for the sender.

    The fully built transaction is available in :py:attr:`data`:

    - ``from``, ``to``, ``value``, ``data``

    - ``contract``, ``method`` and ``args`` when the transaction is a contract call
    """

    def __init__(self, data: dict):
        super().__init__(f"Unknown signer {data.get('from')} for transaction to {data.get('to')}")
        self.data = data


@dataclass
class SentTransaction:
    """Result of broadcasting a transaction."""

    #: Transaction hash
    tx_hash: HexBytes

    #: Raw signed bytes, if we signed locally.
    #:
    #: Node managed accounts do not give us the raw bytes.
    raw_transaction: Optional[HexBytes] = None


class Signer:
    """Signing and broadcasting capability for one address."""

    def __init__(self, address: HexAddress):
        self.address = address

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.address}>"

    def can_sign(self) -> bool:
        return True

    def send_transaction(self, web3: Web3, tx: dict) -> SentTransaction:
        raise NotImplementedError()


class NodeAccountSigner(Signer):
    """Account managed by the JSON-RPC node, signs with ``eth_sendTransaction``."""

    def send_transaction(self, web3: Web3, tx: dict) -> SentTransaction:
        tx = dict(tx)
        tx["from"] = self.address
        tx_hash = send_and_map_errors(lambda: web3.eth.send_transaction(tx), tx)
        return SentTransaction(tx_hash=HexBytes(tx_hash))


class HotWalletSigner(Signer):
    """Sign locally with a private key and broadcast with ``eth_sendRawTransaction``."""

    def __init__(self, wallet: HotWallet):
        super().__init__(wallet.address)
        self.wallet = wallet

    def send_transaction(self, web3: Web3, tx: dict) -> SentTransaction:
        if "chainId" not in tx:
            tx = dict(tx)
            tx["chainId"] = web3.eth.chain_id
        signed = self.wallet.sign_transaction(tx)
        tx_hash = send_and_map_errors(lambda: web3.eth.send_raw_transaction(signed.raw_transaction), tx)
        return SentTransaction(tx_hash=HexBytes(tx_hash), raw_transaction=signed.raw_transaction)


class UnknownSigner(Signer):
    """We know the address, but cannot sign for it."""

    def can_sign(self) -> bool:
        return False

    def send_transaction(self, web3: Web3, tx: dict) -> SentTransaction:
        data = dict(tx)
        data["from"] = self.address
        raise UnknownSignerError(data)


def is_private_key(value: str) -> bool:
    """Is the ``from`` value a hex private key instead of an address."""
    return isinstance(value, str) and len(value.replace("0x", "")) == 64


class SignerRegistry:
    """Map ``from`` values to signing capabilities.

    :param named_accounts:
        Account name -> address or private key

    :param wallets:
        Local hot wallets we can sign with
    """

    def __init__(self, web3: Web3, named_accounts: dict[str, str] | None = None, wallets: list[HotWallet] | None = None):
        self.web3 = web3
        self.named_accounts = dict(named_accounts or {})
        self.wallets: dict[str, HotWallet] = {}
        self._node_accounts: set[str] | None = None
        for wallet in wallets or []:
            self.add_wallet(wallet)

    def add_wallet(self, wallet: HotWallet):
        self.wallets[wallet.address.lower()] = wallet

    def get_node_accounts(self) -> set[str]:
        """Accounts the node can sign for.

        Cached for the lifetime of the registry.
        """
        if self._node_accounts is None:
            try:
                self._node_accounts = {a.lower() for a in self.web3.eth.accounts}
            except (ValueError, Web3Exception) as e:
                # Public RPC providers do not implement eth_accounts
                logger.info("Node does not expose accounts: %s", e)
                self._node_accounts = set()
        return self._node_accounts

    def resolve_address(self, from_: str) -> HexAddress:
        """Resolve a named account or private key to a checksummed address."""
        assert isinstance(from_, str), f"Expected str for from, got {type(from_)}"
        if from_ in self.named_accounts:
            return self.resolve_address(self.named_accounts[from_])
        if is_private_key(from_):
            wallet = HotWallet.from_private_key(from_)
            self.add_wallet(wallet)
            return wallet.address
        if not Web3.is_address(from_):
            raise ValueError(f"Cannot resolve sender {from_}: not a named account, a private key or an address")
        return Web3.to_checksum_address(from_)

    def get_signer(self, from_: str) -> Signer:
        """Get the signing capability for a sender."""
        address = self.resolve_address(from_)
        wallet = self.wallets.get(address.lower())
        if wallet is not None:
            return HotWalletSigner(wallet)
        if address.lower() in self.get_node_accounts():
            return NodeAccountSigner(address)
        logger.info("No signing capability for %s", address)
        return UnknownSigner(address)
