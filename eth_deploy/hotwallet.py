"""Hot wallet management utilities.

- Create local wallets from a private key

- Sign deployment transactions locally and retain the raw bytes,
  so that a stuck transaction can be rebroadcast later
"""

import logging
import secrets
from typing import NamedTuple, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.tx import decode_signed_transaction, get_tx_broadcast_data

logger = logging.getLogger(__name__)


class SignedTransactionWithNonce(NamedTuple):
    """A better signed transaction structure.

    Helper class to pass around the used nonce when signing txs from the wallet.

    - Retains more information about the transaction source,
      to allow us to diagnose broadcasting failures better
    """

    #: Signed payload
    raw_transaction: HexBytes

    #: Transaction hash
    hash: HexBytes

    #: What was the source nonce for this transaction
    nonce: int

    #: Whas was the source address for this trasaction
    address: str

    #: Unencoded transaction data as a dict.
    #:
    #: If broadcast fails, retain the source so we can debug the cause,
    #: like the original gas parameters.
    #:
    source: Optional[dict] = None

    def __repr__(self):
        return f"<SignedTransactionWithNonce hash:{self.hash.hex()} nonce:{self.nonce} address:{self.address}>"


class HotWallet:
    """Hot wallet for signing deployment transactions locally.

    - Nonce is normally given by the caller in the transaction dict,
      as deployment options can ask for ``pending`` or ``latest`` nonce

    - The wallet can also track the nonce itself,
      see :py:meth:`sync_nonce` and :py:meth:`allocate_nonce`

    Example:

    .. code-block:: python

        wallet = HotWallet.from_private_key(os.environ["PRIVATE_KEY"])
        wallet.sync_nonce(web3)
        signed = wallet.sign_transaction({"to": ..., "gas": 100_000, "nonce": wallet.allocate_nonce(), ...})
        web3.eth.send_raw_transaction(signed.raw_transaction)

    .. note ::

        This class is not thread safe.
    """

    def __init__(self, account: LocalAccount):
        """Create a hot wallet from a local account."""
        self.account = account
        self.current_nonce: Optional[int] = None

    def __repr__(self):
        return f"<Hot wallet {self.account.address}>"

    @property
    def address(self) -> HexAddress:
        """Ethereum address of the wallet."""
        return self.account.address

    @property
    def private_key(self) -> HexBytes:
        """The private key as bytes."""
        return HexBytes(self.account.key)

    def sync_nonce(self, web3: Web3, block_identifier="pending"):
        """Initialise the current nonce from the on-chain data."""
        new_nonce = web3.eth.get_transaction_count(self.account.address, block_identifier)
        if self.current_nonce and new_nonce < self.current_nonce:
            logger.warning("Nonce sync failed, read onchain nonce %d that is older than our current nonce: %d", new_nonce, self.current_nonce)
            return
        self.current_nonce = new_nonce
        logger.info("Synced nonce for %s to %d", self.account.address, self.current_nonce)

    def allocate_nonce(self) -> int:
        """Get the next free available nonce to be used with a transaction.

        Increase the nonce counter
        """
        assert self.current_nonce is not None, f"Nonce is not yet synced from the blockchain: {self}"
        nonce = self.current_nonce
        self.current_nonce += 1
        return nonce

    def sign_transaction(self, tx: dict) -> SignedTransactionWithNonce:
        """Sign a transaction that already carries its nonce.

        :param tx:
            Ethereum transaction data as a dict, with ``nonce``, ``gas``, ``chainId`` and fee fields filled.
        """
        assert "nonce" in tx, f"Transaction lacks nonce: {tx}"
        tx = dict(tx)
        tx.pop("from", None)
        _signed = self.account.sign_transaction(tx)

        raw_bytes = get_tx_broadcast_data(_signed)
        # Check that we can decode
        decode_signed_transaction(raw_bytes)

        return SignedTransactionWithNonce(
            raw_transaction=HexBytes(raw_bytes),
            hash=HexBytes(_signed.hash),
            nonce=tx["nonce"],
            address=self.address,
            source=tx,
        )

    @staticmethod
    def from_private_key(key: str | bytes) -> "HotWallet":
        """Create a hot wallet from a private key.

        :param key:
            Hex string, with or without 0x prefix, or raw bytes
        """
        if isinstance(key, str) and not key.startswith("0x"):
            key = "0x" + key
        account = Account.from_key(key)
        return HotWallet(account)

    @staticmethod
    def create_for_testing(web3: Web3, test_account_n=0, eth_amount=1) -> "HotWallet":
        """Creates a new hot wallet and seeds it with ETH from one of well-known test accounts.

        Shortcut method for unit testing.
        """
        wallet = HotWallet.from_private_key("0x" + secrets.token_hex(32))
        tx_hash = web3.eth.send_transaction(
            {
                "from": web3.eth.accounts[test_account_n],
                "to": wallet.address,
                "value": eth_amount * 10**18,
            }
        )
        web3.eth.wait_for_transaction_receipt(tx_hash)
        wallet.sync_nonce(web3)
        return wallet
