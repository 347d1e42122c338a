"""Recover broadcast but unconfirmed transactions.

Every transaction we broadcast is written to ``<deployments>/<network>/.pendingTransactions``
before we start waiting for its receipt. If the process crashes, is killed or the network
is stuck, the next run can pick up where we left.

.. code-block:: python

    deployments = Deployments.from_config(config)
    outcomes = deployments.deal_with_pending_transactions()
    for outcome in outcomes:
        print(outcome.tx_hash, outcome.action)

The decision what to do with each transaction is made by a ``choose_action`` callable.
The default :py:func:`default_recovery_policy` bumps fees when the market has moved,
re-broadcasts transactions lost by the peers and otherwise keeps waiting.
"""

import datetime
import enum
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.backend.base import ChainBackend
from eth_deploy.compat import native_datetime_utc_now, to_0x_hex
from eth_deploy.confirmation import ChainExecutionFailed
from eth_deploy.gas import MarketFees, fetch_market_fees
from eth_deploy.ledger import Deployment, DeploymentLedger
from eth_deploy.signer import SignerRegistry, UnknownSignerError
from eth_deploy.tx import decode_signed_transaction, send_and_map_errors, to_json_friendly_tx

logger = logging.getLogger(__name__)


#: Replacement transactions must pay at least this much more, geth default
FEE_BUMP_PERCENT = 10

#: Fields we keep when re-signing a decoded transaction
RESEND_FIELDS = ("from", "to", "nonce", "gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "data", "value", "chainId")


@dataclass
class PendingTransaction:
    """A broadcast transaction we have not seen confirmed yet."""

    #: Transaction hash, 0x prefixed
    tx_hash: str

    #: The transaction as we sent it: from, to, nonce, gas, fees, data, value
    transaction: dict

    #: Logical deployment name, if this transaction deploys a contract
    name: Optional[str] = None

    #: Signed raw bytes, when we signed locally
    raw_transaction: Optional[str] = None

    #: Deployment record snapshot to save when the transaction confirms
    deployment: Optional[dict] = None

    #: When we broadcast, UTC
    created_at: datetime.datetime = field(default_factory=native_datetime_utc_now)

    def to_json(self) -> dict:
        data = {
            "decoded": to_json_friendly_tx(self.transaction),
            "createdAt": self.created_at.isoformat(),
        }
        if self.name:
            data["name"] = self.name
        if self.raw_transaction:
            data["rawTx"] = self.raw_transaction
        if self.deployment:
            data["deployment"] = self.deployment
        return data

    @staticmethod
    def from_json(tx_hash: str, data: dict) -> "PendingTransaction":
        created_at = data.get("createdAt")
        return PendingTransaction(
            tx_hash=tx_hash,
            transaction=data.get("decoded") or {},
            name=data.get("name"),
            raw_transaction=data.get("rawTx"),
            deployment=data.get("deployment"),
            created_at=datetime.datetime.fromisoformat(created_at) if created_at else native_datetime_utc_now(),
        )

    def get_fee(self) -> Optional[int]:
        """Fee per gas this transaction offered.

        ``gasPrice`` for legacy transactions, ``maxFeePerGas`` for EIP-1559 transactions.
        """
        tx = self.transaction
        value = tx.get("gasPrice") or tx.get("maxFeePerGas")
        if value is None:
            return None
        return int(value, 16) if isinstance(value, str) else value

    def is_legacy(self) -> bool:
        return "gasPrice" in self.transaction


class PendingTransactionStore:
    """Persisted set of pending transactions, keyed by hash.

    :param path:
        File to write, ``None`` for in-memory only
    """

    def __init__(self, path: Path | None):
        self.path = Path(path) if path is not None else None
        self.entries: dict[str, PendingTransaction] = {}
        if self.path is not None and self.path.exists():
            self.load()

    def __len__(self):
        return len(self.entries)

    def load(self):
        data = json.loads(self.path.read_text())
        self.entries = {tx_hash: PendingTransaction.from_json(tx_hash, entry) for tx_hash, entry in data.items()}
        if self.entries:
            logger.info("Found %d pending transactions in %s", len(self.entries), self.path)

    def all(self) -> list[PendingTransaction]:
        return list(self.entries.values())

    def add(self, pending: PendingTransaction):
        self.entries[pending.tx_hash.lower()] = pending
        self._write()

    def remove(self, tx_hash: str):
        self.entries.pop(tx_hash.lower(), None)
        self._write()

    def _write(self):
        if self.path is None:
            return
        if not self.entries:
            if self.path.exists():
                self.path.unlink()
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps({h: p.to_json() for h, p in self.entries.items()}, indent=2))
        os.replace(tmp, self.path)


class RecoveryAction(enum.Enum):
    """What to do with a pending transaction."""

    #: Keep waiting for the original transaction
    wait = "wait"

    #: Resend with the same nonce and higher fees
    increase_fee = "increase_fee"

    #: Send the same transaction again
    rebroadcast = "rebroadcast"

    #: Forget the transaction
    abandon = "abandon"


@dataclass
class RecoveryReport:
    """What we know about a pending transaction, input to the ``choose_action`` callable."""

    pending: PendingTransaction

    #: Does any peer still know the transaction
    found: bool

    #: Current fee market
    market_fees: MarketFees

    #: How long ago we broadcast
    age: datetime.timedelta

    #: Already included in a block, only waiting for the receipt makes sense
    mined: bool = False

    def get_market_fee(self) -> int:
        """Market fee comparable to :py:meth:`PendingTransaction.get_fee`."""
        if self.pending.is_legacy():
            return self.market_fees.gas_price
        return self.market_fees.suggest_max_fee_per_gas()

    def is_underpriced(self) -> bool:
        fee = self.pending.get_fee()
        return fee is not None and fee < self.get_market_fee()

    def can_rebroadcast(self) -> bool:
        return bool(self.pending.raw_transaction or self.pending.transaction.get("from"))


@dataclass
class RecoveryOutcome:
    """What happened to a pending transaction."""

    tx_hash: str

    action: RecoveryAction

    #: Hash of the replacement transaction, if we sent one
    new_tx_hash: Optional[str] = None

    #: Receipt of the transaction we waited for
    receipt: Optional[dict] = None

    #: Deployment saved to the ledger
    deployment: Optional[Deployment] = None


def default_recovery_policy(report: RecoveryReport) -> RecoveryAction:
    """Non-interactive pending transaction policy.

    - Mined: wait for the receipt

    - Pending and underpriced: increase fee

    - Pending: wait

    - Lost by peers: rebroadcast if we can, otherwise abandon
    """
    if report.mined:
        return RecoveryAction.wait
    if report.found:
        if report.is_underpriced():
            return RecoveryAction.increase_fee
        return RecoveryAction.wait
    if report.can_rebroadcast():
        return RecoveryAction.rebroadcast
    return RecoveryAction.abandon


def bump_fee(old: int, market: int) -> int:
    """Replacement fee that nodes accept over the old one."""
    return max(market, old * (100 + FEE_BUMP_PERCENT) // 100 + 1)


def _to_int(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 16)
    return value


class PendingTransactionRecoverer:
    """Resolve every transaction in a :py:class:`PendingTransactionStore`.

    Each entry is removed from the store at the end of its iteration,
    no matter whether it was resolved or abandoned.

    :param choose_action:
        Callable deciding what to do with each pending transaction
    """

    def __init__(
        self,
        web3: Web3,
        backend: ChainBackend,
        ledger: DeploymentLedger,
        store: PendingTransactionStore,
        signers: SignerRegistry,
        choose_action: Callable[[RecoveryReport], RecoveryAction] = default_recovery_policy,
        poll_delay=datetime.timedelta(seconds=1),
    ):
        self.web3 = web3
        self.backend = backend
        self.ledger = ledger
        self.store = store
        self.signers = signers
        self.choose_action = choose_action
        self.poll_delay = poll_delay

    def deal_with_pending_transactions(self) -> list[RecoveryOutcome]:
        """Go through all pending transactions.

        Market fees are read once for the whole batch.
        """
        pending = self.store.all()
        if not pending:
            return []

        market_fees = fetch_market_fees(self.web3)
        logger.info("Dealing with %d pending transactions, market fees %s", len(pending), market_fees)

        outcomes = []
        for entry in pending:
            if entry.name:
                with self.ledger.lock(entry.name):
                    outcomes.append(self.recover(entry, market_fees))
            else:
                outcomes.append(self.recover(entry, market_fees))
        return outcomes

    def recover(self, entry: PendingTransaction, market_fees: MarketFees) -> RecoveryOutcome:
        """Resolve a single pending transaction."""
        tx = self.backend.get_transaction(entry.tx_hash)
        found = tx is not None
        report = RecoveryReport(
            pending=entry,
            found=found,
            mined=found and tx.get("blockNumber") is not None,
            market_fees=market_fees,
            age=native_datetime_utc_now() - entry.created_at,
        )

        if found:
            logger.info(
                "Transaction %s still pending after %s, it pays %s, market is %s",
                entry.tx_hash,
                report.age,
                entry.get_fee(),
                report.get_market_fee(),
            )
        else:
            logger.warning("Transaction %s cannot be found among peers", entry.tx_hash)

        action = self.choose_action(report)
        outcome = RecoveryOutcome(tx_hash=entry.tx_hash, action=action)
        logger.info("Pending transaction %s: %s", entry.tx_hash, action.value)

        try:
            tx_hash_to_wait = None
            if action == RecoveryAction.wait:
                tx_hash_to_wait = entry.tx_hash
            elif action == RecoveryAction.rebroadcast:
                tx_hash_to_wait = self.rebroadcast(entry)
            elif action == RecoveryAction.increase_fee:
                tx_hash_to_wait = self.increase_fee(entry, market_fees)

            if tx_hash_to_wait is not None:
                if tx_hash_to_wait.lower() != entry.tx_hash.lower():
                    outcome.new_tx_hash = tx_hash_to_wait
                self.wait_and_save(entry, tx_hash_to_wait, outcome)
        finally:
            self.store.remove(entry.tx_hash)

        return outcome

    def rebroadcast(self, entry: PendingTransaction) -> str:
        """Send the transaction again.

        Raw signed bytes are sent verbatim. Otherwise the decoded transaction is signed again.
        """
        if entry.raw_transaction:
            raw = HexBytes(entry.raw_transaction)
            tx_hash = send_and_map_errors(lambda: self.web3.eth.send_raw_transaction(raw), decode_signed_transaction(raw))
            tx_hash = to_0x_hex(tx_hash)
            if tx_hash.lower() != entry.tx_hash.lower():
                logger.error("Non matching transaction hashes after resubmitting: %s, expected %s", tx_hash, entry.tx_hash)
            return tx_hash
        return self.resend(entry, self._get_resend_tx(entry))

    def increase_fee(self, entry: PendingTransaction, market_fees: MarketFees) -> str:
        """Replace the transaction with the same nonce and higher fees.

        Legacy transactions stay legacy, EIP-1559 transactions stay EIP-1559.
        """
        tx = self._get_resend_tx(entry)
        if entry.is_legacy():
            tx["gasPrice"] = bump_fee(_to_int(tx["gasPrice"]), market_fees.gas_price)
        else:
            max_fee = bump_fee(_to_int(tx.get("maxFeePerGas")) or 0, market_fees.suggest_max_fee_per_gas())
            priority_fee = bump_fee(_to_int(tx.get("maxPriorityFeePerGas")) or 0, market_fees.suggest_max_priority_fee_per_gas())
            tx["maxFeePerGas"] = max_fee
            tx["maxPriorityFeePerGas"] = min(priority_fee, max_fee)
        return self.resend(entry, tx)

    def _get_resend_tx(self, entry: PendingTransaction) -> dict:
        if entry.raw_transaction:
            decoded = decode_signed_transaction(entry.raw_transaction)
            tx = {k: v for k, v in decoded.items() if k in RESEND_FIELDS}
            tx["from"] = entry.transaction.get("from")
        else:
            tx = {k: v for k, v in entry.transaction.items() if k in RESEND_FIELDS}
        assert tx.get("from"), f"Pending transaction {entry.tx_hash} does not tell its sender"
        for key in ("nonce", "gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "value", "chainId"):
            if key in tx:
                tx[key] = _to_int(tx[key])
        if isinstance(tx.get("to"), (bytes, bytearray)):
            tx["to"] = Web3.to_checksum_address(tx["to"]) if tx["to"] else None
        if "to" in tx and not tx["to"]:
            del tx["to"]
        return tx

    def resend(self, entry: PendingTransaction, tx: dict) -> str:
        signer = self.signers.get_signer(tx["from"])
        if not signer.can_sign():
            raise UnknownSignerError(tx)
        sent = self.backend.send_transaction(signer, tx)
        tx_hash = to_0x_hex(sent.tx_hash)
        self.store.add(
            PendingTransaction(
                tx_hash=tx_hash,
                transaction=tx,
                name=entry.name,
                raw_transaction=to_0x_hex(sent.raw_transaction) if sent.raw_transaction else None,
                deployment=entry.deployment,
            )
        )
        logger.info("New transaction submitted for nonce %s: %s", tx.get("nonce"), tx_hash)
        return tx_hash

    def wait_and_save(self, entry: PendingTransaction, tx_hash: str, outcome: RecoveryOutcome):
        """Wait the transaction and save the deployment record, if it was a successful deployment."""
        try:
            receipt = self.backend.wait_for_receipt(tx_hash, poll_delay=self.poll_delay)
        except ChainExecutionFailed as e:
            logger.error("Pending transaction %s failed on chain, not saving a deployment", e.tx_hash)
            outcome.receipt = e.receipt
            return
        finally:
            if tx_hash.lower() != entry.tx_hash.lower():
                self.store.remove(tx_hash)

        outcome.receipt = receipt
        if not entry.name:
            return

        address = self.backend.get_deployed_address(receipt)
        snapshot = dict(entry.deployment or {})
        if not address and not snapshot.get("address"):
            logger.warning("Transaction %s for %s did not create a contract", tx_hash, entry.name)
            return

        deployment = Deployment.from_json({"address": "", **snapshot})
        if not deployment.address:
            deployment.address = address
        deployment.receipt = to_json_friendly_tx(receipt)
        deployment.transaction_hash = to_0x_hex(receipt["transactionHash"])
        outcome.deployment = self.ledger.save(entry.name, deployment)
        logger.info("Recovered deployment %s at %s", entry.name, deployment.address)
