"""Pending transaction tracking and recovery."""
import datetime

from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.backend.evm import EVMBackend
from eth_deploy.compat import native_datetime_utc_now, to_0x_hex
from eth_deploy.deployments import PENDING_TRANSACTIONS_FILE, Deployments
from eth_deploy.gas import MarketFees
from eth_deploy.hotwallet import HotWallet
from eth_deploy.options import DeployOptions
from eth_deploy.pending import (
    PendingTransaction,
    PendingTransactionStore,
    RecoveryAction,
    RecoveryReport,
    bump_fee,
    default_recovery_policy,
)


def make_report(transaction: dict, found: bool, mined=False, raw_transaction=None, market_fees=None) -> RecoveryReport:
    pending = PendingTransaction(tx_hash="0x" + "01" * 32, transaction=transaction, raw_transaction=raw_transaction)
    return RecoveryReport(
        pending=pending,
        found=found,
        mined=mined,
        market_fees=market_fees or MarketFees(gas_price=10, base_fee=5, high_priority_fee=2),
        age=datetime.timedelta(minutes=5),
    )


def test_store_persists(tmp_path):
    """Entries survive a restart, and the file goes away when nothing is pending."""
    path = tmp_path / PENDING_TRANSACTIONS_FILE
    store = PendingTransactionStore(path)
    store.add(
        PendingTransaction(
            tx_hash="0xABCD",
            transaction={"from": "0x" + "11" * 20, "data": HexBytes("0x6001"), "nonce": 3},
            name="Foo",
            deployment={"abi": []},
        )
    )
    assert path.exists()

    reloaded = PendingTransactionStore(path)
    assert len(reloaded) == 1
    entry = reloaded.all()[0]
    assert entry.tx_hash == "0xabcd"
    assert entry.name == "Foo"
    assert entry.transaction["data"] == "0x6001"
    assert entry.transaction["nonce"] == 3
    assert entry.deployment == {"abi": []}

    reloaded.remove("0xAbCd")
    assert len(reloaded) == 0
    assert not path.exists()


def test_pending_fee():
    assert PendingTransaction("0x01", {"gasPrice": "0x0a"}).get_fee() == 10
    assert PendingTransaction("0x01", {"maxFeePerGas": 7}).get_fee() == 7
    assert PendingTransaction("0x01", {}).get_fee() is None
    assert PendingTransaction("0x01", {"gasPrice": 1}).is_legacy()


def test_policy():
    """Default policy for each situation."""
    assert default_recovery_policy(make_report({"maxFeePerGas": 1}, found=True, mined=True)) == RecoveryAction.wait
    # Market wants 2 * 5 + 2 = 12
    assert default_recovery_policy(make_report({"maxFeePerGas": 11}, found=True)) == RecoveryAction.increase_fee
    assert default_recovery_policy(make_report({"maxFeePerGas": 12}, found=True)) == RecoveryAction.wait
    assert default_recovery_policy(make_report({"gasPrice": 9}, found=True)) == RecoveryAction.increase_fee
    assert default_recovery_policy(make_report({"from": "0x" + "11" * 20}, found=False)) == RecoveryAction.rebroadcast
    assert default_recovery_policy(make_report({}, found=False, raw_transaction="0x01")) == RecoveryAction.rebroadcast
    assert default_recovery_policy(make_report({}, found=False)) == RecoveryAction.abandon


def test_bump_fee():
    """Replacement pays at least 10% more, or the market price."""
    assert bump_fee(100, 50) == 111
    assert bump_fee(100, 200) == 200


def test_market_fees_without_fee_history():
    fees = MarketFees(gas_price=10)
    assert fees.suggest_max_fee_per_gas() == 10
    assert fees.suggest_max_priority_fee_per_gas() == 10


def test_recover_mined_deployment(web3: Web3, deployments: Deployments, pending_store: PendingTransactionStore, deployer: str, artifact_store):
    """We crashed after broadcasting a deployment, but it was mined meanwhile."""
    bytecode = artifact_store.get_artifact("Answer").bytecode
    tx_hash = web3.eth.send_transaction({"from": deployer, "data": bytecode})
    receipt = web3.eth.wait_for_transaction_receipt(tx_hash)

    pending_store.add(
        PendingTransaction(
            tx_hash=to_0x_hex(tx_hash),
            transaction={"from": deployer, "data": bytecode},
            name="Answer",
            deployment={"address": "", "abi": artifact_store.get_artifact("Answer").abi, "args": []},
        )
    )

    outcomes = deployments.deal_with_pending_transactions()
    assert len(outcomes) == 1
    assert outcomes[0].action == RecoveryAction.wait
    assert outcomes[0].deployment.address == receipt["contractAddress"]
    assert len(pending_store) == 0

    # The recovered deployment is reused
    block_number = web3.eth.block_number
    result = deployments.deploy("Answer", DeployOptions(sender="deployer"))
    assert not result.newly_deployed
    assert result.address == receipt["contractAddress"]
    assert deployments.read("Answer", None, "answer") == 42
    assert web3.eth.block_number == block_number


def test_rebroadcast_signed_transaction(web3: Web3, deployments: Deployments, pending_store: PendingTransactionStore, artifact_store):
    """We crashed after signing, the transaction never reached the network."""
    wallet = HotWallet.create_for_testing(web3)
    bytecode = artifact_store.get_artifact("Answer").bytecode
    tx = {
        "from": wallet.address,
        "data": bytecode,
        "gas": 200_000,
        "maxFeePerGas": 10 * 10**9,
        "maxPriorityFeePerGas": 10**9,
        "chainId": web3.eth.chain_id,
        "nonce": wallet.allocate_nonce(),
        "value": 0,
    }
    signed = wallet.sign_transaction(tx)
    pending_store.add(
        PendingTransaction(
            tx_hash=to_0x_hex(signed.hash),
            transaction=tx,
            name="Answer",
            raw_transaction=to_0x_hex(signed.raw_transaction),
            deployment={"address": "", "abi": artifact_store.get_artifact("Answer").abi},
        )
    )

    outcomes = deployments.deal_with_pending_transactions()
    assert outcomes[0].action == RecoveryAction.rebroadcast
    assert outcomes[0].receipt["status"] == 1
    address = outcomes[0].deployment.address
    assert deployments.get("Answer").address == address
    assert len(web3.eth.get_code(address)) > 0
    assert len(pending_store) == 0


def test_abandon_lost_transaction(deployments: Deployments, pending_store: PendingTransactionStore):
    """A lost transaction we cannot send again is forgotten."""
    pending_store.add(PendingTransaction(tx_hash="0x" + "ab" * 32, transaction={}, name="Lost"))

    outcomes = deployments.deal_with_pending_transactions()
    assert outcomes[0].action == RecoveryAction.abandon
    assert outcomes[0].receipt is None
    assert deployments.get_or_none("Lost") is None
    assert len(pending_store) == 0


def test_custom_policy(web3: Web3, ledger, signers, pending_store: PendingTransactionStore, deployer: str):
    """The caller decides what to do, e.g. after asking the user."""
    tx_hash = web3.eth.send_transaction({"from": deployer, "to": deployer, "value": 1})
    web3.eth.wait_for_transaction_receipt(tx_hash)
    pending_store.add(PendingTransaction(tx_hash=to_0x_hex(tx_hash), transaction={"from": deployer}, created_at=native_datetime_utc_now()))

    reports = []

    def choose_action(report: RecoveryReport) -> RecoveryAction:
        reports.append(report)
        return RecoveryAction.abandon

    deployments = Deployments(web3, EVMBackend(web3), ledger, signers, pending_store=pending_store, choose_action=choose_action)
    outcomes = deployments.deal_with_pending_transactions()
    assert outcomes[0].action == RecoveryAction.abandon
    assert reports[0].found
    assert reports[0].mined
    assert len(pending_store) == 0


def test_no_tracking_no_recovery(web3: Web3, ledger, signers):
    deployments = Deployments(web3, EVMBackend(web3), ledger, signers)
    assert deployments.deal_with_pending_transactions() == []

