"""Idempotent deployments against EthereumTester."""
import dataclasses
import json
import secrets

import pytest
from web3 import Web3

from eth_deploy.compat import to_0x_hex
from eth_deploy.confirmation import ChainExecutionFailed
from eth_deploy.deployments import Deployments
from eth_deploy.ledger import DeploymentLedger
from eth_deploy.options import DeployOptions, TxOptions
from eth_deploy.reconcile import AlreadyDeployedError, NodeDesyncError
from eth_deploy.signer import UnknownSignerError
from eth_deploy.tx import TransactionAlreadyKnown


@pytest.fixture()
def stranger(web3: Web3, deployer: str) -> str:
    """An account with some ETH whose keys we do not have."""
    address = Web3.to_checksum_address("0x" + secrets.token_hex(20))
    tx_hash = web3.eth.send_transaction({"from": deployer, "to": address, "value": 10**18})
    web3.eth.wait_for_transaction_receipt(tx_hash)
    return address


def test_deploy_is_idempotent(web3: Web3, deployments: Deployments, network_path):
    """The second run with the same options does not send anything."""
    options = DeployOptions(sender="deployer", args=[1, 2])
    result = deployments.deploy("Foo", options)
    assert result.newly_deployed
    assert len(web3.eth.get_code(result.address)) > 0

    block_number = web3.eth.block_number
    again = deployments.deploy("Foo", options)
    assert not again.newly_deployed
    assert again.address == result.address
    assert web3.eth.block_number == block_number

    # Hardhat Deploy compatible record on the disk
    data = json.loads((network_path / "Foo.json").read_text())
    assert data["address"] == result.address
    assert data["args"] == [1, 2]
    assert data["transactionHash"] == result.deployment.transaction_hash
    assert (network_path / ".chainId").read_text() == str(web3.eth.chain_id)


def test_redeploy_on_change(deployments: Deployments):
    """Changed bytecode or constructor arguments deploy a new contract."""
    first = deployments.deploy("Foo", DeployOptions(sender="deployer", args=[1, 2]))

    changed_args = deployments.deploy("Foo", DeployOptions(sender="deployer", args=[1, 3]))
    assert changed_args.newly_deployed
    assert changed_args.address != first.address

    changed_code = deployments.deploy("Foo", DeployOptions(sender="deployer", contract="Foo2", args=[1, 3]))
    assert changed_code.newly_deployed
    assert changed_code.address != changed_args.address
    assert deployments.get("Foo").num_deployments == 3


def test_skip_if_already_deployed(web3: Web3, deployments: Deployments):
    first = deployments.deploy("Foo", DeployOptions(sender="deployer", args=[1, 2]))
    block_number = web3.eth.block_number
    result = deployments.deploy("Foo", DeployOptions(sender="deployer", contract="Foo2", args=[1, 2], skip_if_already_deployed=True))
    assert not result.newly_deployed
    assert result.address == first.address
    assert web3.eth.block_number == block_number


def test_fetch_if_different(deployments: Deployments):
    options = DeployOptions(sender="deployer", args=[1, 2])
    diff = deployments.fetch_if_different("Foo", options)
    assert diff.differences
    assert diff.address is None

    result = deployments.deploy("Foo", options)
    diff = deployments.fetch_if_different("Foo", options)
    assert not diff.differences
    assert diff.address == result.address

    assert deployments.fetch_if_different("Foo", DeployOptions(sender="deployer", contract="Foo2", args=[1, 2])).differences


def test_node_desync(deployments: Deployments):
    """We have a record, but the node has never heard of its transaction."""
    deployments.deploy("Foo", DeployOptions(sender="deployer", args=[1, 2]))
    record = deployments.get("Foo")
    deployments.ledger.save("Foo", dataclasses.replace(record, receipt=None, transaction_hash="0x" + "12" * 32))

    with pytest.raises(NodeDesyncError):
        deployments.fetch_if_different("Foo", DeployOptions(sender="deployer", args=[1, 2]))


def test_records_survive_restart(web3: Web3, deployments: Deployments, network_path, artifact_store):
    """A new process reads the same records and does not redeploy."""
    result = deployments.deploy("Foo", DeployOptions(sender="deployer", args=[1, 2]))

    ledger = DeploymentLedger(network_path, chain_id=web3.eth.chain_id, artifact_store=artifact_store)
    restarted = Deployments(web3, deployments.backend, ledger, deployments.signers)
    block_number = web3.eth.block_number
    again = restarted.deploy("Foo", DeployOptions(sender="deployer", args=[1, 2]))
    assert not again.newly_deployed
    assert again.address == result.address
    assert web3.eth.block_number == block_number


def test_wrong_chain_refused(web3: Web3, deployments: Deployments, network_path, artifact_store):
    deployments.deploy("Foo", DeployOptions(sender="deployer", args=[1, 2]))
    with pytest.raises(ValueError):
        DeploymentLedger(network_path, chain_id=web3.eth.chain_id + 1, artifact_store=artifact_store)


def test_execute_and_read(deployments: Deployments):
    deployments.deploy("Answer", DeployOptions(sender="deployer"))
    assert deployments.read("Answer", None, "answer") == 42

    receipt = deployments.execute("Answer", TxOptions(sender="deployer"), "setAnswer", 5)
    assert receipt["status"] == 1

    with pytest.raises(ValueError):
        deployments.execute("Answer", TxOptions(sender="deployer"), "setAnswer")

    with pytest.raises(ValueError):
        deployments.read("Answer", None, "question")


def test_unknown_signer_deploy(web3: Web3, deployments: Deployments, stranger: str):
    """We get the deployment transaction to hand over to whoever has the keys."""
    block_number = web3.eth.block_number
    tx = deployments.catch_unknown_signer(lambda: deployments.deploy("Foo", DeployOptions(sender=stranger, args=[1, 2])))
    assert tx["from"] == stranger
    assert tx["to"] is None
    assert tx["data"].startswith("0x600180600b6000396000f300")
    assert web3.eth.block_number == block_number
    assert deployments.get_or_none("Foo") is None


def test_unknown_signer_execute(web3: Web3, deployments: Deployments, stranger: str):
    answer = deployments.deploy("Answer", DeployOptions(sender="deployer"))

    with pytest.raises(UnknownSignerError) as exc_info:
        deployments.execute("Answer", TxOptions(sender=stranger), "setAnswer", 1)
    assert exc_info.value.data["contract"] == {"name": "Answer", "method": "setAnswer", "args": [1]}

    tx = deployments.catch_unknown_signer(lambda: deployments.execute("Answer", TxOptions(sender=stranger), "setAnswer", 1))
    assert tx["to"] == answer.address
    assert tx["data"].startswith(to_0x_hex(Web3.keccak(text="setAnswer(uint256)")[:4]))

    # Nothing to hand over when we can sign
    assert deployments.catch_unknown_signer(lambda: deployments.execute("Answer", TxOptions(sender="deployer"), "setAnswer", 1)) is None


def test_raw_tx(web3: Web3, deployments: Deployments, stranger: str):
    balance = web3.eth.get_balance(stranger)
    receipt = deployments.raw_tx(TxOptions(sender="deployer"), to=stranger, value=1000)
    assert receipt["status"] == 1
    assert web3.eth.get_balance(stranger) == balance + 1000


def test_deterministic_deployment(web3: Web3, deployments: Deployments, tmp_path, artifact_store):
    """CREATE2 factory is set up on the first use, the contract lands at the predicted address."""
    options = DeployOptions(sender="deployer", args=[1, 2], deterministic_deployment="0x01")
    prediction = deployments.deterministic("Foo", options)
    assert len(web3.eth.get_code(prediction.address)) == 0

    result = prediction.deploy()
    assert result.newly_deployed
    assert result.address == prediction.address
    assert len(web3.eth.get_code(prediction.address)) > 0
    assert len(web3.eth.get_code(deployments.engine.get_create2_factory_address())) > 0

    # Another project on the same chain adopts the existing contract without sending anything
    other_ledger = DeploymentLedger(tmp_path / "other", chain_id=web3.eth.chain_id, artifact_store=artifact_store)
    other = Deployments(web3, deployments.backend, other_ledger, deployments.signers)
    block_number = web3.eth.block_number
    adopted = other.deploy("Foo", options)
    assert not adopted.newly_deployed
    assert adopted.address == prediction.address
    assert other.get("Foo").transaction_hash is None
    assert web3.eth.block_number == block_number


def test_failed_deployment_not_recorded(web3: Web3, deployments: Deployments, pending_store):
    """Reverted deployment is an error, and leaves no record or pending transaction behind."""
    with pytest.raises(ChainExecutionFailed) as exc_info:
        deployments.deploy("Reverter", DeployOptions(sender="deployer", gas_limit=100_000))
    assert exc_info.value.receipt["status"] == 0
    assert deployments.get_or_none("Reverter") is None
    assert len(pending_store) == 0


def test_already_known_broadcast(web3: Web3, deployments: Deployments, deployer: str, pending_store, monkeypatch):
    """Node refusing a duplicate broadcast is reported as such, not as a generic failure."""

    def send_transaction(tx):
        raise ValueError({"code": -32000, "message": "already known"})

    monkeypatch.setattr(web3.eth, "send_transaction", send_transaction)
    with pytest.raises(TransactionAlreadyKnown) as exc_info:
        deployments.deploy("Foo", DeployOptions(sender="deployer", args=[1, 2], gas_limit=100_000))
    assert exc_info.value.tx["from"] == deployer
    assert deployments.get_or_none("Foo") is None
    assert len(pending_store) == 0


def test_fails_on_existing_deterministic(deployments: Deployments):
    options = DeployOptions(sender="deployer", args=[1, 2], deterministic_deployment="0x02")
    result = deployments.deploy("Foo", options)
    assert result.newly_deployed

    with pytest.raises(AlreadyDeployedError) as exc_info:
        deployments.engine.deploy_one("Foo", options, fails_on_existing_deterministic=True)
    assert exc_info.value.address == result.address

    # Adopting is still the default
    assert deployments.engine.deploy_one("Foo", options).address == result.address


def test_explicit_nonce(web3: Web3, deployments: Deployments, deployer: str, stranger: str):
    """Explicit nonce is used as is, block tags are resolved."""
    engine = deployments.engine
    nonce = web3.eth.get_transaction_count(deployer)

    tx = engine.populate_transaction({"to": stranger, "value": 1}, deployer, TxOptions(nonce=nonce + 5, gas_limit=21_000))
    assert tx["nonce"] == nonce + 5

    tx = engine.populate_transaction({"to": stranger, "value": 1}, deployer, TxOptions(nonce="pending", gas_limit=21_000))
    assert tx["nonce"] == nonce

    receipt = deployments.raw_tx(TxOptions(sender="deployer", nonce=nonce), to=stranger, value=1)
    assert receipt["status"] == 1
    assert web3.eth.get_transaction(receipt["transactionHash"])["nonce"] == nonce


def test_estimated_gas_limit_caps_padding(deployments: Deployments, deployer: str, stranger: str):
    """Padding on top of the estimate never goes above the configured cap."""
    engine = deployments.engine
    estimate = engine.populate_transaction({"to": stranger, "value": 1}, deployer, TxOptions())["gas"]

    padded = engine.populate_transaction({"to": stranger, "value": 1}, deployer, TxOptions(estimate_gas_extra=1000))
    assert padded["gas"] == estimate + 1000

    capped = engine.populate_transaction({"to": stranger, "value": 1}, deployer, TxOptions(estimate_gas_extra=1_000_000, estimated_gas_limit=50_000))
    assert capped["gas"] == 50_000

    explicit = engine.populate_transaction({"to": stranger, "value": 1}, deployer, TxOptions(gas_limit=30_000, estimate_gas_extra=1_000_000))
    assert explicit["gas"] == 30_000
