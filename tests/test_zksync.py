"""zkSync deployment payloads and addresses."""
import hashlib

import eth_abi
import pytest
from eth_utils import keccak
from hexbytes import HexBytes
from web3 import EthereumTesterProvider, Web3

from eth_deploy.artifacts import ArtifactStore, ExtendedArtifact
from eth_deploy.backend.base import normalise_salt
from eth_deploy.backend.zksync import (
    CONTRACT_DEPLOYED_TOPIC,
    CONTRACT_DEPLOYER_ADDRESS,
    CREATE_SELECTOR,
    InvalidBytecode,
    ZkSyncBackend,
    compute_zksync_create2_address,
    extract_factory_deps,
    hash_bytecode,
)
from eth_deploy.signer import UnknownSigner, UnknownSignerError

#: One 32 byte word
CHILD_BYTECODE = "0x" + "00" * 31 + "01"

PARENT_BYTECODE = "0x" + "00" * 31 + "02"

#: Three words
GRANDCHILD_BYTECODE = "0x" + "00" * 95 + "03"


@pytest.fixture()
def artifact_store() -> ArtifactStore:
    """Parent deploys child, child deploys grandchild, grandchild deploys child again."""
    store = ArtifactStore()
    store.add_artifact(
        ExtendedArtifact(
            contract_name="Parent",
            source_name="contracts/Parent.sol",
            abi=[{"type": "constructor", "inputs": [{"type": "uint256"}]}],
            bytecode=PARENT_BYTECODE,
            factory_deps={"0x01": "contracts/Child.sol:Child"},
        )
    )
    store.add_artifact(
        ExtendedArtifact(
            contract_name="Child",
            source_name="contracts/Child.sol",
            abi=[],
            bytecode=CHILD_BYTECODE,
            factory_deps={"0x02": "contracts/Grandchild.sol:Grandchild"},
        )
    )
    store.add_artifact(
        ExtendedArtifact(
            contract_name="Grandchild",
            source_name="contracts/Grandchild.sol",
            abi=[],
            bytecode=GRANDCHILD_BYTECODE,
            factory_deps={"0x03": "contracts/Child.sol:Child"},
        )
    )
    return store


@pytest.fixture()
def backend(artifact_store) -> ZkSyncBackend:
    return ZkSyncBackend(Web3(EthereumTesterProvider()), artifact_store)


def test_hash_bytecode():
    """Version, zero, word count, then the tail of sha256."""
    bytecode = HexBytes(GRANDCHILD_BYTECODE)
    bytecode_hash = hash_bytecode(bytecode)
    assert len(bytecode_hash) == 32
    assert bytecode_hash[:4] == HexBytes("0x01000003")
    assert bytecode_hash[4:] == hashlib.sha256(bytecode).digest()[4:]


@pytest.mark.parametrize("bytecode", ["0x" + "00" * 33, "0x" + "00" * 64])
def test_hash_bytecode_invalid(bytecode):
    """Bytecode must be an odd number of 32 byte words."""
    with pytest.raises(InvalidBytecode):
        hash_bytecode(bytecode)


def test_extract_factory_deps_cycle(artifact_store):
    """Dependency cycles are visited once."""
    parent = artifact_store.get_artifact("Parent")
    deps = extract_factory_deps(parent, artifact_store.get_artifact)
    assert deps == [CHILD_BYTECODE, GRANDCHILD_BYTECODE]


def test_build_deploy_transaction(backend, artifact_store):
    """Deployment is a ContractDeployer.create() call, the bytecode travels as a factory dependency."""
    parent = artifact_store.get_artifact("Parent")
    tx = backend.build_deploy_transaction(parent, parent.bytecode, [7], {"from": "0x" + "11" * 20})
    assert tx["to"] == CONTRACT_DEPLOYER_ADDRESS
    assert tx["data"][:4] == CREATE_SELECTOR

    salt, bytecode_hash, constructor_input = eth_abi.decode(["bytes32", "bytes32", "bytes"], bytes(tx["data"][4:]))
    assert salt == b"\x00" * 32
    assert bytecode_hash == hash_bytecode(PARENT_BYTECODE)
    assert constructor_input == eth_abi.encode(["uint256"], [7])

    assert tx["eip712Meta"]["factoryDeps"] == [CHILD_BYTECODE, GRANDCHILD_BYTECODE, PARENT_BYTECODE]


def test_create2_address(backend, artifact_store):
    """zkSync CREATE2 commits to the bytecode hash and the constructor input separately."""
    parent = artifact_store.get_artifact("Parent")
    tx = backend.build_deploy_transaction(parent, parent.bytecode, [7], {})
    factory = "0x" + "22" * 20
    salt = normalise_salt("0x01")

    bytecode_hash = hash_bytecode(PARENT_BYTECODE)
    constructor_input = eth_abi.encode(["uint256"], [7])
    preimage = keccak(text="zksyncCreate2") + b"\x00" * 12 + bytes.fromhex("22" * 20) + salt + bytecode_hash + keccak(constructor_input)
    expected = Web3.to_checksum_address(keccak(preimage)[12:])

    assert compute_zksync_create2_address(factory, bytecode_hash, salt, constructor_input) == expected
    assert backend.compute_create2_address(factory, salt, tx) == expected

    other = backend.build_deploy_transaction(parent, parent.bytecode, [8], {})
    assert backend.compute_create2_address(factory, salt, other) != expected


def test_equivalence_checks_factory_deps(backend, artifact_store):
    """Same call data but changed dependencies needs a redeployment."""
    parent = artifact_store.get_artifact("Parent")
    tx = backend.build_deploy_transaction(parent, parent.bytecode, [7], {})
    historical_tx = {"input": tx["data"]}

    class _Record:
        factory_deps = tx["eip712Meta"]["factoryDeps"]

    assert backend.is_equivalent_transaction(historical_tx, tx, _Record())

    _Record.factory_deps = [PARENT_BYTECODE]
    assert not backend.is_equivalent_transaction(historical_tx, tx, _Record())


def test_deployed_address_from_logs(backend):
    """The last ContractDeployed event is our contract."""
    first = "0x" + "33" * 20
    second = "0x" + "44" * 20
    receipt = {
        "contractAddress": None,
        "logs": [
            {"address": CONTRACT_DEPLOYER_ADDRESS, "topics": [CONTRACT_DEPLOYED_TOPIC, b"\x00" * 32, b"\x00" * 32, HexBytes(first).rjust(32, b"\x00")]},
            {"address": CONTRACT_DEPLOYER_ADDRESS, "topics": [CONTRACT_DEPLOYED_TOPIC, b"\x00" * 32, b"\x00" * 32, HexBytes(second).rjust(32, b"\x00")]},
        ],
    }
    assert backend.get_deployed_address(receipt) == Web3.to_checksum_address(second)


def test_local_keys_cannot_send(backend):
    """Only node managed accounts can send zkSync transactions."""
    with pytest.raises(UnknownSignerError) as exc_info:
        backend.send_transaction(UnknownSigner("0x" + "55" * 20), {"to": CONTRACT_DEPLOYER_ADDRESS, "data": b""})
    assert exc_info.value.data["from"] == "0x" + "55" * 20
