"""Deterministic address derivation."""
import pytest
from hexbytes import HexBytes
from web3 import EthereumTesterProvider, Web3

from eth_deploy.artifacts import ExtendedArtifact
from eth_deploy.backend.base import get_transaction_data_field, normalise_salt
from eth_deploy.backend.evm import EVMBackend, compute_create2_address
from eth_deploy.factory import DeploymentFactory

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@pytest.mark.parametrize(
    "factory,salt,init_code,expected",
    [
        # https://eips.ethereum.org/EIPS/eip-1014 examples 0, 1 and 3
        (ZERO_ADDRESS, "0x00", "0x00", "0x4D1A2e2bB4F88F0250f26Ffff098B0b30B26BF38"),
        ("0xdeadbeef00000000000000000000000000000000", "0x00", "0x00", "0xB928f69Bb1D91Cd65274e3c79d8986362984fDA3"),
        (ZERO_ADDRESS, "0x00", "0xdeadbeef", "0x70f2b2914A2a4b783FaEFb75f459A580616Fcb5e"),
    ],
)
def test_eip_1014_vectors(factory, salt, init_code, expected):
    assert compute_create2_address(factory, normalise_salt(salt), HexBytes(init_code)) == expected


def test_tron_prefix_gives_different_address():
    """TVM uses 0x41 instead of 0xff."""
    evm = compute_create2_address(ZERO_ADDRESS, normalise_salt(None), b"\x00")
    tvm = compute_create2_address(ZERO_ADDRESS, normalise_salt(None), b"\x00", prefix=b"\x41")
    assert evm != tvm


def test_normalise_salt():
    assert normalise_salt(None) == HexBytes(b"\x00" * 32)
    assert normalise_salt(True) == HexBytes(b"\x00" * 32)
    assert normalise_salt("0x01") == HexBytes(b"\x00" * 31 + b"\x01")
    assert normalise_salt(b"\x01" * 32) == HexBytes(b"\x01" * 32)

    with pytest.raises(ValueError):
        normalise_salt(b"\x01" * 33)


def test_transaction_data_field():
    """Nodes disagree whether the payload is input or data."""
    assert get_transaction_data_field({"input": HexBytes("0xABCD")}) == "0xabcd"
    assert get_transaction_data_field({"data": "ABCD"}) == "0xabcd"
    assert get_transaction_data_field({}) == "0x"


def test_factory_predicts_address_without_chain():
    """The predicted address depends only on the factory, the salt and the init code."""
    web3 = Web3(EthereumTesterProvider())
    backend = EVMBackend(web3)
    artifact = ExtendedArtifact(
        contract_name="Foo",
        abi=[{"type": "constructor", "inputs": [{"type": "uint256"}, {"type": "uint256"}]}],
        bytecode="0x600180600b6000396000f300",
    )
    factory = DeploymentFactory(backend, artifact, artifact.bytecode, [1, 2])
    tx = factory.get_deploy_transaction()

    salt = normalise_salt("0x01")
    factory_address = "0x4e59b44847b379578588920ca78fbf26c0b4956c"
    expected = compute_create2_address(factory_address, salt, tx["data"])
    assert factory.get_create2_address(factory_address, salt) == expected

    # Different constructor arguments, different address
    other = DeploymentFactory(backend, artifact, artifact.bytecode, [1, 3])
    assert other.get_create2_address(factory_address, salt) != expected


def test_compare_deployment_transaction():
    web3 = Web3(EthereumTesterProvider())
    backend = EVMBackend(web3)
    artifact = ExtendedArtifact(contract_name="Foo", abi=[], bytecode="0x600180600b6000396000f300")
    factory = DeploymentFactory(backend, artifact, artifact.bytecode)
    assert factory.compare_deployment_transaction({"input": HexBytes("0x600180600b6000396000f300")}) is False
    assert factory.compare_deployment_transaction({"input": HexBytes("0x600280600b6000396000f35b00")}) is True
