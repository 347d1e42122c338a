"""Shared fixtures.

Contracts used in the tests are tiny hand assembled EVM programs,
so no Solidity compiler is needed to run the test suite.
"""
import datetime
import json
from pathlib import Path

import pytest
from web3 import EthereumTesterProvider, Web3

from eth_deploy.artifacts import ArtifactStore
from eth_deploy.backend.evm import EVMBackend
from eth_deploy.deployments import PENDING_TRANSACTIONS_FILE, Deployments
from eth_deploy.ledger import DeploymentLedger
from eth_deploy.pending import PendingTransactionStore
from eth_deploy.signer import SignerRegistry

#: Deploys one byte runtime ``0x00``
FOO_BYTECODE = "0x600180600b6000396000f300"

#: Same as Foo, but a different program
FOO2_BYTECODE = "0x600280600b6000396000f35b00"

#: Runtime returns 42 for any call
ANSWER_BYTECODE = "0x600a80600b6000396000f3602a60005260206000f3"

#: Init code reverts, the deployment fails on chain
REVERTER_BYTECODE = "0x60006000fd"

#: Stores the second constructor argument to the EIP-1967 admin slot, runtime ``0x00``
FAKE_PROXY_BYTECODE = (
    "0x6020610059600039600051"
    "7fb53127684a568b3173ae13b9f8a6016e243e63b6e8ee1178d6a717850b5d6103"
    "55600180603860003960"
    "00f300"
)

#: Stores the constructor argument to slot 0, runtime returns slot 0 for any call
FAKE_PROXY_ADMIN_BYTECODE = "0x60206023600039600051600055600b8060186000396000f360005460005260206000f3"

#: Runtime returns 43 for any call
ANSWER2_BYTECODE = "0x600a80600b6000396000f3602b60005260206000f3"

FOO_ABI = [
    {
        "type": "constructor",
        "inputs": [{"name": "a", "type": "uint256"}, {"name": "b", "type": "uint256"}],
        "stateMutability": "nonpayable",
    },
]

ANSWER_ABI = [
    {"type": "function", "name": "answer", "inputs": [], "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view"},
    {"type": "function", "name": "setAnswer", "inputs": [{"name": "value", "type": "uint256"}], "outputs": [], "stateMutability": "nonpayable"},
]

FAKE_PROXY_ABI = [
    {
        "type": "constructor",
        "inputs": [
            {"name": "implementationAddress", "type": "address"},
            {"name": "ownerAddress", "type": "address"},
            {"name": "data", "type": "bytes"},
        ],
        "stateMutability": "payable",
    },
    {"type": "function", "name": "upgradeTo", "inputs": [{"name": "newImplementation", "type": "address"}], "outputs": [], "stateMutability": "nonpayable"},
    {
        "type": "function",
        "name": "upgradeToAndCall",
        "inputs": [{"name": "newImplementation", "type": "address"}, {"name": "data", "type": "bytes"}],
        "outputs": [],
        "stateMutability": "payable",
    },
]

TRANSPARENT_PROXY_ABI = [
    {
        "type": "constructor",
        "inputs": [
            {"name": "_logic", "type": "address"},
            {"name": "initialOwner", "type": "address"},
            {"name": "_data", "type": "bytes"},
        ],
        "stateMutability": "payable",
    },
]

PROXY_ADMIN_ABI = [
    {"type": "constructor", "inputs": [{"name": "initialOwner", "type": "address"}], "stateMutability": "nonpayable"},
    {"type": "function", "name": "owner", "inputs": [], "outputs": [{"name": "", "type": "address"}], "stateMutability": "view"},
    {
        "type": "function",
        "name": "upgrade",
        "inputs": [{"name": "proxy", "type": "address"}, {"name": "implementation", "type": "address"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "upgradeAndCall",
        "inputs": [{"name": "proxy", "type": "address"}, {"name": "implementation", "type": "address"}, {"name": "data", "type": "bytes"}],
        "outputs": [],
        "stateMutability": "payable",
    },
]

ERC1967_PROXY_ABI = [
    {
        "type": "constructor",
        "inputs": [{"name": "implementation", "type": "address"}, {"name": "_data", "type": "bytes"}],
        "stateMutability": "payable",
    },
]

#: Implementation carries the upgrade functions
UUPS_IMPLEMENTATION_ABI = [
    {"type": "function", "name": "initialize", "inputs": [], "outputs": [], "stateMutability": "nonpayable"},
    {"type": "function", "name": "upgradeTo", "inputs": [{"name": "newImplementation", "type": "address"}], "outputs": [], "stateMutability": "nonpayable"},
    {
        "type": "function",
        "name": "upgradeToAndCall",
        "inputs": [{"name": "newImplementation", "type": "address"}, {"name": "data", "type": "bytes"}],
        "outputs": [],
        "stateMutability": "payable",
    },
]


def one_byte_runtime(value: int) -> str:
    """Init code deploying a one byte runtime. Distinct bytes give distinct CREATE2 addresses."""
    return f"0x600180600b6000396000f3{value:02x}"


FACET_CUT_TUPLE = {
    "name": "_diamondCut",
    "type": "tuple[]",
    "components": [
        {"name": "facetAddress", "type": "address"},
        {"name": "action", "type": "uint8"},
        {"name": "functionSelectors", "type": "bytes4[]"},
    ],
}

#: Diamond runtime only answers the owner stored by the constructor, see ``FAKE_PROXY_ADMIN_BYTECODE``
DIAMOND_ABI = [
    {
        "type": "constructor",
        "inputs": [
            {"name": "_contractOwner", "type": "address"},
            FACET_CUT_TUPLE,
            {
                "name": "_initializations",
                "type": "tuple[]",
                "components": [{"name": "initContract", "type": "address"}, {"name": "initData", "type": "bytes"}],
            },
        ],
        "stateMutability": "payable",
    },
]

DIAMOND_CUT_FACET_ABI = [
    {
        "type": "function",
        "name": "diamondCut",
        "inputs": [FACET_CUT_TUPLE, {"name": "_init", "type": "address"}, {"name": "_calldata", "type": "bytes"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
]

OWNERSHIP_FACET_ABI = [
    {"type": "function", "name": "owner", "inputs": [], "outputs": [{"name": "owner_", "type": "address"}], "stateMutability": "view"},
    {"type": "function", "name": "transferOwnership", "inputs": [{"name": "_newOwner", "type": "address"}], "outputs": [], "stateMutability": "nonpayable"},
]

DIAMOND_LOUPE_FACET_ABI = [
    {
        "type": "function",
        "name": "facets",
        "inputs": [],
        "outputs": [
            {
                "name": "facets_",
                "type": "tuple[]",
                "components": [{"name": "facetAddress", "type": "address"}, {"name": "functionSelectors", "type": "bytes4[]"}],
            }
        ],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "facetFunctionSelectors",
        "inputs": [{"name": "_facet", "type": "address"}],
        "outputs": [{"name": "facetFunctionSelectors_", "type": "bytes4[]"}],
        "stateMutability": "view",
    },
    {"type": "function", "name": "facetAddresses", "inputs": [], "outputs": [{"name": "facetAddresses_", "type": "address[]"}], "stateMutability": "view"},
    {
        "type": "function",
        "name": "facetAddress",
        "inputs": [{"name": "_functionSelector", "type": "bytes4"}],
        "outputs": [{"name": "facetAddress_", "type": "address"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "supportsInterface",
        "inputs": [{"name": "_interfaceId", "type": "bytes4"}],
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
    },
]

DIAMOND_ERC165_INIT_ABI = [
    {
        "type": "function",
        "name": "setERC165",
        "inputs": [{"name": "interfaceIds", "type": "bytes4[]"}, {"name": "interfaceIdsToRemove", "type": "bytes4[]"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
]

FACET_A_ABI = [
    {"type": "function", "name": "init", "inputs": [{"name": "value", "type": "uint256"}], "outputs": [], "stateMutability": "nonpayable"},
    {"type": "function", "name": "getA", "inputs": [], "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view"},
]

FACET_B_ABI = [
    {"type": "function", "name": "getB", "inputs": [], "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view"},
    {"type": "function", "name": "setB", "inputs": [{"name": "value", "type": "uint256"}], "outputs": [], "stateMutability": "nonpayable"},
]

TEST_ARTIFACTS = {
    "Foo": (FOO_ABI, FOO_BYTECODE),
    "Foo2": (FOO_ABI, FOO2_BYTECODE),
    "GreeterV1": ([], FOO_BYTECODE),
    "GreeterV2": ([], FOO2_BYTECODE),
    "Answer": (ANSWER_ABI, ANSWER_BYTECODE),
    "EIP173Proxy": (FAKE_PROXY_ABI, FAKE_PROXY_BYTECODE),
    "Reverter": ([], REVERTER_BYTECODE),
    "TransparentUpgradeableProxy": (TRANSPARENT_PROXY_ABI, FAKE_PROXY_BYTECODE),
    "ProxyAdmin": (PROXY_ADMIN_ABI, FAKE_PROXY_ADMIN_BYTECODE),
    "ERC1967Proxy": (ERC1967_PROXY_ABI, FOO_BYTECODE),
    "UUPSGreeterV1": (UUPS_IMPLEMENTATION_ABI, ANSWER_BYTECODE),
    "UUPSGreeterV2": (UUPS_IMPLEMENTATION_ABI, ANSWER2_BYTECODE),
    "Diamond": (DIAMOND_ABI, FAKE_PROXY_ADMIN_BYTECODE),
    "DiamondCutFacet": (DIAMOND_CUT_FACET_ABI, one_byte_runtime(1)),
    "OwnershipFacet": (OWNERSHIP_FACET_ABI, one_byte_runtime(2)),
    "DiamondLoupeFacet": (DIAMOND_LOUPE_FACET_ABI, one_byte_runtime(3)),
    "DiamondERC165Init": (DIAMOND_ERC165_INIT_ABI, one_byte_runtime(4)),
    "FacetA": (FACET_A_ABI, one_byte_runtime(5)),
    "FacetB": (FACET_B_ABI, one_byte_runtime(6)),
}


def write_artifact(path: Path, name: str, abi: list, bytecode: str):
    data = {
        "_format": "hh-sol-artifact-1",
        "contractName": name,
        "sourceName": f"contracts/{name}.sol",
        "abi": abi,
        "bytecode": bytecode,
        "deployedBytecode": "0x00",
        "linkReferences": {},
        "deployedLinkReferences": {},
    }
    (path / f"{name}.json").write_text(json.dumps(data))


@pytest.fixture
def tester_provider():
    # https://web3py.readthedocs.io/en/stable/examples.html#contract-unit-tests-in-python
    return EthereumTesterProvider()


@pytest.fixture
def eth_tester(tester_provider):
    return tester_provider.ethereum_tester


@pytest.fixture
def web3(tester_provider):
    """Set up a local unit testing blockchain."""
    return Web3(tester_provider)


@pytest.fixture()
def deployer(web3) -> str:
    """Deploy account."""
    return web3.eth.accounts[0]


@pytest.fixture()
def artifacts_path(tmp_path) -> Path:
    """Hardhat style artifacts folder with our test contracts."""
    path = tmp_path / "artifacts"
    path.mkdir()
    for name, (abi, bytecode) in TEST_ARTIFACTS.items():
        write_artifact(path, name, abi, bytecode)
    return path


@pytest.fixture()
def artifact_store(artifacts_path) -> ArtifactStore:
    return ArtifactStore([artifacts_path])


@pytest.fixture()
def network_path(tmp_path) -> Path:
    return tmp_path / "deployments" / "localhost"


@pytest.fixture()
def ledger(web3, network_path, artifact_store) -> DeploymentLedger:
    return DeploymentLedger(network_path, chain_id=web3.eth.chain_id, artifact_store=artifact_store)


@pytest.fixture()
def signers(web3, deployer) -> SignerRegistry:
    return SignerRegistry(web3, named_accounts={"deployer": deployer})


@pytest.fixture()
def pending_store(network_path) -> PendingTransactionStore:
    return PendingTransactionStore(network_path / PENDING_TRANSACTIONS_FILE)


@pytest.fixture()
def deployments(web3, ledger, signers, pending_store) -> Deployments:
    """Deployments against EthereumTester with a disk backed ledger."""
    return Deployments(
        web3,
        EVMBackend(web3),
        ledger,
        signers,
        pending_store=pending_store,
        poll_delay=datetime.timedelta(seconds=0.1),
    )
