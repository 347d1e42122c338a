"""zkSync Era chain backend.

zkSync does not deploy contracts from init code. Instead

- Contract bytecode is published as a *factory dependency* and referred by its hash

- Deployment is a call to the system ``ContractDeployer`` contract

- CREATE2 addresses are derived from the bytecode hash, not from the init code hash

See `zkSync docs <https://docs.zksync.io/zksync-protocol/differences/evm-instructions#create-create2>`__.

Signing EIP-712 zkSync transactions locally is not done here.
Accounts managed by the node can deploy with ``eth_sendTransaction``,
for local keys the unsigned transaction is handed out with :py:class:`eth_deploy.signer.UnknownSignerError`.
"""

import hashlib
import logging
from typing import Any, Callable, Sequence

import eth_abi
from eth_typing import HexAddress
from eth_utils import function_signature_to_4byte_selector, keccak
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import encode_constructor_args
from eth_deploy.artifacts import ArtifactStore, ExtendedArtifact
from eth_deploy.backend.base import ChainBackend, UnsupportedTransaction, get_transaction_data_field
from eth_deploy.compat import to_0x_hex
from eth_deploy.signer import NodeAccountSigner, SentTransaction, Signer, UnknownSignerError
from eth_deploy.tx import send_and_map_errors

logger = logging.getLogger(__name__)


#: System contract doing all deployments
CONTRACT_DEPLOYER_ADDRESS = "0x0000000000000000000000000000000000008006"

#: ``ContractDeployer.create(bytes32 salt, bytes32 bytecodeHash, bytes input)``
CREATE_SELECTOR = function_signature_to_4byte_selector("create(bytes32,bytes32,bytes)")

#: Domain separator of zkSync CREATE2 address derivation
CREATE2_PREFIX = keccak(text="zksyncCreate2")

#: ``ContractDeployed(address indexed deployerAddress, bytes32 indexed bytecodeHash, address indexed contractAddress)``
CONTRACT_DEPLOYED_TOPIC = keccak(text="ContractDeployed(address,bytes32,address)")

DEFAULT_GAS_PER_PUBDATA_LIMIT = 50_000

#: Bytecode hash version byte
BYTECODE_HASH_VERSION = 1


class InvalidBytecode(ValueError):
    """Bytecode cannot be deployed on zkSync."""


def hash_bytecode(bytecode: bytes | str) -> HexBytes:
    """Compute versioned zkSync bytecode hash.

    - sha256 of the bytecode

    - First byte is the version, second zero

    - Bytes 2..3 are the length of the bytecode in 32 byte words

    :raise InvalidBytecode:
        Bytecode length is not an odd number of 32 byte words
    """
    bytecode = HexBytes(bytecode)
    if len(bytecode) % 32 != 0:
        raise InvalidBytecode(f"Bytecode length in bytes must be divisible by 32, got {len(bytecode)}")
    words = len(bytecode) // 32
    if words >= 2**16:
        raise InvalidBytecode(f"Bytecode too long: {words} words")
    if words % 2 == 0:
        raise InvalidBytecode(f"Bytecode length in 32-byte words must be odd, got {words}")
    digest = hashlib.sha256(bytecode).digest()
    return HexBytes(bytes([BYTECODE_HASH_VERSION, 0]) + words.to_bytes(2, "big") + digest[4:])


def compute_zksync_create2_address(sender: HexAddress | str, bytecode_hash: bytes, salt: bytes, constructor_input: bytes) -> HexAddress:
    """zkSync CREATE2 address.

    ``keccak(keccak("zksyncCreate2") ++ pad32(sender) ++ salt ++ bytecodeHash ++ keccak(input))[12:]``
    """
    sender_padded = HexBytes(sender).rjust(32, b"\x00")
    preimage = CREATE2_PREFIX + sender_padded + HexBytes(salt) + HexBytes(bytecode_hash) + keccak(HexBytes(constructor_input))
    return Web3.to_checksum_address(keccak(preimage)[12:])


def extract_factory_deps(artifact: ExtendedArtifact, get_artifact: Callable[[str], ExtendedArtifact]) -> list[str]:
    """Collect bytecodes of all contracts this contract can deploy, transitively.

    Depth-first, a ``visited`` set guards against dependency cycles.

    :param get_artifact:
        Resolve ``sourceName:contractName`` to an artifact
    """
    visited = {artifact.fully_qualified_name}
    return _extract_factory_deps(artifact, get_artifact, visited)


def _extract_factory_deps(artifact: ExtendedArtifact, get_artifact: Callable, visited: set[str]) -> list[str]:
    deps = []
    for dependency_name in artifact.factory_deps.values():
        if dependency_name in visited:
            continue
        visited.add(dependency_name)
        dependency = get_artifact(dependency_name)
        deps.append(dependency.bytecode)
        deps.extend(_extract_factory_deps(dependency, get_artifact, visited))
    return deps


def _to_rpc_value(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return hex(value)
    if isinstance(value, (bytes, bytearray)):
        return to_0x_hex(value)
    if isinstance(value, dict):
        return {k: _to_rpc_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_rpc_value(v) for v in value]
    return value


class ZkSyncBackend(ChainBackend):
    """zkSync Era and other ZK stack chains."""

    name = "zksync"

    def __init__(self, web3: Web3, artifact_store: ArtifactStore, gas_per_pubdata=DEFAULT_GAS_PER_PUBDATA_LIMIT, **kwargs):
        super().__init__(web3, **kwargs)
        self.artifact_store = artifact_store
        self.gas_per_pubdata = gas_per_pubdata

    def build_deploy_transaction(self, artifact: ExtendedArtifact, bytecode: str, args: Sequence[Any], overrides: dict) -> dict:
        if "__" in bytecode:
            raise UnsupportedTransaction(f"Bytecode of {artifact.contract_name} has unlinked libraries")
        bytecode_hash = hash_bytecode(bytecode)
        constructor_input = encode_constructor_args(artifact.abi, args)
        data = CREATE_SELECTOR + eth_abi.encode(["bytes32", "bytes32", "bytes"], [b"\x00" * 32, bytes(bytecode_hash), constructor_input])
        factory_deps = extract_factory_deps(artifact, self.artifact_store.get_artifact)
        factory_deps.append(bytecode)
        tx = dict(overrides)
        tx["to"] = CONTRACT_DEPLOYER_ADDRESS
        tx["data"] = HexBytes(data)
        tx["eip712Meta"] = {
            "gasPerPubdata": self.gas_per_pubdata,
            "factoryDeps": [to_0x_hex(d) for d in factory_deps],
        }
        return tx

    def compute_create2_address(self, factory_address: HexAddress, salt: bytes, deploy_tx: dict) -> HexAddress:
        data = HexBytes(deploy_tx["data"])
        if data[:4] != CREATE_SELECTOR:
            raise UnsupportedTransaction(f"Not a ContractDeployer.create() payload: {to_0x_hex(data[:4])}")
        _, bytecode_hash, constructor_input = eth_abi.decode(["bytes32", "bytes32", "bytes"], data[4:])
        return compute_zksync_create2_address(factory_address, bytecode_hash, salt, constructor_input)

    def is_equivalent_transaction(self, historical_tx: dict, fresh_tx: dict, deployment=None) -> bool:
        current = "".join(d.lower().replace("0x", "") for d in (deployment.factory_deps if deployment else None) or [])
        fresh = "".join(d.lower().replace("0x", "") for d in fresh_tx.get("eip712Meta", {}).get("factoryDeps", []))
        return get_transaction_data_field(historical_tx) == to_0x_hex(fresh_tx["data"]) and current == fresh

    def get_deployed_address(self, receipt: dict) -> HexAddress:
        """One transaction may deploy several contracts, the last one is ours."""
        deployed = []
        for log in receipt.get("logs", []):
            topics = [HexBytes(t) for t in log.get("topics", [])]
            if log["address"].lower() == CONTRACT_DEPLOYER_ADDRESS and len(topics) == 4 and topics[0] == CONTRACT_DEPLOYED_TOPIC:
                deployed.append(Web3.to_checksum_address(topics[3][-20:]))
        if not deployed:
            return receipt.get("contractAddress")
        return deployed[-1]

    def _rpc(self, method: str, params: list) -> Any:
        response = self.web3.provider.make_request(method, params)
        if "error" in response:
            raise ValueError(response["error"])
        return response["result"]

    def estimate_gas(self, tx: dict) -> int:
        tx = {k: v for k, v in tx.items() if k in ("from", "to", "data", "value", "eip712Meta")}
        return int(self._rpc("eth_estimateGas", [_to_rpc_value(tx)]), 16)

    def send_transaction(self, signer: Signer, tx: dict) -> SentTransaction:
        if not isinstance(signer, NodeAccountSigner):
            # EIP-712 zkSync transactions need to be signed with a zkSync aware wallet
            data = dict(tx)
            data["from"] = signer.address
            raise UnknownSignerError(data)
        tx = dict(tx)
        tx["from"] = signer.address
        tx_hash = send_and_map_errors(lambda: self._rpc("eth_sendTransaction", [_to_rpc_value(tx)]), tx)
        return SentTransaction(tx_hash=HexBytes(tx_hash))
