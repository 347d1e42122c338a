"""Standard EVM chain backend."""

from typing import Any, Sequence

from eth_typing import HexAddress
from eth_utils import keccak
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import encode_constructor_args
from eth_deploy.artifacts import ExtendedArtifact
from eth_deploy.backend.base import ChainBackend, UnsupportedTransaction, get_transaction_data_field
from eth_deploy.compat import to_0x_hex


def compute_create2_address(factory_address: HexAddress | str, salt: bytes, init_code: bytes, prefix: bytes = b"\xff") -> HexAddress:
    """Compute CREATE2 address.

    ``keccak(prefix ++ factory ++ salt ++ keccak(init_code))[12:]``

    Example:

    .. code-block:: python

        # EIP-1014 example 0
        addr = compute_create2_address("0x0000000000000000000000000000000000000000", b"\\x00" * 32, b"\\x00")
        assert addr == "0x4D1A2e2bB4F88F0250f26Ffff098B0b30B26BF38"

    :param prefix:
        ``0xff`` on EVM, ``0x41`` on TVM
    """
    salt = HexBytes(salt)
    assert len(salt) == 32, f"Salt must be 32 bytes, got {len(salt)}"
    preimage = prefix + HexBytes(factory_address) + salt + keccak(HexBytes(init_code))
    return Web3.to_checksum_address(keccak(preimage)[12:])


class EVMBackend(ChainBackend):
    """Ethereum mainnet and other EVM compatible chains."""

    name = "evm"

    def build_deploy_transaction(self, artifact: ExtendedArtifact, bytecode: str, args: Sequence[Any], overrides: dict) -> dict:
        if "__" in bytecode:
            raise UnsupportedTransaction(f"Bytecode of {artifact.contract_name} has unlinked libraries")
        data = HexBytes(bytecode) + encode_constructor_args(artifact.abi, args)
        tx = dict(overrides)
        tx["data"] = HexBytes(data)
        return tx

    def compute_create2_address(self, factory_address: HexAddress, salt: bytes, deploy_tx: dict) -> HexAddress:
        data = deploy_tx.get("data")
        if not isinstance(data, (bytes, bytearray, str)):
            raise UnsupportedTransaction(f"Unsigned transaction data is not inline bytes: {type(data)}")
        return compute_create2_address(factory_address, salt, HexBytes(data), prefix=self.create2_prefix)

    def is_equivalent_transaction(self, historical_tx: dict, fresh_tx: dict, deployment=None) -> bool:
        return get_transaction_data_field(historical_tx) == to_0x_hex(fresh_tx["data"])
