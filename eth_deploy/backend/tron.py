"""Tron (TVM) chain backend.

Tron is EVM compatible enough to use the same bytecode, but

- Addresses are prefixed with ``0x41`` byte instead of ``0xff`` in CREATE2 derivation

- There are no nonces or EIP-1559 fees. Instead transactions pay with *energy*
  and carry a ``fee_limit`` cap in SUN

- Writes go through the Tron HTTP API (``/wallet/...``), while reads and receipts
  can use the Ethereum compatible ``/jsonrpc`` endpoint that ``web3`` talks to

Addresses are stored and passed around in Ethereum 0x format.
:py:func:`to_tron_hex_address` converts them for the HTTP API.

Deterministic deployment factories are not supported on Tron,
but CREATE2 address derivation works.
"""

import json
import logging
import random
import re
import time
from typing import Any, Optional, Sequence

import requests
from cachetools import TTLCache
from eth_keys import keys
from eth_typing import HexAddress
from hexbytes import HexBytes
from requests.adapters import HTTPAdapter
from urllib3 import Retry
from web3 import Web3
from web3.datastructures import AttributeDict

from eth_deploy.abi import encode_constructor_args
from eth_deploy.artifacts import ExtendedArtifact
from eth_deploy.backend.base import ChainBackend, NodeDesyncError, UnsupportedTransaction
from eth_deploy.backend.evm import compute_create2_address
from eth_deploy.signer import HotWalletSigner, SentTransaction, Signer, UnknownSignerError
from eth_deploy.tx import TransactionAlreadyKnown

logger = logging.getLogger(__name__)


#: Used when the contract does not exist yet, or reports a nonsense factor
MAX_ENERGY_FACTOR = 1.2

#: Fixed point precision of the energy factor multiplication
MAX_ENERGY_DIVISOR = 1000

#: 15,000 TRX, if the chain parameters do not tell otherwise
FALLBACK_MAX_FEE_LIMIT = 15_000_000_000

#: SUN per energy, if the node does not tell otherwise
DEFAULT_ENERGY_PRICE = 1000

#: Cap on energy the contract creator pays for calls to the contract
DEFAULT_ORIGIN_ENERGY_LIMIT = 10_000_000

#: How long energy factors are cached. Tron updates them every 6 hours.
ENERGY_FACTOR_TTL = 600

#: Broadcast error code when the node has already seen the transaction
DUP_TRANSACTION_ERROR = "DUP_TRANSACTION_ERROR"


class TronApiError(Exception):
    """Tron HTTP API rejected our request."""

    def __init__(self, msg: str, code: str = None, txid: str = None):
        super().__init__(msg)
        self.code = code
        self.txid = txid


def to_tron_hex_address(address: HexAddress | str) -> str:
    """Convert 0x address to ``41`` prefixed hex used by Tron HTTP API with ``visible: false``."""
    if address.startswith("41") and len(address) == 42:
        return address.lower()
    return "41" + address.lower().replace("0x", "")


def from_tron_hex_address(address: str) -> HexAddress:
    """Convert ``41`` prefixed hex address to a checksummed 0x address."""
    assert address.startswith("41") and len(address) == 42, f"Not a Tron hex address: {address}"
    return Web3.to_checksum_address("0x" + address[2:])


def sign_tron_transaction(tx: dict, private_key: bytes) -> dict:
    """Sign Tron transaction.

    The signature is over ``txID``, which is sha256 of the raw transaction data.
    Recovery id is encoded as 27 / 28.
    """
    signature = keys.PrivateKey(HexBytes(private_key)).sign_msg_hash(bytes.fromhex(tx["txID"]))
    sig_bytes = signature.r.to_bytes(32, "big") + signature.s.to_bytes(32, "big") + bytes([signature.v + 27])
    signed = dict(tx)
    signed["signature"] = [sig_bytes.hex()]
    return signed


class LoggingRetry(Retry):
    """Be verbose when TronGrid throttles us."""

    def increment(self, method=None, url=None, response=None, error=None, _pool=None, _stacktrace=None):
        if response:
            status = response.status
            reason = response.reason
        else:
            status = None
            reason = str(error)
        logger.warning("Retrying Tron API: %s %s (status: %s, reason: %s)", method, (url or "")[0:96], status, reason)
        return super().increment(method, url, response, error, _pool, _stacktrace)


class TronHttpClient:
    """Minimal Tron full node HTTP API client.

    Public TronGrid endpoints rate limit aggressively,
    so failed requests are retried with backoff unless ``retries`` is zero.

    :param full_host:
        E.g. ``https://api.trongrid.io``

    :param headers:
        E.g. ``{"TRON-PRO-API-KEY": "..."}``

    :param retries:
        How many times to retry throttled and failed HTTP requests
    """

    def __init__(self, full_host: str, headers: dict | None = None, session: requests.Session | None = None, timeout: float = 30, retries: int = 5):
        self.full_host = full_host.rstrip("/")
        self.session = session or requests.Session()
        if headers:
            self.session.headers.update(headers)
        self.timeout = timeout

        if retries > 0:
            retry_policy = LoggingRetry(
                total=retries,
                backoff_factor=0.5,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["POST"],  # Need to whitelist POST
            )
            self.session.mount("http://", HTTPAdapter(max_retries=retry_policy))
            self.session.mount("https://", HTTPAdapter(max_retries=retry_policy))

    def post(self, path: str, payload: dict) -> Any:
        url = f"{self.full_host}/{path}"
        logger.debug("Tron API %s %s", url, payload)
        resp = self.session.post(url, json=payload, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict) and "Error" in data:
            raise TronApiError(f"Tron API {path} failed: {data['Error']}")
        return data

    def get_transaction_by_id(self, txid: str) -> dict:
        return self.post("wallet/gettransactionbyid", {"value": txid.replace("0x", "")})

    def get_contract_info(self, address: str) -> dict:
        return self.post("wallet/getcontractinfo", {"value": to_tron_hex_address(address), "visible": False})

    def get_chain_parameters(self) -> list[dict]:
        return self.post("wallet/getchainparameters", {}).get("chainParameter", [])

    def deploy_contract(self, params: dict) -> dict:
        return self.post("wallet/deploycontract", params)

    def trigger_smart_contract(self, params: dict) -> dict:
        return self.post("wallet/triggersmartcontract", params)

    def create_transaction(self, params: dict) -> dict:
        return self.post("wallet/createtransaction", params)

    def broadcast_transaction(self, signed_tx: dict) -> dict:
        return self.post("wallet/broadcasttransaction", signed_tx)


class TronBackend(ChainBackend):
    """Tron mainnet, Nile and Shasta testnets."""

    name = "tron"

    create2_prefix = b"\x41"

    supports_deterministic_send = False

    uses_nonce = False

    uses_tron_default_artifacts = True

    def __init__(self, web3: Web3, http: TronHttpClient, transaction_retries=10, energy_factor_ttl=ENERGY_FACTOR_TTL, **kwargs):
        super().__init__(web3, **kwargs)
        self.http = http
        self.transaction_retries = transaction_retries
        #: contract address -> energy factor
        self.energy_factor_cache = TTLCache(maxsize=1024, ttl=energy_factor_ttl)
        self.max_fee_limit: Optional[int] = None

    def build_deploy_transaction(self, artifact: ExtendedArtifact, bytecode: str, args: Sequence[Any], overrides: dict) -> dict:
        if "__" in bytecode:
            raise UnsupportedTransaction(f"Bytecode of {artifact.contract_name} has unlinked libraries")
        raw_parameter = encode_constructor_args(artifact.abi, args)
        bytecode_hex = bytecode.lower().replace("0x", "")
        tx = dict(overrides)
        tx["data"] = HexBytes(bytes.fromhex(bytecode_hex) + raw_parameter)
        tx["abi"] = json.dumps(artifact.abi)
        tx["bytecode"] = bytecode_hex
        tx["rawParameter"] = raw_parameter.hex()
        tx["name"] = artifact.contract_name[:32]
        tx["callValue"] = overrides.get("value", 0)
        tx["userFeePercentage"] = 100
        tx["originEnergyLimit"] = DEFAULT_ORIGIN_ENERGY_LIMIT
        return tx

    def compute_create2_address(self, factory_address: HexAddress, salt: bytes, deploy_tx: dict) -> HexAddress:
        return compute_create2_address(factory_address, salt, HexBytes(deploy_tx["data"]), prefix=self.create2_prefix)

    def is_equivalent_transaction(self, historical_tx: dict, fresh_tx: dict, deployment=None) -> bool:
        """Compare the bytecode in the original Tron ``CreateSmartContract`` against the fresh one."""
        tx_hash = HexBytes(historical_tx["hash"]).hex().replace("0x", "")
        tron_tx = self.http.get_transaction_by_id(tx_hash)
        contract = tron_tx["raw_data"]["contract"][0]
        deployed_bytecode = contract["parameter"]["value"].get("new_contract", {}).get("bytecode", "")
        return deployed_bytecode.lower() == (fresh_tx["bytecode"] + fresh_tx["rawParameter"]).lower()

    def fill_fees(self, tx: dict, gas_price: int = None, max_fee_per_gas: int = None, max_priority_fee_per_gas: int = None) -> dict:
        # Energy is priced by the network, fee_limit is set when sending
        for field in ("gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "type"):
            tx.pop(field, None)
        return tx

    def estimate_gas(self, tx: dict) -> int:
        tx = {k: v for k, v in tx.items() if k in ("from", "to", "data", "value")}
        return self.web3.eth.estimate_gas(tx)

    def get_energy_price(self) -> int:
        return self.get_gas_price() or DEFAULT_ENERGY_PRICE

    def get_energy_factor(self, contract_address: str | None) -> float:
        """Get the dynamic energy factor of a contract.

        New contracts do not have a factor yet, so use the maximum.
        """
        if not contract_address:
            return MAX_ENERGY_FACTOR
        cached = self.energy_factor_cache.get(contract_address)
        if cached is not None:
            return cached
        energy_factor = MAX_ENERGY_FACTOR
        info = self.http.get_contract_info(contract_address)
        reported = (info.get("contract_state") or {}).get("energy_factor")
        # check it's a sensible value
        if reported is not None and reported < MAX_ENERGY_FACTOR:
            energy_factor = float(reported)
        self.energy_factor_cache[contract_address] = energy_factor
        return energy_factor

    def get_max_fee_limit(self) -> int:
        if self.max_fee_limit is None:
            params = self.http.get_chain_parameters()
            value = next((p.get("value") for p in params if p.get("key") == "getMaxFeeLimit"), None)
            self.max_fee_limit = value if value is not None else FALLBACK_MAX_FEE_LIMIT
        return self.max_fee_limit

    def get_fee_limit(self, energy: int, contract_address: str | None = None) -> int:
        """Calculate ``fee_limit`` for a transaction.

        ``energy * energy price * (1 + energy factor)``, capped at the chain maximum.

        See `Tron docs <https://developers.tron.network/docs/set-feelimit>`__.
        """
        factor = int((1 + self.get_energy_factor(contract_address)) * MAX_ENERGY_DIVISOR)
        fee_limit = energy * self.get_energy_price() * factor // MAX_ENERGY_DIVISOR
        return min(fee_limit, self.get_max_fee_limit())

    def get_transaction_with_retry(self, tx_hash: HexBytes | str, retries: int = None) -> Optional[AttributeDict]:
        """Wait until the JSON-RPC node catches up with the full node.

        Linear backoff with random jitter.

        :return:
            The transaction, or ``None`` if the node never saw it
        """
        retries = retries or self.transaction_retries
        for attempt in range(1, retries):
            tx = self.get_transaction(tx_hash)
            if tx is not None:
                return tx
            jitter = random.randint(0, 300) / 1000
            logger.debug("Tron transaction %s not visible yet, attempt %d", tx_hash, attempt)
            time.sleep(attempt + jitter)
        return self.get_transaction(tx_hash)

    def send_transaction(self, signer: Signer, tx: dict) -> SentTransaction:
        if not isinstance(signer, HotWalletSigner):
            data = dict(tx)
            data["from"] = signer.address
            raise UnknownSignerError(data)

        owner = to_tron_hex_address(signer.address)
        value = tx.get("value", 0)

        if "bytecode" in tx:
            energy = tx.get("gas") or self.estimate_gas(tx)
            unsigned = self.http.deploy_contract(
                {
                    "owner_address": owner,
                    "abi": tx["abi"],
                    "bytecode": tx["bytecode"],
                    "parameter": tx["rawParameter"],
                    "call_value": tx.get("callValue", 0),
                    "consume_user_resource_percent": tx["userFeePercentage"],
                    "origin_energy_limit": tx["originEnergyLimit"],
                    "fee_limit": self.get_fee_limit(energy, None),
                    "name": tx["name"],
                    "visible": False,
                }
            )
        elif tx.get("to") and tx.get("data") and HexBytes(tx["data"]):
            energy = tx.get("gas") or self.estimate_gas(tx)
            result = self.http.trigger_smart_contract(
                {
                    "owner_address": owner,
                    "contract_address": to_tron_hex_address(tx["to"]),
                    "data": HexBytes(tx["data"]).hex().replace("0x", ""),
                    "fee_limit": self.get_fee_limit(energy, tx["to"]),
                    "call_value": value,
                    "visible": False,
                }
            )
            unsigned = result.get("transaction")
            if not unsigned:
                raise TronApiError(f"Could not build contract call: {result}")
        elif tx.get("to"):
            unsigned = self.http.create_transaction({"owner_address": owner, "to_address": to_tron_hex_address(tx["to"]), "amount": value, "visible": False})
        else:
            raise UnsupportedTransaction(f"Cannot map transaction to a Tron contract type: {tx}")

        signed = sign_tron_transaction(unsigned, signer.wallet.private_key)
        response = self.http.broadcast_transaction(signed)
        if not response.get("result"):
            message = response.get("message", "")
            if re.fullmatch(r"([0-9a-fA-F]{2})+", message):
                # Tron hex encodes the error message
                message = bytes.fromhex(message).decode("utf-8", errors="replace")
            if response.get("code") == DUP_TRANSACTION_ERROR:
                raise TransactionAlreadyKnown(f"Tron transaction {signed['txID']} already known by the node: {message}", tx)
            raise TronApiError(f"Tron broadcast failed: {message}", code=response.get("code"), txid=response.get("txid"))

        tx_hash = HexBytes("0x" + signed["txID"])
        logger.info("Tron transaction broadcast %s, waiting for the node to see it", signed["txID"])
        if self.get_transaction_with_retry(tx_hash) is None:
            raise NodeDesyncError(tx.get("name") or tx.get("to") or "Tron transaction", "0x" + signed["txID"])
        return SentTransaction(tx_hash=tx_hash)
