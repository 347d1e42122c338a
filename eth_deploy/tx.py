"""Transaction parsing and broadcasting utilities."""

from typing import Any, Callable, Optional, Union

from eth_account._utils.legacy_transactions import Transaction
from eth_account.datastructures import SignedTransaction
from hexbytes import HexBytes
from web3.exceptions import Web3Exception

from eth_deploy.compat import WEB3_PY_V7, to_0x_hex

if WEB3_PY_V7:
    from eth_account.typed_transactions import TypedTransaction
else:
    from eth_account._utils.typed_transactions import TypedTransaction


class DecodeFailure(Exception):
    """We could not decode transaction for a reason or another."""


class BroadcastFailure(Exception):
    """Could not broadcast a transaction for some reason."""


class TransactionAlreadyKnown(BroadcastFailure):
    """The node already has this exact transaction in its mempool.

    Raised instead of the generic :py:class:`BroadcastFailure`, because the caller
    usually wants to wait for the existing transaction instead of sending a new one.
    """

    def __init__(self, msg: str, tx: dict | None = None):
        super().__init__(msg)
        self.tx = tx


def decode_signed_transaction(raw_bytes: Union[bytes, str, HexBytes]) -> Optional[dict]:
    """Decode already signed transaction.

    Reverse raw transaction bytes back to dictionary form, so you can access
    its `data` field and other parameters.

    The function supports:

    - Legacy transactions

    - `EIP-2718 typed transactions <https://eips.ethereum.org/EIPS/eip-2718>`_

    Example:

    .. code-block:: python

        signed_tx = hot_wallet.sign_transaction(raw_tx)
        d = decode_signed_transaction(get_tx_broadcast_data(signed_tx))
        assert d["nonce"] == 0

    :raise DecodeFailure:
        If the tx bytes is something we do not know how to handle.

    :return:
        Dictionary of transaction fields.
    """

    if not isinstance(raw_bytes, HexBytes):
        raw_bytes = HexBytes(raw_bytes)

    try:
        # First we try EIP-2718 and this will fail we fall back to the legacy tx
        typed_tx = TypedTransaction.from_bytes(raw_bytes)
        if WEB3_PY_V7:
            return typed_tx.transaction.as_dict()
        else:
            return typed_tx.transaction.dictionary
    except ValueError:
        try:
            return Transaction.from_bytes(raw_bytes).as_dict()
        except Exception as e:
            raise DecodeFailure(f"Could not decode transaction: {to_0x_hex(raw_bytes)}") from e


def get_tx_broadcast_data(signed_tx: SignedTransaction) -> HexBytes:
    """Get raw transaction bytes with compatibility for attribute name changes.

    eth_account changed rawTransaction to raw_transaction in newer versions.

    :raises AttributeError:
        If the signed transaction object has neither 'raw_transaction'
        nor 'rawTransaction' attribute
    """
    if hasattr(signed_tx, "raw_transaction"):
        return signed_tx.raw_transaction
    elif hasattr(signed_tx, "rawTransaction"):
        return signed_tx.rawTransaction
    else:
        raise AttributeError(f"SignedTransaction object has neither 'raw_transaction' nor 'rawTransaction' attribute. Available attributes: {dir(signed_tx)}")


def is_already_known_error(e: Exception) -> bool:
    """Does the node complain it has seen this transaction already.

    Geth says ``already known``, Nethermind and Erigon say ``AlreadyKnown`` or ``known transaction``.
    """
    msg = str(e).lower()
    return "already known" in msg or "alreadyknown" in msg or "known transaction" in msg


def send_and_map_errors(send: Callable[[], Any], tx: dict | None = None) -> Any:
    """Run a broadcast callable and classify the node errors.

    :raise TransactionAlreadyKnown:
        The node has already seen this transaction

    :raise BroadcastFailure:
        Any other JSON-RPC level rejection
    """
    try:
        return send()
    except (ValueError, Web3Exception) as e:
        if is_already_known_error(e):
            raise TransactionAlreadyKnown(f"Transaction already known by the node: {e}", tx) from e
        raise BroadcastFailure(f"Could not broadcast transaction {tx}. JSON-RPC error: {e}") from e


def _jsonify(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return to_0x_hex(value)
    if isinstance(value, dict) or hasattr(value, "items"):
        return {k: _jsonify(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonify(v) for v in value]
    return value


def to_json_friendly_tx(tx: dict) -> dict:
    """Convert a transaction dict so that it can be written with :py:mod:`json`.

    Bytes become 0x prefixed hex strings. Integers are kept as is.
    """
    return _jsonify(dict(tx))
