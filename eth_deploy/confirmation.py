"""Transaction confirmation and completion monitoring.

- Wait for transactions to be confirmed and read back the receipts

- No timeout: deployments block until the network confirms.
  Stuck transactions are dealt with by :py:mod:`eth_deploy.pending`
"""

import datetime
import logging
import time
from typing import Dict, List, Set, Union

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound

from eth_deploy.compat import to_0x_hex

logger = logging.getLogger(__name__)


class ChainExecutionFailed(Exception):
    """Transaction was included in a block, but it failed.

    We never accept a status 0 receipt as a successful deployment.
    """

    def __init__(self, tx_hash: str, receipt: dict, msg: str = None):
        super().__init__(msg or f"Transaction {tx_hash} failed on chain")
        self.tx_hash = tx_hash
        self.receipt = receipt


def wait_confirmations_to_block_count(wait_confirmations: int) -> int:
    """Map "number of confirmations" to "number of blocks on top of the inclusion block".

    One confirmation means the transaction is included in a block.
    """
    return max(wait_confirmations - 1, 0)


def wait_transactions_to_complete(
    web3: Web3,
    txs: List[Union[HexBytes, str]],
    confirmation_block_count: int = 0,
    poll_delay=datetime.timedelta(seconds=1),
) -> Dict[HexBytes, dict]:
    """Watch multiple transactions executed at parallel.

    Use simple poll loop to wait all transactions to complete.

    Example:

    .. code-block:: python

        tx_hash = web3.eth.send_transaction({"from": deployer, "to": user, "value": 1})
        complete = wait_transactions_to_complete(web3, [tx_hash])
        for receipt in complete.values():
            assert receipt["status"] == 1

    :param txs:
        List of transaction hashes

    :param confirmation_block_count:
        How many blocks wait for the transaction receipt to settle.
        Set to zero to return as soon as we see the first transaction receipt.


    :return:
        Map of transaction hashes -> receipt
    """

    assert isinstance(poll_delay, datetime.timedelta)
    assert isinstance(confirmation_block_count, int)

    logger.debug("Waiting %d transactions to confirm in %d blocks", len(txs), confirmation_block_count)

    receipts_received = {}

    unconfirmed_txs: Set[HexBytes] = {HexBytes(tx) for tx in txs}

    while len(unconfirmed_txs) > 0:
        # Transaction hashes that receive confirmation on this round
        confirmation_received = set()

        for tx_hash in unconfirmed_txs:
            try:
                receipt = web3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound as e:
                # BNB Chain get does this instead of returning None
                logger.debug("Transaction not found yet: %s", e)
                receipt = None

            if receipt:
                tx_confirmations = web3.eth.block_number - receipt["blockNumber"]
                if tx_confirmations >= confirmation_block_count:
                    logger.debug("Confirmed tx %s with %d confirmations", to_0x_hex(tx_hash), tx_confirmations)
                    confirmation_received.add(tx_hash)
                    receipts_received[tx_hash] = receipt
                else:
                    logger.debug("Still waiting more confirmations. Tx %s with %d confirmations, %d needed", to_0x_hex(tx_hash), tx_confirmations, confirmation_block_count)

        # Remove confirmed txs from the working set
        unconfirmed_txs -= confirmation_received

        if unconfirmed_txs:
            time.sleep(poll_delay.total_seconds())

    return receipts_received


def wait_for_confirmation(
    web3: Web3,
    tx_hash: HexBytes | str,
    wait_confirmations: int = 0,
    poll_delay=datetime.timedelta(seconds=1),
) -> dict:
    """Wait a single transaction and check it succeeded.

    :param wait_confirmations:
        Ethers style confirmation count, where 0 and 1 both mean "included in a block".

    :raise ChainExecutionFailed:
        Transaction receipt status was 0.

    :return:
        Transaction receipt
    """
    tx_hash = HexBytes(tx_hash)
    receipts = wait_transactions_to_complete(
        web3,
        [tx_hash],
        confirmation_block_count=wait_confirmations_to_block_count(wait_confirmations),
        poll_delay=poll_delay,
    )
    receipt = receipts[tx_hash]
    if receipt["status"] != 1:
        raise ChainExecutionFailed(to_0x_hex(tx_hash), receipt)
    return receipt
