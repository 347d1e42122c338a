"""Gas price strategies.

`Web3.py no longer support gas price strategies post London hard work <https://web3py.readthedocs.io/en/stable/gas_price.html>`_.

- Suggest fees for deployment transactions

- Apply user overrides so that legacy ``gasPrice`` and EIP-1559 fee fields
  never end up in the same transaction

- Read the current fee market for stuck transaction recovery
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from web3 import Web3
from web3.exceptions import Web3Exception

logger = logging.getLogger(__name__)


class GasPriceMethod(enum.Enum):
    """What method we did use for setting the gas price."""

    #: Legacy chains
    legacy = "legacy"

    #: Post London hard work
    london = "london"


@dataclass
class GasPriceSuggestion:
    """Gas price details.

    Capture the necessary information for the gas price to used during the transaction building.

    - EIP-1559 London hard fork chains (Ethereumm mainnet)

    - Legacy EVM: BNB Chain, Tron
    """

    #: How the gas price was determined
    method: GasPriceMethod

    #: Non London hard fork chains
    legacy_gas_price: Optional[int] = None

    #: London hard fork chains
    base_fee: Optional[int] = None

    #: London hard fork chains
    max_priority_fee_per_gas: Optional[int] = None

    #: London hard fork chains
    max_fee_per_gas: Optional[int] = None

    def __repr__(self):
        return f"<Gas pricing method:{self.method.name} base:{self.base_fee} priority:{self.max_priority_fee_per_gas} max:{self.max_fee_per_gas} legacy:{self.legacy_gas_price}>"

    def get_tx_gas_params(self) -> dict:
        """Get gas params as they are applied to a transaction dict."""
        if self.method == GasPriceMethod.london:
            return {"maxPriorityFeePerGas": self.max_priority_fee_per_gas, "maxFeePerGas": self.max_fee_per_gas}
        else:
            return {"gasPrice": self.legacy_gas_price}


def estimate_gas_price(web3: Web3, method=None) -> GasPriceSuggestion:
    """Get a good gas price for a transaction.

    - On London chains, max fee is priority fee plus two times the base fee

    - On legacy chains use ``eth_gasPrice``
    """

    last_block = web3.eth.get_block("latest")
    base_fee = last_block.get("baseFeePerGas")

    if method is None:
        if base_fee is not None:
            method = GasPriceMethod.london
        else:
            method = GasPriceMethod.legacy

    if method == GasPriceMethod.london:
        # see https://github.com/ethereum/web3.py/blob/36adb16c68f570c343d01ecc8d0096cbac814172/web3/middleware/gas_price_strategy.py#L57
        max_priority_fee_per_gas = web3.eth.max_priority_fee
        max_fee_per_gas = max_priority_fee_per_gas + (2 * base_fee)

        if web3.eth.chain_id == 137:
            # polygon now has a minimum gas fee of 30 gwei to avoid spam
            max_priority_fee_per_gas = max(30_000_000_000, max_priority_fee_per_gas)

        # https://github.com/ethereum/go-ethereum/blob/2e478aab98c13577c66b4531ba240a601dbc1516/core/error.go#L87
        if max_priority_fee_per_gas > max_fee_per_gas:
            max_fee_per_gas = max_priority_fee_per_gas

        return GasPriceSuggestion(method=GasPriceMethod.london, base_fee=base_fee, max_priority_fee_per_gas=max_priority_fee_per_gas, max_fee_per_gas=max_fee_per_gas)
    else:
        return GasPriceSuggestion(method=GasPriceMethod.legacy, legacy_gas_price=web3.eth.gas_price)


def apply_gas(tx: dict, suggestion: GasPriceSuggestion, gas_price: int = None, max_fee_per_gas: int = None, max_priority_fee_per_gas: int = None) -> dict:
    """Apply gas fees to a raw transaction dict.

    User supplied values win over the suggestion:

    - If ``gas_price`` is given, the transaction is a legacy transaction

    - If either EIP-1559 field is given, the transaction is an EIP-1559 transaction
      and the missing field is filled from the suggestion

    - Otherwise the suggestion decides

    Legacy ``gasPrice`` and EIP-1559 fields are never both present in the result.

    :return:
        Mutated dict
    """

    assert isinstance(tx, dict), f"Expected tx to be dict, got {type(tx)}"

    if gas_price is not None:
        assert max_fee_per_gas is None and max_priority_fee_per_gas is None, "Cannot have both gasPrice and maxFeePerGas/maxPriorityFeePerGas"
        tx["gasPrice"] = gas_price
        tx.pop("maxFeePerGas", None)
        tx.pop("maxPriorityFeePerGas", None)
        return tx

    if max_fee_per_gas is not None or max_priority_fee_per_gas is not None or suggestion.method == GasPriceMethod.london:
        if max_fee_per_gas is None:
            max_fee_per_gas = suggestion.max_fee_per_gas if suggestion.max_fee_per_gas is not None else suggestion.legacy_gas_price
        if max_priority_fee_per_gas is None:
            max_priority_fee_per_gas = suggestion.max_priority_fee_per_gas if suggestion.max_priority_fee_per_gas is not None else max_fee_per_gas
        max_priority_fee_per_gas = min(max_priority_fee_per_gas, max_fee_per_gas)
        tx["maxFeePerGas"] = max_fee_per_gas
        tx["maxPriorityFeePerGas"] = max_priority_fee_per_gas

        if "gasPrice" in tx:
            # Cannot have both maxFeePerGas + maxPriorityFeePerGas and gasPrice
            del tx["gasPrice"]
    else:
        tx["gasPrice"] = suggestion.legacy_gas_price
        tx.pop("maxFeePerGas", None)
        tx.pop("maxPriorityFeePerGas", None)

    return tx


@dataclass
class MarketFees:
    """Current fee market snapshot.

    Used to compare stuck transactions against what the network currently wants.
    """

    #: ``eth_gasPrice``
    gas_price: int

    #: Latest base fee from ``eth_feeHistory``, if the node supports it
    base_fee: Optional[int] = None

    #: Average of the 25th percentile priority fee of recent blocks
    low_priority_fee: Optional[int] = None

    #: Average of the 75th percentile priority fee of recent blocks
    high_priority_fee: Optional[int] = None

    def suggest_max_fee_per_gas(self) -> int:
        if self.base_fee is None:
            return self.gas_price
        return 2 * self.base_fee + self.suggest_max_priority_fee_per_gas()

    def suggest_max_priority_fee_per_gas(self) -> int:
        if self.high_priority_fee is None:
            return self.gas_price
        return self.high_priority_fee


def fetch_market_fees(web3: Web3, blocks=4, percentiles=(25, 75)) -> MarketFees:
    """Read the current fee market.

    ``eth_feeHistory`` is optional. Some nodes and legacy chains do not implement it,
    so we fall back to plain ``eth_gasPrice``.
    """
    gas_price = web3.eth.gas_price
    try:
        history = web3.eth.fee_history(blocks, "latest", list(percentiles))
    except (ValueError, NotImplementedError, Web3Exception) as e:
        logger.info("eth_feeHistory not available, using eth_gasPrice only: %s", e)
        return MarketFees(gas_price=gas_price)

    rewards = history.get("reward") or []
    base_fees = history.get("baseFeePerGas") or []
    if not rewards or not base_fees:
        return MarketFees(gas_price=gas_price)

    low = sum(r[0] for r in rewards) // len(rewards)
    high = sum(r[1] for r in rewards) // len(rewards)
    return MarketFees(gas_price=gas_price, base_fee=base_fees[-1], low_priority_fee=low, high_priority_fee=high)
