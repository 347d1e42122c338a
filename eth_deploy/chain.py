"""Chain connection helpers.

Some chains like Polygon and BNB Chain need their own Web3 connection tuning.
"""

import logging

from web3 import HTTPProvider, Web3

from eth_deploy.compat import WEB3_PY_V7
from eth_deploy.config import NetworkConfig

logger = logging.getLogger(__name__)


#: List of chain ids that need to have proof-of-authority middleweare installed
POA_MIDDLEWARE_NEEDED_CHAIN_IDS = {
    56,  # BNB Chain
    137,  # Polygon
    43114,  # Avalanche C-chain
}


def install_chain_middleware(web3: Web3, poa_middleware: bool | None = None):
    """Install any chain-specific middleware to Web3 instance.

    :param poa_middleware:
        If set, force the installation of proof-of-authority middleware.
        Otherwise decided by the chain id.
    """
    if poa_middleware is None:
        poa_middleware = web3.eth.chain_id in POA_MIDDLEWARE_NEEDED_CHAIN_IDS

    if poa_middleware:
        if WEB3_PY_V7:
            from web3.middleware import ExtraDataToPOAMiddleware

            web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        else:
            from web3.middleware import geth_poa_middleware

            web3.middleware_onion.inject(geth_poa_middleware, layer=0)


def create_web3(config: NetworkConfig) -> Web3:
    """Connect to the JSON-RPC node of a network.

    :raise AssertionError:
        The node is on another chain than configured
    """
    assert config.json_rpc_url, f"Network {config.name} has no json_rpc_url"
    web3 = Web3(HTTPProvider(config.json_rpc_url))
    chain_id = web3.eth.chain_id
    if config.chain_id is not None:
        assert chain_id == config.chain_id, f"Network {config.name} expects chain {config.chain_id}, node is on chain {chain_id}"
    if not config.tron:
        install_chain_middleware(web3)
    logger.info("Connected to %s, chain id %d", config.name, chain_id)
    return web3
