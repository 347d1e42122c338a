"""Chain backends.

Pick the backend once per network with :py:func:`create_chain_backend`.
"""

from web3 import Web3

from eth_deploy.artifacts import ArtifactStore
from eth_deploy.backend.base import ChainBackend
from eth_deploy.backend.evm import EVMBackend
from eth_deploy.backend.tron import TronBackend, TronHttpClient
from eth_deploy.backend.zksync import ZkSyncBackend
from eth_deploy.config import NetworkConfig


def create_chain_backend(web3: Web3, config: NetworkConfig, artifact_store: ArtifactStore) -> ChainBackend:
    """Choose the chain backend based on the network configuration flags."""
    assert not (config.zksync and config.tron), "Network cannot be both zkSync and Tron"
    if config.zksync:
        return ZkSyncBackend(web3, artifact_store)
    if config.tron:
        assert config.tron_full_host, "Tron network needs tron_full_host for the HTTP API"
        return TronBackend(web3, TronHttpClient(config.tron_full_host, config.tron_headers))
    return EVMBackend(web3)
