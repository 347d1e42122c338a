"""Deploy a contract from the command line, idempotently.

- Reads the network configuration from environment variables,
  see :py:meth:`eth_deploy.config.NetworkConfig.from_env`

- Recovers any transactions left pending by an earlier crashed run first

- Running the script again with the same arguments does not send anything

- Constructor arguments are given as JSON

Example how to deploy ``MyToken`` behind an EIP-173 proxy:

.. code-block:: shell

    export JSON_RPC_URL=http://localhost:8545
    export PRIVATE_KEY=
    export CONTRACT=MyToken
    export ARGS='["My token", "MTK"]'
    export PROXY=true

    python scripts/deploy-contract.py

"""

import json
import logging
import os

from eth_deploy.config import NetworkConfig
from eth_deploy.deployments import Deployments
from eth_deploy.options import DeployOptions, ProxyOptions
from eth_deploy.utils import setup_console_logging

logger = logging.getLogger(__name__)


def main():
    # Set up stdout logger
    setup_console_logging(default_log_level="info")

    config = NetworkConfig.from_env()
    contract = os.environ["CONTRACT"]
    name = os.environ.get("DEPLOYMENT_NAME", contract)
    args = json.loads(os.environ.get("ARGS", "[]"))
    proxy = os.environ.get("PROXY", "").strip() == "true"

    deployments = Deployments.from_config(config)
    logger.info("Deploying %s as %s to %s", contract, name, deployments)

    for outcome in deployments.deal_with_pending_transactions():
        logger.info("Pending transaction %s: %s", outcome.tx_hash, outcome.action)

    result = deployments.deploy(
        name,
        DeployOptions(
            sender="deployer",
            contract=contract,
            args=args,
            proxy=ProxyOptions() if proxy else None,
            log=True,
        ),
    )

    if result.newly_deployed:
        logger.info("Deployed %s at %s", name, result.address)
    else:
        logger.info("%s already deployed at %s, nothing to do", name, result.address)


if __name__ == "__main__":
    main()
