"""Idempotent deployment entry point.

:py:class:`Deployments` ties together the chain backend, the deployment ledger,
signers and the deployment engines.

Example:

.. code-block:: python

    from eth_deploy.config import NetworkConfig
    from eth_deploy.deployments import Deployments
    from eth_deploy.options import DeployOptions, ProxyOptions, TxOptions

    deployments = Deployments.from_config(NetworkConfig.from_env())

    # Running the script again does not redeploy unchanged contracts
    token = deployments.deploy("Token", DeployOptions(sender="deployer", args=("Foo", "FOO")))
    vault = deployments.deploy("Vault", DeployOptions(sender="deployer", args=(token.address,), proxy=ProxyOptions(method_name="initialize")))

    deployments.execute("Token", TxOptions(sender="deployer"), "transfer", vault.address, 1000)
    print(deployments.read("Token", None, "balanceOf", vault.address))

Everything is synchronous. Each call blocks until its transactions are confirmed.
"""

import datetime
import logging
from typing import Any, Callable, Optional

from web3 import Web3

from eth_deploy.artifacts import ArtifactStore
from eth_deploy.backend import create_chain_backend
from eth_deploy.backend.base import ChainBackend
from eth_deploy.chain import create_web3
from eth_deploy.config import DeterministicFactoryConfig, NetworkConfig
from eth_deploy.diamond import DiamondCutPlanner
from eth_deploy.hotwallet import HotWallet
from eth_deploy.ledger import Deployment, DeploymentLedger
from eth_deploy.options import DeployOptions, DeployResult, DiffResult, TxOptions
from eth_deploy.pending import PendingTransactionRecoverer, PendingTransactionStore, RecoveryAction, RecoveryOutcome, RecoveryReport, default_recovery_policy
from eth_deploy.proxy import ProxyUpgradeCoordinator
from eth_deploy.reconcile import DeterministicResult, ReconciliationEngine, catch_unknown_signer
from eth_deploy.signer import Signer, SignerRegistry

logger = logging.getLogger(__name__)


#: Name of the pending transaction file in the network deployments folder
PENDING_TRANSACTIONS_FILE = ".pendingTransactions"


class Deployments:
    """Deploy, upgrade and call contracts by logical name.

    :param ledger:
        Where deployment records are kept

    :param pending_store:
        Where broadcasted transactions are kept until confirmed.
        ``None`` disables tracking.

    :param choose_action:
        Decides what to do with transactions left pending by an earlier run,
        see :py:func:`eth_deploy.pending.default_recovery_policy`
    """

    def __init__(
        self,
        web3: Web3,
        backend: ChainBackend,
        ledger: DeploymentLedger,
        signers: SignerRegistry,
        pending_store: PendingTransactionStore | None = None,
        deterministic_factory: DeterministicFactoryConfig | None = DeterministicFactoryConfig(),
        wait_confirmations: int = 0,
        poll_delay=datetime.timedelta(seconds=1),
        choose_action: Callable[[RecoveryReport], RecoveryAction] = default_recovery_policy,
    ):
        self.web3 = web3
        self.backend = backend
        self.ledger = ledger
        self.signers = signers
        self.pending_store = pending_store

        self.engine = ReconciliationEngine(
            web3,
            backend,
            ledger,
            signers,
            pending_store=pending_store,
            deterministic_factory=deterministic_factory,
            wait_confirmations=wait_confirmations,
            poll_delay=poll_delay,
        )
        self.proxies = ProxyUpgradeCoordinator(self.engine)

        #: ``deployments.diamond.deploy(name, options)``
        self.diamond = DiamondCutPlanner(self.engine)

        self.recoverer = None
        if pending_store is not None:
            self.recoverer = PendingTransactionRecoverer(
                web3,
                backend,
                ledger,
                pending_store,
                signers,
                choose_action=choose_action,
                poll_delay=poll_delay,
            )

    def __repr__(self):
        return f"<Deployments {self.backend.name} {self.ledger}>"

    @staticmethod
    def from_config(config: NetworkConfig, web3: Web3 | None = None, choose_action: Callable[[RecoveryReport], RecoveryAction] = default_recovery_policy) -> "Deployments":
        """Set up everything from a network configuration.

        :param web3:
            Use an existing connection instead of ``config.json_rpc_url``
        """
        if web3 is None:
            web3 = create_web3(config)

        chain_id = web3.eth.chain_id
        artifact_store = ArtifactStore(config.artifact_paths, tron_default_paths=config.tron_default_artifact_paths)
        network_path = config.deployments_path / config.name
        ledger = DeploymentLedger(network_path, chain_id=chain_id, artifact_store=artifact_store, save_space=config.save_space)

        wallets = [HotWallet.from_private_key(k) for k in config.private_keys]
        signers = SignerRegistry(web3, named_accounts=config.named_accounts, wallets=wallets)

        pending_store = None
        if config.track_pending_transactions:
            pending_store = PendingTransactionStore(network_path / PENDING_TRANSACTIONS_FILE)

        return Deployments(
            web3,
            create_chain_backend(web3, config, artifact_store),
            ledger,
            signers,
            pending_store=pending_store,
            deterministic_factory=config.deterministic_factory,
            wait_confirmations=config.wait_confirmations,
            poll_delay=datetime.timedelta(seconds=config.poll_delay),
            choose_action=choose_action,
        )

    def deploy(self, name: str, options: DeployOptions) -> DeployResult:
        """Deploy a contract, or reuse the existing deployment if nothing changed.

        With ``options.proxy`` set, the contract is deployed or upgraded behind a proxy.
        """
        if options.proxy:
            return self.proxies.deploy_via_proxy(name, options)
        return self.engine.deploy_one(name, options)

    def deterministic(self, name: str, options: DeployOptions) -> DeterministicResult:
        """Predict the CREATE2 address of a deployment before doing it.

        .. code-block:: python

            result = deployments.deterministic("Token", DeployOptions(sender="deployer", deterministic_deployment="0x01"))
            print("Token will be at", result.address)
            result.deploy()
        """
        if options.proxy:
            return self.proxies.deterministic(name, options, self.deploy)
        return self.engine.deterministic(name, options, self.deploy)

    def fetch_if_different(self, name: str, options: DeployOptions) -> DiffResult:
        return self.engine.fetch_if_different(name, options)

    def execute(self, name: str, options: TxOptions, method: str, *args) -> dict:
        """Call a state changing function of a deployed contract.

        :return:
            Receipt
        """
        return self.engine.execute(name, options, method, *args)

    def read(self, name: str, options: TxOptions | None, method: str, *args) -> Any:
        return self.engine.read(name, options, method, *args)

    def raw_tx(self, options: TxOptions, to: str | None = None, data: bytes | str = b"", value: int | None = None) -> dict:
        return self.engine.raw_tx(options, to=to, data=data, value=value)

    def catch_unknown_signer(self, action: Callable[[], Any], log=True) -> Optional[dict]:
        return catch_unknown_signer(action, log=log)

    def get_signer(self, address: str) -> Signer:
        return self.engine.get_signer(address)

    def get(self, name: str) -> Deployment:
        return self.ledger.get(name)

    def get_or_none(self, name: str) -> Optional[Deployment]:
        return self.ledger.get_or_none(name)

    def deal_with_pending_transactions(self) -> list[RecoveryOutcome]:
        """Resolve transactions left pending by an earlier, interrupted run.

        Call this before deploying anything.
        """
        if self.recoverer is None:
            return []
        return self.recoverer.deal_with_pending_transactions()
