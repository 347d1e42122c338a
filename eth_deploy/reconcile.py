"""Decide whether a named contract needs (re)deployment, and deploy it.

The engine compares what we would deploy now against what the ledger says was deployed
under the same logical name:

- Deterministic deployments are compared by looking up code at the predicted CREATE2 address

- Other deployments are compared by fetching the historical deployment transaction from the node
  and comparing its payload against a freshly built one

Only when something changed a new transaction is sent. Calling :py:meth:`ReconciliationEngine.deploy_one`
twice with the same options is a no-op on the second call.

Example:

.. code-block:: python

    engine = ReconciliationEngine(web3, EVMBackend(web3), ledger, SignerRegistry(web3))
    result = engine.deploy_one("Token", DeployOptions(sender=deployer, args=("Foo", "FOO")))
    assert result.newly_deployed

    result = engine.deploy_one("Token", DeployOptions(sender=deployer, args=("Foo", "FOO")))
    assert not result.newly_deployed
"""

import dataclasses
import datetime
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import decode_function_output, encode_function_call, find_function_abi, link_libraries, present_solidity_args
from eth_deploy.artifacts import ExtendedArtifact
from eth_deploy.backend.base import ChainBackend, NodeDesyncError, UnsupportedTransaction, normalise_salt
from eth_deploy.compat import to_0x_hex
from eth_deploy.config import DeterministicFactoryConfig
from eth_deploy.confirmation import ChainExecutionFailed
from eth_deploy.factory import DeploymentFactory
from eth_deploy.ledger import Deployment, DeploymentLedger
from eth_deploy.options import DeployOptions, DeployResult, DiffResult, TxOptions
from eth_deploy.pending import PendingTransaction, PendingTransactionStore
from eth_deploy.signer import Signer, SignerRegistry, UnknownSignerError
from eth_deploy.tx import send_and_map_errors, to_json_friendly_tx

logger = logging.getLogger(__name__)


class ContractDeploymentFailed(Exception):
    """Deployment transaction succeeded, but we cannot tell the address of the contract."""

    def __init__(self, name: str, tx_hash: str, receipt: dict):
        super().__init__(f"Deployment of {name} in {tx_hash} did not create a contract")
        self.name = name
        self.tx_hash = tx_hash
        self.receipt = receipt


class AlreadyDeployedError(Exception):
    """Asked to fail when the deterministic address already has code."""

    def __init__(self, address: str):
        super().__init__(f"Already deployed on same deterministic address: {address}")
        self.address = address


@dataclass
class DeterministicResult:
    """Predicted address of a deterministic deployment."""

    #: Where the contract (or its proxy) will be
    address: HexAddress

    #: Perform the deployment
    deploy: Callable[[], DeployResult]

    #: Implementation address, for proxies
    implementation_address: Optional[HexAddress] = None


class ReconciliationEngine:
    """Idempotent deployments of single contracts.

    :param pending_store:
        Where to record broadcast transactions until they are confirmed.
        ``None`` disables pending transaction tracking.

    :param deterministic_factory:
        CREATE2 factory for deterministic deployments.
        ``None`` disables deterministic deployments.

    :param wait_confirmations:
        Default confirmation count
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
    ):
        self.web3 = web3
        self.backend = backend
        self.ledger = ledger
        self.signers = signers
        self.pending_store = pending_store
        self.deterministic_factory = deterministic_factory
        self.wait_confirmations = wait_confirmations
        self.poll_delay = poll_delay

    def __repr__(self):
        return f"<ReconciliationEngine {self.backend.name} {self.ledger}>"

    #
    # Artifacts and transactions
    #

    def get_artifact(self, name: str, contract: str | ExtendedArtifact | None) -> tuple[ExtendedArtifact, Optional[str]]:
        """Resolve the artifact of a deployment.

        :return:
            Tuple (artifact, artifact name). The name is ``None`` for artifacts passed as objects.
        """
        if isinstance(contract, ExtendedArtifact):
            return contract, None
        artifact_name = contract or name
        return self.ledger.get_extended_artifact(artifact_name), artifact_name

    def get_factory(self, name: str, options: DeployOptions) -> tuple[DeploymentFactory, ExtendedArtifact, Optional[str]]:
        """Create the deployment factory with libraries linked in."""
        artifact, artifact_name = self.get_artifact(name, options.contract)
        bytecode = link_libraries(artifact.bytecode, artifact.link_references, options.libraries)
        overrides = {"from": self.signers.resolve_address(options.sender)}
        if options.value:
            overrides["value"] = options.value
        factory = DeploymentFactory(self.backend, artifact, bytecode, options.args, overrides)
        return factory, artifact, artifact_name

    def get_create2_factory_address(self) -> HexAddress:
        assert self.deterministic_factory is not None, "Deterministic deployments are disabled for this network"
        return Web3.to_checksum_address(self.deterministic_factory.factory)

    def get_deterministic_address(self, name: str, options: DeployOptions) -> HexAddress:
        """Predict the address of a deterministic deployment, without touching the chain."""
        factory, _, _ = self.get_factory(name, options)
        return factory.get_create2_address(self.get_create2_factory_address(), normalise_salt(options.deterministic_deployment))

    def populate_transaction(self, tx: dict, sender: HexAddress, options: DeployOptions | TxOptions) -> dict:
        """Fill nonce, fees and gas limit.

        - Explicit values from options win

        - ``nonce`` can be ``"pending"`` or ``"latest"`` to choose the block tag

        - Estimated gas is padded with ``estimate_gas_extra``, but never above ``estimated_gas_limit``
        """
        tx["from"] = sender
        if options.value and "value" not in tx:
            tx["value"] = options.value

        if self.backend.uses_nonce:
            nonce = options.nonce
            if nonce is None or nonce in ("pending", "latest"):
                nonce = self.backend.get_nonce(sender, nonce or "latest")
            tx["nonce"] = nonce

        self.backend.fill_fees(
            tx,
            gas_price=options.gas_price,
            max_fee_per_gas=options.max_fee_per_gas,
            max_priority_fee_per_gas=options.max_priority_fee_per_gas,
        )

        if options.gas_limit:
            tx["gas"] = options.gas_limit
        else:
            estimate_tx = dict(tx)
            if options.estimated_gas_limit:
                estimate_tx["gas"] = options.estimated_gas_limit
            gas = self.backend.estimate_gas(estimate_tx)
            if options.estimate_gas_extra:
                gas += options.estimate_gas_extra
                if options.estimated_gas_limit:
                    gas = min(gas, options.estimated_gas_limit)
            tx["gas"] = gas
        return tx

    def send_transaction(
        self,
        signer: Signer,
        tx: dict,
        wait_confirmations: int | None = None,
        name: str | None = None,
        deployment: Deployment | None = None,
        contract: dict | None = None,
        keep_pending=False,
    ) -> tuple[str, dict]:
        """Broadcast, track as pending and wait for the receipt.

        :param name:
            Logical deployment name to recover if we crash while waiting

        :param deployment:
            Deployment record to save if we crash while waiting

        :param contract:
            ``name``, ``method`` and ``args`` to include in :py:class:`UnknownSignerError`

        :param keep_pending:
            Leave the pending entry in place, the caller removes it when it has saved the result

        :raise UnknownSignerError:
            We cannot sign for the sender

        :raise ChainExecutionFailed:
            Transaction reverted

        :return:
            Tuple (transaction hash, receipt)
        """
        if not signer.can_sign():
            data = to_json_friendly_tx(dict(tx, **{"from": signer.address}))
            if contract:
                data["contract"] = contract
            raise UnknownSignerError(data)

        sent = self.backend.send_transaction(signer, tx)
        tx_hash = to_0x_hex(sent.tx_hash)
        logger.info("Broadcasted %s from %s, nonce %s", tx_hash, signer.address, tx.get("nonce"))

        if self.pending_store is not None:
            self.pending_store.add(
                PendingTransaction(
                    tx_hash=tx_hash,
                    transaction=to_json_friendly_tx(tx),
                    name=name,
                    raw_transaction=to_0x_hex(sent.raw_transaction) if sent.raw_transaction else None,
                    deployment=deployment.to_json() if deployment else None,
                )
            )

        if wait_confirmations is None:
            wait_confirmations = self.wait_confirmations

        try:
            receipt = self.backend.wait_for_receipt(sent.tx_hash, wait_confirmations, poll_delay=self.poll_delay)
        except ChainExecutionFailed:
            self.forget_pending(tx_hash)
            raise

        if not keep_pending:
            self.forget_pending(tx_hash)
        return tx_hash, receipt

    def forget_pending(self, tx_hash: str):
        if self.pending_store is not None:
            self.pending_store.remove(tx_hash)

    #
    # Deployments
    #

    def fetch_if_different(self, name: str, options: DeployOptions) -> DiffResult:
        """Would deploying with these options change anything.

        :raise NodeDesyncError:
            The recorded deployment transaction cannot be fetched from the node
        """
        if options.deterministic_deployment:
            address = self.get_deterministic_address(name, options)
            code = self.backend.get_code(address)
            return DiffResult(differences=len(code) == 0, address=address)

        deployment = self.ledger.get_or_none(name)
        if deployment is None:
            return DiffResult(differences=True)

        if options.skip_if_already_deployed:
            return DiffResult(differences=False, address=deployment.address)

        tx_hash = deployment.transaction_hash_from_receipt
        if not tx_hash:
            logger.error(
                "No transaction details found for %s's previous deployment, if the deployment is to be discarded, please delete its record",
                name,
            )
            return DiffResult(differences=False, address=deployment.address)

        historical_tx = self.backend.get_transaction(tx_hash)
        if historical_tx is None:
            raise NodeDesyncError(name, tx_hash)

        factory, _, _ = self.get_factory(name, options)
        differences = factory.compare_deployment_transaction(historical_tx, deployment)
        return DiffResult(differences=differences, address=deployment.address)

    def deploy_one(self, name: str, options: DeployOptions, fails_on_existing_deterministic=False) -> DeployResult:
        """Deploy a contract under a logical name, unless the same deployment exists.

        :param fails_on_existing_deterministic:
            Raise instead of adopting a contract already at the deterministic address

        :raise AlreadyDeployedError:
            See ``fails_on_existing_deterministic``
        """
        with self.ledger.lock(name):
            diff = self.fetch_if_different(name, options)
            if diff.differences:
                return self._deploy(name, options)

            if fails_on_existing_deterministic and options.deterministic_deployment:
                raise AlreadyDeployedError(diff.address)

            deployment = self.ledger.get_or_none(name)
            assert diff.address, f"No differences found for {name} but no address, this should be impossible"

            if deployment is not None and deployment.address.lower() == diff.address.lower():
                result = DeployResult(deployment=deployment, newly_deployed=False)
            else:
                # The CREATE2 address commits to the init code,
                # so code there is the contract we would deploy
                factory, artifact, artifact_name = self.get_factory(name, options)
                deployment = self.build_deployment(artifact, artifact_name, factory, options)
                deployment.address = diff.address
                self.ledger.save(name, deployment)
                result = DeployResult(deployment=deployment, newly_deployed=False)

            log_progress(options, "reusing %s at %s", name, result.address)
            return result

    def build_deployment(self, artifact: ExtendedArtifact, artifact_name: Optional[str], factory: DeploymentFactory, options: DeployOptions) -> Deployment:
        """Deployment record before we know its address and receipt."""
        tx = factory.get_deploy_transaction()
        factory_deps = tx.get("eip712Meta", {}).get("factoryDeps")
        return Deployment(
            address="",
            abi=artifact.abi,
            args=list(options.args),
            libraries=dict(options.libraries or {}),
            linked_data=options.linked_data,
            bytecode=factory.bytecode,
            deployed_bytecode=artifact.deployed_bytecode,
            metadata=artifact.metadata,
            solc_input_hash=artifact.solc_input_hash,
            storage_layout=artifact.storage_layout,
            devdoc=artifact.devdoc,
            userdoc=artifact.userdoc,
            factory_deps=factory_deps,
            artifact_name=artifact_name,
        )

    def _deploy(self, name: str, options: DeployOptions) -> DeployResult:
        sender = self.signers.resolve_address(options.sender)
        signer = self.signers.get_signer(options.sender)

        factory, artifact, artifact_name = self.get_factory(name, options)
        tx = factory.get_deploy_transaction()

        create2_address = None
        if options.deterministic_deployment:
            if not self.backend.supports_deterministic_send:
                raise UnsupportedTransaction(f"Deterministic deployment is not supported on {self.backend.name}")
            data = tx.get("data")
            if not isinstance(data, (bytes, str)):
                raise UnsupportedTransaction("Unsigned transaction data as non-inline bytes is not supported")
            create2_factory = self.ensure_create2_deployer_ready(options)
            salt = normalise_salt(options.deterministic_deployment)
            create2_address = factory.get_create2_address(create2_factory, salt)
            tx["to"] = create2_factory
            tx["data"] = HexBytes(salt + HexBytes(data))

        self.populate_transaction(tx, sender, options)

        pre_deployment = self.build_deployment(artifact, artifact_name, factory, options)
        if create2_address:
            pre_deployment.address = create2_address

        log_progress(options, "deploying %s", name)
        tx_hash, receipt = self.send_transaction(
            signer,
            tx,
            wait_confirmations=options.wait_confirmations,
            name=name,
            deployment=pre_deployment,
            keep_pending=True,
        )

        address = factory.get_deployed_address(receipt, create2_address)
        if not address:
            self.forget_pending(tx_hash)
            raise ContractDeploymentFailed(name, tx_hash, receipt)

        deployment = dataclasses.replace(
            pre_deployment,
            address=address,
            receipt=to_json_friendly_tx(receipt),
            transaction_hash=tx_hash,
        )
        self.ledger.save(name, deployment)
        self.forget_pending(tx_hash)

        log_progress(options, "deployed %s at %s with %s gas (tx: %s)", name, address, receipt.get("gasUsed"), tx_hash)
        return DeployResult(deployment=deployment, newly_deployed=True)

    def deterministic(self, name: str, options: DeployOptions, deploy: Callable[[str, DeployOptions], DeployResult] | None = None) -> DeterministicResult:
        """Predict the address of a deterministic deployment.

        :param deploy:
            Function to perform the deployment later, defaults to :py:meth:`deploy_one`
        """
        if not options.deterministic_deployment:
            options = dataclasses.replace(options, deterministic_deployment=True)
        deploy = deploy or self.deploy_one
        return DeterministicResult(
            address=self.get_deterministic_address(name, options),
            deploy=lambda: deploy(name, options),
        )

    def ensure_create2_deployer_ready(self, options: DeployOptions | TxOptions) -> HexAddress:
        """Make sure the CREATE2 factory exists on the chain.

        If not, fund its one-time deployer account
        and broadcast the pre-signed factory deployment transaction.

        :return:
            Factory address
        """
        config = self.deterministic_factory
        factory_address = self.get_create2_factory_address()
        if len(self.backend.get_code(factory_address)) > 0:
            return factory_address

        deployer = Web3.to_checksum_address(config.deployer)
        funding_options = TxOptions(
            sender=options.sender,
            gas_price=options.gas_price,
            max_fee_per_gas=options.max_fee_per_gas,
            max_priority_fee_per_gas=options.max_priority_fee_per_gas,
            log=options.log,
        )
        log_progress(options, "sending eth to create2 contract deployer address %s", deployer)
        self.raw_tx(funding_options, to=deployer, value=config.funding)

        log_progress(options, "deploying create2 deployer contract at %s using deterministic deployment", factory_address)
        raw = HexBytes(config.signed_tx)
        tx_hash = send_and_map_errors(lambda: self.web3.eth.send_raw_transaction(raw), {"from": deployer, "data": config.signed_tx})
        self.backend.wait_for_receipt(tx_hash, poll_delay=self.poll_delay)
        return factory_address

    #
    # Contract calls
    #

    def execute(self, name: str, options: TxOptions, method: str, *args) -> dict:
        """Send a transaction to a deployed contract.

        :raise ValueError:
            No such method, or wrong number of arguments

        :raise UnknownSignerError:
            We cannot sign for the sender. The error carries the full transaction.

        :return:
            Receipt
        """
        assert options.sender, "execute() needs a sender"
        deployment = self.ledger.get(name)
        try:
            find_function_abi(deployment.abi, method, len(args))
        except ValueError as e:
            raise ValueError(f"Cannot execute {method} on contract deployed as {name}: {e}") from e

        sender = self.signers.resolve_address(options.sender)
        signer = self.signers.get_signer(options.sender)
        tx = {"to": Web3.to_checksum_address(deployment.address), "data": encode_function_call(deployment.abi, method, args)}
        if options.value:
            tx["value"] = options.value
        self.populate_transaction(tx, sender, options)

        log_progress(options, "executing %s.%s(%s)", name, method, present_solidity_args(args))
        tx_hash, receipt = self.send_transaction(
            signer,
            tx,
            wait_confirmations=options.wait_confirmations,
            contract={"name": name, "method": method, "args": list(args)},
        )
        log_progress(options, "%s.%s performed with %s gas (tx: %s)", name, method, receipt.get("gasUsed"), tx_hash)
        return receipt

    def read(self, name: str, options: TxOptions | None, method: str, *args) -> Any:
        """Call a view function of a deployed contract.

        :return:
            Decoded output. Single value for single output functions, tuple for multiple outputs.
        """
        options = options or TxOptions()
        deployment = self.ledger.get(name)
        try:
            entry = find_function_abi(deployment.abi, method, len(args))
        except ValueError as e:
            raise ValueError(f"Cannot read {method} on contract {name}: {e}") from e

        tx = {"to": Web3.to_checksum_address(deployment.address), "data": encode_function_call(deployment.abi, method, args)}
        if options.sender:
            tx["from"] = self.signers.resolve_address(options.sender)
        if options.value:
            tx["value"] = options.value
        if options.gas_limit:
            tx["gas"] = options.gas_limit
        result = self.web3.eth.call(tx, options.block_identifier)
        return decode_function_output(entry, result)

    def raw_tx(self, options: TxOptions, to: str | None = None, data: bytes | str = b"", value: int | None = None) -> dict:
        """Send an arbitrary transaction through the same fee, nonce and gas handling as deployments.

        :param to:
            Defaults to ``options.to``

        :return:
            Receipt
        """
        assert options.sender, "raw_tx() needs a sender"
        to = to or options.to
        sender = self.signers.resolve_address(options.sender)
        signer = self.signers.get_signer(options.sender)
        tx = {"data": HexBytes(data)}
        if to:
            tx["to"] = Web3.to_checksum_address(to)
        if value:
            tx["value"] = value
        self.populate_transaction(tx, sender, options)
        _, receipt = self.send_transaction(signer, tx, wait_confirmations=options.wait_confirmations)
        return receipt

    def get_signer(self, address: str) -> Signer:
        return self.signers.get_signer(address)


def catch_unknown_signer(action: Callable[[], Any], log=True) -> Optional[dict]:
    """Run an action, and turn :py:class:`UnknownSignerError` to the transaction someone else needs to sign.

    .. code-block:: python

        tx = catch_unknown_signer(lambda: deployments.execute("Token", TxOptions(sender=multisig), "pause"))
        if tx:
            print("Send this from your multisig", tx)

    :return:
        ``None`` if the action completed, otherwise the transaction as ``{"from", "to", "value", "data"}``
    """
    try:
        action()
    except UnknownSignerError as e:
        data = e.data
        if log:
            logger.warning("No signer for %s, please execute the following", data.get("from"))
            contract = data.get("contract")
            if contract:
                args = "\n".join(f"  - {a}" for a in contract["args"])
                logger.warning(
                    "\nfrom: %s\nto: %s (%s)\nvalue: %s\nmethod: %s\nargs:\n%s\n\n(raw data: %s)",
                    data.get("from"),
                    data.get("to"),
                    contract["name"],
                    data.get("value", 0),
                    contract["method"],
                    args,
                    data.get("data"),
                )
            else:
                logger.warning(
                    "\nfrom: %s\nto: %s\nvalue: %s\ndata: %s",
                    data.get("from"),
                    data.get("to") or "0x0000000000000000000000000000000000000000",
                    data.get("value", 0),
                    data.get("data"),
                )
        value = data.get("value")
        return {
            "from": data.get("from"),
            "to": data.get("to"),
            "value": str(value) if value is not None else None,
            "data": data.get("data"),
        }
    return None


def log_progress(options, msg: str, *args):
    """User requested progress logging goes to INFO, otherwise DEBUG."""
    logger.log(logging.INFO if getattr(options, "log", False) else logging.DEBUG, msg, *args)
