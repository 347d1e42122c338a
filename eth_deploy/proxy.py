"""Deploy and upgrade contracts behind proxies.

Supported proxy flavours:

- ``EIP173Proxy`` and ``EIP173ProxyWithReceive``: the proxy owner calls ``upgradeTo`` directly

- ``OpenZeppelinTransparentProxy`` and ``OptimizedTransparentProxy``: upgrades go through
  a ``DefaultProxyAdmin`` contract

- ``UUPS``: the implementation carries the upgrade logic

- Any custom proxy artifact, with its own constructor argument template

A proxied deployment produces three ledger records:

- ``<name>_Implementation``: the implementation contract

- ``<name>_Proxy``: the proxy contract

- ``<name>``: the proxy address with the merged proxy and implementation ABI

Example:

.. code-block:: python

    result = deployments.deploy(
        "Vault",
        DeployOptions(
            sender=deployer,
            contract="VaultV1",
            proxy=ProxyOptions(owner=multisig, execute=ProxyExecute(init=ProxyExecute(method_name="initialize", args=[asset]))),
        ),
    )

Before an upgrade sends any transaction, we check that the declared owner
is the one who can upgrade the proxy. Otherwise :py:class:`AuthorizationError` is raised.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import ZERO_ADDRESS, encode_function_call, get_constructor_abi, merge_abis
from eth_deploy.artifacts import ArtifactNotFound, ExtendedArtifact
from eth_deploy.ledger import Deployment, DeploymentLedger
from eth_deploy.options import DeployOptions, DeployResult, ProxyOptions, TxOptions
from eth_deploy.reconcile import DeterministicResult, ReconciliationEngine

logger = logging.getLogger(__name__)


#: EIP-1967 admin slot, ``bytes32(uint256(keccak256('eip1967.proxy.admin')) - 1)``
ADMIN_SLOT = "0xb53127684a568b3173ae13b9f8a6016e243e63b6e8ee1178d6a717850b5d6103"

#: Proxy flavours we know how to set up without further configuration
DEFAULT_PROXY_CONTRACTS = ("EIP173Proxy", "EIP173ProxyWithReceive", "OpenZeppelinTransparentProxy", "OptimizedTransparentProxy", "UUPS")

#: Constructor argument template of EIP-173 and transparent proxies
DEFAULT_PROXY_ARGS = ("{implementation}", "{admin}", "{data}")


class AuthorizationError(Exception):
    """Declared owner cannot upgrade the contract.

    Also raised when the ownership has been renounced.
    """

    def __init__(self, msg: str, required_caller: Optional[str] = None):
        super().__init__(msg)
        #: Address that could do the upgrade, ``None`` if nobody can
        self.required_caller = required_caller


class UpgradeIndexError(Exception):
    """``upgrade_index`` does not match the deployment history."""


def check_upgrade_index(old_deployment: Optional[Deployment], upgrade_index: Optional[int]) -> Optional[DeployResult]:
    """Guard against re-running an upgrade step.

    - ``0``: the first deployment. Once deployed, it is returned as is.

    - ``1``: the first upgrade. Needs an existing deployment. Once upgraded, returned as is.

    - ``n >= 2``: needs ``n - 1`` upgrades in the history. Once there are more, returned as is.

    When the record has no ``history``, ``num_deployments`` is used instead.

    :return:
        Existing deployment if this step has already been done, ``None`` if we should go ahead

    :raise UpgradeIndexError:
        History is not where it should be for this step
    """
    if upgrade_index is None:
        return None

    if upgrade_index == 0:
        if old_deployment is not None:
            return DeployResult(deployment=old_deployment, newly_deployed=False)
        return None

    if old_deployment is None:
        raise UpgradeIndexError(f"upgrade_index == {upgrade_index}: expects the deployment to already exist")

    if upgrade_index == 1:
        if old_deployment.history or (old_deployment.num_deployments or 0) > 1:
            return DeployResult(deployment=old_deployment, newly_deployed=False)
        return None

    if old_deployment.history is None:
        num_deployments = old_deployment.num_deployments or 0
        if num_deployments <= 1:
            raise UpgradeIndexError(f"upgrade_index > 1: expects the deployment history to exist, or num_deployments to be greater than 1")
        if num_deployments > upgrade_index:
            return DeployResult(deployment=old_deployment, newly_deployed=False)
        if num_deployments < upgrade_index:
            raise UpgradeIndexError(f"upgrade_index == {upgrade_index}: expects num_deployments to be at least {upgrade_index}, got {num_deployments}")
        return None

    history_length = len(old_deployment.history)
    if history_length > upgrade_index - 1:
        return DeployResult(deployment=old_deployment, newly_deployed=False)
    if history_length < upgrade_index - 1:
        raise UpgradeIndexError(f"upgrade_index == {upgrade_index}: expects the deployment history length to be at least {upgrade_index - 1}, got {history_length}")
    return None


def extend_history(old_deployment: Optional[Deployment]) -> Optional[list[Deployment]]:
    """Append the superseded version to the history.

    History is only kept for records that already track it.
    """
    if old_deployment is None or old_deployment.history is None:
        return None
    return old_deployment.history + [dataclasses.replace(old_deployment, history=None)]


def replace_template_args(
    template: Sequence[Any],
    implementation: Optional[str] = None,
    admin: Optional[str] = None,
    data: Optional[bytes] = None,
    proxy: Optional[str] = None,
) -> list:
    """Fill ``{implementation}``, ``{admin}``, ``{data}`` and ``{proxy}`` placeholders.

    Other template values are passed through as is.

    .. code-block:: python

        args = replace_template_args(["{implementation}", "{admin}", "{data}"], implementation=impl, admin=owner, data=b"")
        assert args == [impl, owner, b""]

    :raise ValueError:
        ``{proxy}`` is used, but there is no proxy address yet
    """
    result = []
    for value in template:
        if value == "{implementation}":
            result.append(implementation)
        elif value == "{admin}":
            result.append(admin)
        elif value == "{data}":
            result.append(data)
        elif value == "{proxy}":
            if not proxy:
                raise ValueError("Expected proxy address but none was specified")
            result.append(proxy)
        else:
            result.append(value)
    return result


@dataclass
class ProxyInfo:
    """Everything resolved from :py:class:`ProxyOptions` before we touch the chain."""

    proxy_name: str

    proxy_contract: ExtendedArtifact

    proxy_args_template: list

    #: Proxy ABI + implementation ABI, with the proxy constructor
    merged_abi: list[dict]

    #: Declared owner of the proxy
    owner: HexAddress

    implementation_artifact: ExtendedArtifact

    implementation_name: str

    implementation_options: DeployOptions

    old_deployment: Optional[Deployment]

    #: Call made through the proxy after the deployment or upgrade
    update_method: Optional[str]

    update_args: list

    upgrade_index: Optional[int]

    check_proxy_admin: bool

    upgrade_method: str

    upgrade_args_template: list

    #: Name of the admin contract deployment, for transparent proxies
    admin_name: Optional[str] = None

    #: Admin contract artifact, if we may need to deploy it
    admin_contract: Optional[ExtendedArtifact] = None

    #: Admin contract that must already exist
    admin_deployed: Optional[Deployment] = None


class ProxyUpgradeCoordinator:
    """Deploy contracts behind proxies and upgrade them."""

    def __init__(self, engine: ReconciliationEngine):
        self.engine = engine
        self.web3: Web3 = engine.web3
        self.ledger: DeploymentLedger = engine.ledger

    def _get_default_artifact(self, name: str) -> ExtendedArtifact:
        assert self.ledger.artifact_store is not None, f"No artifact store, cannot get {name}"
        return self.ledger.artifact_store.get_default_artifact(name, tron=self.engine.backend.uses_tron_default_artifacts)

    def get_proxy_info(self, name: str, options: DeployOptions) -> ProxyInfo:
        """Resolve proxy flavour, templates and the implementation deployment options.

        :raise ValueError:
            Inconsistent options, or the implementation does not match the arguments

        :raise eth_deploy.abi.AbiConflict:
            Proxy and implementation ABIs collide
        """
        proxy = options.proxy
        if proxy is True:
            proxy = ProxyOptions()
        elif isinstance(proxy, str):
            proxy = ProxyOptions(method_name=proxy)
        assert isinstance(proxy, ProxyOptions), f"Not a proxied deployment: {options.proxy}"

        old_deployment = self.ledger.get_or_none(name)
        contract = options.contract
        implementation_name = f"{name}_Implementation"
        update_method = None
        update_args = None
        check_abi_conflict = True
        check_proxy_admin = True
        via_admin_contract = None
        proxy_args_template = list(DEFAULT_PROXY_ARGS)
        upgrade_method = None
        upgrade_args_template: list = []

        if proxy.proxy_args is not None:
            proxy_args_template = list(proxy.proxy_args)

        if proxy.implementation_name:
            implementation_name = proxy.implementation_name
            if implementation_name == name:
                raise ValueError(f"implementation_name cannot be equal to the deployment's name ({name}) as this is used for the proxy itself")
            if not contract:
                contract = implementation_name

        if proxy.method_name:
            if proxy.execute:
                raise ValueError("Cannot have both method_name and execute options for proxy")
            update_method = proxy.method_name
        elif proxy.execute:
            execute = proxy.execute
            if execute.method_name:
                if execute.init or execute.on_upgrade:
                    raise ValueError("Cannot have both method_name and (on_upgrade or init) options for proxy execute")
                update_method = execute.method_name
                update_args = execute.args
            else:
                step = execute.on_upgrade if old_deployment else execute.init
                if step is not None:
                    update_method = step.method_name
                    update_args = step.args

        proxy_contract = proxy.proxy_contract or "EIP173Proxy"
        if isinstance(proxy_contract, str):
            if proxy_contract in DEFAULT_PROXY_CONTRACTS:
                if proxy_contract in ("OpenZeppelinTransparentProxy", "OptimizedTransparentProxy"):
                    check_abi_conflict = False
                    via_admin_contract = "DefaultProxyAdmin"
                elif proxy_contract == "UUPS":
                    check_abi_conflict = False
                    check_proxy_admin = False
                    if proxy.proxy_args is None:
                        proxy_args_template = ["{implementation}", "{data}"]
                proxy_contract = self._get_default_artifact(proxy_contract)
            else:
                proxy_contract = self.ledger.get_extended_artifact(proxy_contract)

        if proxy.check_abi_conflict is not None:
            check_abi_conflict = proxy.check_abi_conflict
        if proxy.check_proxy_admin is not None:
            check_proxy_admin = proxy.check_proxy_admin
        if proxy.via_admin_contract:
            via_admin_contract = proxy.via_admin_contract
        if proxy.upgrade_function:
            upgrade_method = proxy.upgrade_function.method_name
            upgrade_args_template = list(proxy.upgrade_function.upgrade_args)

        owner = self.engine.signers.resolve_address(proxy.owner or options.sender)
        implementation_args = list(options.args)

        implementation_options = DeployOptions(
            sender=options.sender,
            contract=contract or name,
            args=implementation_args,
            libraries=options.libraries,
            gas_price=options.gas_price,
            max_fee_per_gas=options.max_fee_per_gas,
            max_priority_fee_per_gas=options.max_priority_fee_per_gas,
            estimate_gas_extra=options.estimate_gas_extra,
            estimated_gas_limit=options.estimated_gas_limit,
            deterministic_deployment=options.deterministic_deployment,
            skip_if_already_deployed=options.skip_if_already_deployed,
            wait_confirmations=options.wait_confirmations,
            linked_data=options.linked_data,
            log=options.log,
        )
        artifact, _ = self.engine.get_artifact(name, implementation_options.contract)

        # Proxy constructor is the constructor of the merged ABI
        merged_abi = merge_abis(
            [
                [e for e in proxy_contract.abi if e.get("type") != "constructor"],
                [e for e in artifact.abi if e.get("type") != "constructor"],
            ],
            check=check_abi_conflict,
            skip_supports_interface=True,
        )
        proxy_constructor = get_constructor_abi(proxy_contract.abi)
        if proxy_constructor:
            merged_abi.append(proxy_constructor)

        constructor = get_constructor_abi(artifact.abi)
        constructor_arg_count = len(constructor.get("inputs", [])) if constructor else 0
        if constructor_arg_count != len(implementation_args):
            raise ValueError(
                f"The number of arguments passed ({len(implementation_args)}) does not match the number of arguments in the implementation constructor ({constructor_arg_count}). "
                f"Please specify the correct number of arguments as part of the deploy options: args"
            )

        if update_method:
            candidates = [e for e in artifact.abi if e.get("type") == "function" and e.get("name") == update_method]
            if not candidates:
                raise ValueError(f"Contract needs to implement function {update_method}")
            if update_args is None:
                if any(len(e.get("inputs", [])) == len(implementation_args) for e in candidates):
                    update_args = implementation_args
                else:
                    raise ValueError(
                        f"If only the method name {update_method} and no args are specified for the proxy deployment, "
                        f"the arguments used for the implementation contract are reused for the update method. "
                        f"The implementation constructor and {update_method} do not have the same number of arguments. "
                        f"Use execute options and give the arguments for the update method."
                    )
        if update_args is None:
            update_args = implementation_args

        admin_name = None
        admin_contract = None
        admin_deployed = None
        if via_admin_contract:
            if isinstance(via_admin_contract, str):
                admin_name = via_admin_contract
                admin_artifact = via_admin_contract
            else:
                admin_name = via_admin_contract["name"]
                admin_artifact = via_admin_contract.get("artifact")
                if not admin_artifact:
                    admin_deployed = self.ledger.get(admin_name)

            if isinstance(admin_artifact, str):
                try:
                    admin_contract = self.ledger.get_extended_artifact(admin_artifact)
                except ArtifactNotFound:
                    if admin_artifact != "DefaultProxyAdmin":
                        raise
                    admin_contract = self._get_default_artifact("DefaultProxyAdmin")
            else:
                admin_contract = admin_artifact

        if not upgrade_method:
            if via_admin_contract:
                if update_method:
                    upgrade_method = "upgradeAndCall"
                    upgrade_args_template = ["{proxy}", "{implementation}", "{data}"]
                else:
                    upgrade_method = "upgrade"
                    upgrade_args_template = ["{proxy}", "{implementation}"]
            elif update_method:
                upgrade_method = "upgradeToAndCall"
                upgrade_args_template = ["{implementation}", "{data}"]
            else:
                upgrade_method = "upgradeTo"
                upgrade_args_template = ["{implementation}"]

        return ProxyInfo(
            proxy_name=f"{name}_Proxy",
            proxy_contract=proxy_contract,
            proxy_args_template=proxy_args_template,
            merged_abi=merged_abi,
            owner=owner,
            implementation_artifact=artifact,
            implementation_name=implementation_name,
            implementation_options=implementation_options,
            old_deployment=old_deployment,
            update_method=update_method,
            update_args=list(update_args),
            upgrade_index=proxy.upgrade_index,
            check_proxy_admin=check_proxy_admin,
            upgrade_method=upgrade_method,
            upgrade_args_template=upgrade_args_template,
            admin_name=admin_name,
            admin_contract=admin_contract,
            admin_deployed=admin_deployed,
        )

    def get_proxy_owner(self, proxy_address: HexAddress) -> HexAddress:
        """Read the EIP-1967 admin slot."""
        raw = HexBytes(self.web3.eth.get_storage_at(Web3.to_checksum_address(proxy_address), ADMIN_SLOT))
        return Web3.to_checksum_address(raw[-20:].rjust(20, b"\x00"))

    def check_proxy_admin(self, proxy: Deployment, expected_admin: HexAddress, check_proxy_admin: bool) -> Optional[HexAddress]:
        """Check who can upgrade the proxy.

        :return:
            The current proxy admin, ``None`` if the admin slot is not used

        :raise AuthorizationError:
            Proxy admin is not the expected one, or nobody
        """
        current_owner = self.get_proxy_owner(proxy.address)
        if current_owner == ZERO_ADDRESS:
            if check_proxy_admin:
                raise AuthorizationError("The proxy belongs to no-one. It cannot be upgraded anymore")
            return None
        if current_owner.lower() != expected_admin.lower():
            raise AuthorizationError(f"To change owner/admin, you need to call the proxy directly, it currently is {current_owner}", required_caller=current_owner)
        return current_owner

    def check_admin_owner(self, admin_name: str, owner: HexAddress) -> HexAddress:
        """Check the owner of the proxy admin contract.

        :raise AuthorizationError:
            Admin contract is owned by someone else, or nobody
        """
        current_owner = Web3.to_checksum_address(self.engine.read(admin_name, None, "owner"))
        if current_owner == ZERO_ADDRESS:
            raise AuthorizationError(f"The proxy admin ({admin_name}) belongs to no-one. The proxy cannot be upgraded anymore")
        if current_owner.lower() != owner.lower():
            raise AuthorizationError(f"To change owner/admin, you need to call transferOwnership on {admin_name}", required_caller=current_owner)
        return current_owner

    def check_upgrade_authority(self, info: ProxyInfo, proxy: Deployment):
        """Fail before sending anything if the declared owner cannot perform the upgrade."""
        if info.admin_name:
            admin = info.admin_deployed or self.ledger.get_or_none(info.admin_name)
            if admin is None:
                raise AuthorizationError(
                    f"Proxy {info.proxy_name} would need to be administered by {info.admin_name}, which does not exist yet",
                    required_caller=self.get_proxy_owner(proxy.address),
                )
            self.check_admin_owner(info.admin_name, info.owner)
            self.check_proxy_admin(proxy, admin.address, info.check_proxy_admin)
        else:
            self.check_proxy_admin(proxy, info.owner, info.check_proxy_admin)

    def _sub_options(self, options: DeployOptions, **kwargs) -> DeployOptions:
        """Options for proxy and admin deployments."""
        return DeployOptions(
            sender=options.sender,
            gas_price=options.gas_price,
            max_fee_per_gas=options.max_fee_per_gas,
            max_priority_fee_per_gas=options.max_priority_fee_per_gas,
            estimate_gas_extra=options.estimate_gas_extra,
            estimated_gas_limit=options.estimated_gas_limit,
            deterministic_deployment=options.deterministic_deployment,
            wait_confirmations=options.wait_confirmations,
            log=options.log,
            **kwargs,
        )

    def _tx_options(self, options: DeployOptions, sender: str) -> TxOptions:
        return TxOptions(
            sender=sender,
            gas_price=options.gas_price,
            max_fee_per_gas=options.max_fee_per_gas,
            max_priority_fee_per_gas=options.max_priority_fee_per_gas,
            estimate_gas_extra=options.estimate_gas_extra,
            estimated_gas_limit=options.estimated_gas_limit,
            wait_confirmations=options.wait_confirmations,
            log=options.log,
        )

    def deploy_via_proxy(self, name: str, options: DeployOptions) -> DeployResult:
        """Deploy or upgrade a proxied contract.

        :raise AuthorizationError:
            Declared owner cannot upgrade. Raised before any transaction is sent.

        :raise UpgradeIndexError:
            See :py:func:`check_upgrade_index`
        """
        with self.ledger.lock(name):
            info = self.get_proxy_info(name, options)
            old_deployment = info.old_deployment

            existing = check_upgrade_index(old_deployment, info.upgrade_index)
            if existing is not None:
                logger.info("%s upgrade index %d already done, skipping", name, info.upgrade_index)
                return existing

            proxy = self.ledger.get_or_none(info.proxy_name)
            if proxy is not None:
                diff = self.engine.fetch_if_different(info.implementation_name, info.implementation_options)
                if diff.differences:
                    self.check_upgrade_authority(info, proxy)

            proxy_admin = info.owner
            current_admin_owner = None
            if info.admin_name:
                admin = info.admin_deployed
                if admin is None:
                    admin = self.engine.deploy_one(
                        info.admin_name,
                        self._sub_options(options, contract=info.admin_contract, skip_if_already_deployed=True, args=[info.owner]),
                    ).deployment
                proxy_admin = admin.address
                current_admin_owner = self.check_admin_owner(info.admin_name, info.owner)

            implementation = self.engine.deploy_one(info.implementation_name, info.implementation_options)

            execute = {"methodName": info.update_method, "args": info.update_args} if info.update_method else None

            if old_deployment is not None and not implementation.newly_deployed:
                if (old_deployment.implementation or "").lower() != implementation.address.lower():
                    deployment = dataclasses.replace(
                        old_deployment,
                        implementation=implementation.address,
                        linked_data=options.linked_data,
                        abi=info.merged_abi,
                        execute=execute,
                        history=extend_history(old_deployment),
                    )
                    self.ledger.save(name, deployment)
                return DeployResult(deployment=self.ledger.get(name), newly_deployed=False)

            data = b""
            if info.update_method:
                data = encode_function_call(info.implementation_artifact.abi, info.update_method, info.update_args)

            if proxy is None:
                proxy_args = replace_template_args(info.proxy_args_template, implementation=implementation.address, admin=proxy_admin, data=data)
                proxy = self.engine.deploy_one(
                    info.proxy_name,
                    self._sub_options(options, contract=info.proxy_contract, args=proxy_args, skip_if_already_deployed=options.skip_if_already_deployed),
                    fails_on_existing_deterministic=True,
                ).deployment
            else:
                self._upgrade(name, options, info, proxy, proxy_admin, current_admin_owner, implementation.address, data)

            deployment = Deployment(
                address=proxy.address,
                abi=info.merged_abi,
                transaction_hash=proxy.transaction_hash,
                receipt=proxy.receipt,
                args=proxy.args,
                linked_data=options.linked_data,
                implementation=implementation.address,
                execute=execute,
                bytecode=info.proxy_contract.bytecode,
                deployed_bytecode=info.proxy_contract.deployed_bytecode,
                metadata=info.proxy_contract.metadata,
                solc_input_hash=info.proxy_contract.solc_input_hash,
                history=extend_history(old_deployment),
            )
            self.ledger.save(name, deployment)
            return DeployResult(deployment=self.ledger.get(name), newly_deployed=True)

    def _upgrade(
        self,
        name: str,
        options: DeployOptions,
        info: ProxyInfo,
        proxy: Deployment,
        proxy_admin: HexAddress,
        current_admin_owner: Optional[HexAddress],
        implementation: HexAddress,
        data: bytes,
    ):
        current_owner = self.check_proxy_admin(proxy, proxy_admin, info.check_proxy_admin)
        sender = current_owner or options.sender

        upgrade_method = info.upgrade_method
        upgrade_args_template = info.upgrade_args_template
        legacy_proxy = any(e.get("name") == "changeImplementation" for e in proxy.abi)
        if legacy_proxy:
            upgrade_method = "changeImplementation"
            upgrade_args_template = ["{implementation}", "{data}"]

        upgrade_args = replace_template_args(upgrade_args_template, implementation=implementation, admin=proxy_admin, data=data, proxy=proxy.address)

        logger.info("Upgrading %s to implementation %s with %s", name, implementation, upgrade_method)
        if info.admin_name:
            if legacy_proxy:
                raise ValueError("Old proxies do not support proxy admin contracts")
            assert current_admin_owner, "No current owner found for the proxy admin"
            self.engine.execute(info.admin_name, self._tx_options(options, current_admin_owner), upgrade_method, *upgrade_args)
        else:
            target = name if self.ledger.get_or_none(name) else info.proxy_name
            self.engine.execute(target, self._tx_options(options, sender), upgrade_method, *upgrade_args)

    def deterministic(self, name: str, options: DeployOptions, deploy: Callable[[str, DeployOptions], DeployResult]) -> DeterministicResult:
        """Predict the proxy and implementation addresses of a deterministic proxied deployment."""
        salt = options.deterministic_deployment or True
        options = dataclasses.replace(options, deterministic_deployment=salt)
        info = self.get_proxy_info(name, options)

        implementation_address = self.engine.get_deterministic_address(info.implementation_name, info.implementation_options)

        data = b""
        if info.update_method:
            data = encode_function_call(info.implementation_artifact.abi, info.update_method, info.update_args)

        proxy_admin = info.owner
        if info.admin_name:
            if info.admin_deployed is not None:
                proxy_admin = info.admin_deployed.address
            else:
                proxy_admin = self.engine.get_deterministic_address(
                    info.admin_name,
                    self._sub_options(options, contract=info.admin_contract, skip_if_already_deployed=True, args=[info.owner]),
                )

        proxy_args = replace_template_args(info.proxy_args_template, implementation=implementation_address, admin=proxy_admin, data=data)
        proxy_address = self.engine.get_deterministic_address(info.proxy_name, self._sub_options(options, contract=info.proxy_contract, args=proxy_args))
        return DeterministicResult(
            address=proxy_address,
            implementation_address=implementation_address,
            deploy=lambda: deploy(name, options),
        )
