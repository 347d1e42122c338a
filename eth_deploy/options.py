"""Deployment options and results.

Options are frozen. Use :py:func:`dataclasses.replace` to derive variants:

.. code-block:: python

    options = DeployOptions(sender="deployer", args=(1, 2))
    deterministic = dataclasses.replace(options, deterministic_deployment=True)
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

from eth_deploy.artifacts import ExtendedArtifact
from eth_deploy.ledger import Deployment


@dataclass(frozen=True)
class ProxyExecute:
    """Call made through the proxy after deployment or upgrade.

    Either give ``method_name`` and ``args`` which are used both on the first deployment and upgrades,
    or separate ``init`` and ``on_upgrade`` calls.
    """

    method_name: Optional[str] = None

    args: Optional[Sequence[Any]] = None

    #: Called on the first deployment
    init: Optional["ProxyExecute"] = None

    #: Called on upgrades
    on_upgrade: Optional["ProxyExecute"] = None


@dataclass(frozen=True)
class UpgradeFunction:
    """Custom upgrade method on the proxy or the proxy admin.

    ``upgrade_args`` is a template, see :py:func:`eth_deploy.proxy.replace_template_args`.
    """

    method_name: str

    upgrade_args: Sequence[str]


@dataclass(frozen=True)
class ProxyOptions:
    """How to deploy a contract behind a proxy."""

    #: Owner or admin of the proxy. Defaults to the deployer.
    owner: Optional[str] = None

    #: ``EIP173Proxy``, ``EIP173ProxyWithReceive``, ``OpenZeppelinTransparentProxy``,
    #: ``OptimizedTransparentProxy``, ``UUPS`` or a custom artifact name or artifact
    proxy_contract: Union[str, ExtendedArtifact, None] = None

    #: Constructor argument template of the proxy, e.g. ``["{implementation}", "{admin}", "{data}"]``
    proxy_args: Optional[Sequence[Any]] = None

    #: Name of the implementation deployment record. Defaults to ``<name>_Implementation``.
    implementation_name: Optional[str] = None

    #: Shortcut for ``execute=ProxyExecute(method_name=...)``
    method_name: Optional[str] = None

    execute: Optional[ProxyExecute] = None

    #: Safety rail against re-running an upgrade step
    upgrade_index: Optional[int] = None

    #: Check that merged proxy and implementation ABIs do not collide
    check_abi_conflict: Optional[bool] = None

    #: Refuse to upgrade proxies whose admin slot is zero
    check_proxy_admin: Optional[bool] = None

    #: Upgrade through an admin contract, e.g. ``DefaultProxyAdmin``.
    #:
    #: Either a name of a default artifact or ``{"name": ..., "artifact": ...}``.
    via_admin_contract: Union[str, dict, None] = None

    upgrade_function: Optional[UpgradeFunction] = None


@dataclass(frozen=True)
class DeployOptions:
    """What and how to deploy under a logical name."""

    #: Named account, address or private key
    sender: str

    #: Artifact name or artifact. Defaults to the logical name.
    contract: Union[str, ExtendedArtifact, None] = None

    #: Constructor arguments
    args: Sequence[Any] = ()

    #: Library name -> address
    libraries: dict = field(default_factory=dict)

    gas_limit: Optional[int] = None

    gas_price: Optional[int] = None

    max_fee_per_gas: Optional[int] = None

    max_priority_fee_per_gas: Optional[int] = None

    value: Optional[int] = None

    #: Explicit nonce, ``"pending"`` or ``"latest"``
    nonce: Union[int, str, None] = None

    #: Add this much to the gas estimate
    estimate_gas_extra: Optional[int] = None

    #: Never use more gas than this when estimating
    estimated_gas_limit: Optional[int] = None

    #: ``True`` for CREATE2 with zero salt, or an explicit salt
    deterministic_deployment: Union[bool, str, bytes, None] = None

    #: ``True``, proxy contract name or full proxy options
    proxy: Union[bool, str, ProxyOptions, None] = None

    #: Reuse the existing record even if the bytecode changed
    skip_if_already_deployed: bool = False

    #: Block count to wait for
    wait_confirmations: Optional[int] = None

    #: Stored with the record
    linked_data: Any = None

    #: Log progress at INFO level
    log: bool = False


@dataclass(frozen=True)
class FacetOptions:
    """A diamond facet with its own constructor arguments."""

    #: Deployment name of the facet. Defaults to ``<diamond>_facet_<contract>``.
    name: Optional[str] = None

    contract: Union[str, ExtendedArtifact, None] = None

    args: Optional[Sequence[Any]] = None

    #: Deploy the facet with CREATE2, on by default
    deterministic: Union[bool, str, bytes, None] = None

    libraries: Optional[dict] = None

    linked_data: Any = None


@dataclass(frozen=True)
class DiamondExecute:
    """Initialisation call for a diamond."""

    method_name: str

    args: Sequence[Any] = ()

    #: Dedicated init contract. Otherwise the method is searched in facets.
    contract: Union[str, dict, None] = None


@dataclass(frozen=True)
class DiamondOptions:
    """How to deploy or upgrade a diamond."""

    sender: str

    #: Facets by name, or with their own options
    facets: Sequence[Union[str, FacetOptions]] = ()

    #: Owner of the diamond. Defaults to the deployer.
    owner: Optional[str] = None

    #: Default constructor args for facets that do not specify them
    facets_args: Optional[Sequence[Any]] = None

    #: Facet name -> selectors to leave out of the diamond
    exclude_selectors: dict = field(default_factory=dict)

    execute: Optional[DiamondExecute] = None

    #: Include the default ``diamondCut`` facet
    default_cut_facet: bool = True

    #: Include the default ownership facet
    default_ownership_facet: bool = True

    #: Diamond proxy contract. Defaults to ``DiamondBase``.
    diamond_contract: Union[str, ExtendedArtifact, None] = None

    #: Diamond constructor argument template
    diamond_contract_args: Optional[Sequence[Any]] = None

    #: 32 byte hex salt for CREATE2 deployment of the diamond
    deterministic_salt: Optional[str] = None

    upgrade_index: Optional[int] = None

    libraries: dict = field(default_factory=dict)

    linked_data: Any = None

    gas_limit: Optional[int] = None

    gas_price: Optional[int] = None

    max_fee_per_gas: Optional[int] = None

    max_priority_fee_per_gas: Optional[int] = None

    nonce: Union[int, str, None] = None

    estimate_gas_extra: Optional[int] = None

    estimated_gas_limit: Optional[int] = None

    wait_confirmations: Optional[int] = None

    log: bool = False


@dataclass(frozen=True)
class TxOptions:
    """Options for :py:meth:`eth_deploy.deployments.Deployments.execute` and ``read``."""

    sender: Optional[str] = None

    to: Optional[str] = None

    value: Optional[int] = None

    gas_limit: Optional[int] = None

    gas_price: Optional[int] = None

    max_fee_per_gas: Optional[int] = None

    max_priority_fee_per_gas: Optional[int] = None

    nonce: Union[int, str, None] = None

    estimate_gas_extra: Optional[int] = None

    estimated_gas_limit: Optional[int] = None

    wait_confirmations: Optional[int] = None

    log: bool = False

    #: Block to read at
    block_identifier: Union[int, str] = "latest"


@dataclass
class DiffResult:
    """Would deploying change anything."""

    differences: bool

    #: Known address, if any
    address: Optional[str] = None


@dataclass
class DeployResult:
    """Outcome of a deployment call."""

    deployment: Deployment

    #: ``False`` when an existing deployment was reused
    newly_deployed: bool

    @property
    def address(self) -> str:
        return self.deployment.address

    @property
    def abi(self) -> list[dict]:
        return self.deployment.abi

    @property
    def receipt(self) -> Optional[dict]:
        return self.deployment.receipt

    @property
    def implementation(self) -> Optional[str]:
        return self.deployment.implementation
