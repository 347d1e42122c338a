"""EIP-2535 diamond deployments and upgrades.

A diamond is a proxy that routes each function selector to a facet contract.
Upgrades are expressed as a list of facet cuts sent to ``diamondCut``:

- ``Add``: route new selectors to a facet

- ``Replace``: route existing selectors to another facet

- ``Remove``: drop selectors

The planner deploys the desired facets, reads the live facet table from the diamond
with the ``facets()`` loupe function and computes the smallest cut list between the two.
If nothing changed, no transaction is sent.

The pure planning helpers :py:func:`plan_facet_cuts` and :py:func:`apply_facet_cuts`
work without a chain:

.. code-block:: python

    old = [Facet("0x1111111111111111111111111111111111111111", ["0x12345678", "0x9abcdef0"])]
    new = old + [Facet("0x2222222222222222222222222222222222222222", ["0x0badf00d"])]
    cuts = plan_facet_cuts(old, new)
    assert [c.action for c in cuts] == [FacetCutAction.add]

Diamonds deployed with the early diamond base contract are detected
by their bytecode fingerprint and upgraded with the legacy rules,
which never touch the loupe, ownership and cut selectors.
"""

import dataclasses
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Collection, Optional, Sequence

from eth_typing import HexAddress
from eth_utils import keccak
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import ZERO_ADDRESS, ZERO_BYTES32, encode_function_call, filter_abi, find_function_abi, get_function_selector, get_function_selectors, merge_abis
from eth_deploy.artifacts import ExtendedArtifact
from eth_deploy.compat import to_0x_hex
from eth_deploy.ledger import Deployment, DeploymentLedger
from eth_deploy.options import DeployOptions, DeployResult, DiamondOptions, FacetOptions, TxOptions
from eth_deploy.proxy import AuthorizationError, check_upgrade_index, extend_history
from eth_deploy.reconcile import ReconciliationEngine, log_progress

logger = logging.getLogger(__name__)


#: Selectors the legacy upgrade route never removes or replaces.
#:
#: Loupe functions, ``supportsInterface``, ``diamondCut``, ``transferOwnership`` and ``owner``.
LEGACY_PROTECTED_SELECTORS = frozenset(
    [
        "0xcdffacc6",
        "0x52ef6b2c",
        "0xadfca15e",
        "0x7a0ed627",
        "0x01ffc9a7",
        "0x1f931c1c",
        "0xf2fde38b",
        "0x8da5cb5b",
    ]
)

LOUPE_SELECTORS = ("0xcdffacc6", "0x52ef6b2c", "0xadfca15e", "0x7a0ed627", "0x01ffc9a7")

ERC173_SELECTORS = ("0xf2fde38b", "0x8da5cb5b")

DIAMOND_CUT_SELECTOR = "0x1f931c1c"

#: Interface ids registered on a new diamond: loupe, cut and ERC-173
LOUPE_INTERFACE_ID = "0x48e2b093"
CUT_INTERFACE_ID = "0x1f931c1c"
OWNERSHIP_INTERFACE_ID = "0x7f5828d0"

#: Diamond constructor argument template used when none is given
DEFAULT_DIAMOND_ARGS = ("{owner}", "{facetCuts}", "{initializations}")


class FacetCutAction(enum.IntEnum):
    """``IDiamondCut.FacetCutAction``"""

    add = 0
    replace = 1
    remove = 2


class DiamondVariant(enum.Enum):
    """Which upgrade rules apply to a diamond."""

    standard = "standard"

    #: Deployed with the early diamond base contract
    legacy = "legacy"


@dataclass
class Facet:
    """One row of the diamond loupe ``facets()`` table."""

    facet_address: HexAddress

    #: 0x prefixed lowercase 4 byte selectors
    function_selectors: list[str] = field(default_factory=list)

    def to_json(self) -> dict:
        return {"facetAddress": self.facet_address, "functionSelectors": list(self.function_selectors)}

    @staticmethod
    def from_json(data: dict) -> "Facet":
        return Facet(data["facetAddress"], [s.lower() for s in data["functionSelectors"]])


@dataclass
class FacetCut:
    """One ``diamondCut`` entry."""

    facet_address: HexAddress

    action: FacetCutAction

    function_selectors: list[str]

    def as_abi_tuple(self) -> tuple:
        """``(address,uint8,bytes4[])`` for ABI encoding."""
        return Web3.to_checksum_address(self.facet_address), int(self.action), [HexBytes(s) for s in self.function_selectors]


def plan_facet_cuts(old_facets: Sequence[Facet], new_facets: Sequence[Facet], protected: Collection[str] = frozenset()) -> list[FacetCut]:
    """Compute the cuts that turn the old facet table to the new one.

    - Selectors that moved to another facet address are replaced

    - Selectors that did not exist are added

    - Selectors not in any new facet are removed. Removals come first in the list,
      as ``diamondCut`` processes cuts in order.

    :param protected:
        Selectors never added, replaced or removed

    :return:
        Empty list if the tables already match
    """
    protected = {s.lower() for s in protected}

    old_selector_facet: dict[str, str] = {}
    for facet in old_facets:
        for selector in facet.function_selectors:
            old_selector_facet[selector.lower()] = facet.facet_address

    new_selectors = set()
    cuts = []
    for facet in new_facets:
        to_add = []
        to_replace = []
        for selector in facet.function_selectors:
            selector = selector.lower()
            new_selectors.add(selector)
            if selector in protected:
                continue
            old_address = old_selector_facet.get(selector)
            if old_address is None:
                to_add.append(selector)
            elif old_address.lower() != facet.facet_address.lower():
                to_replace.append(selector)

        if to_replace:
            cuts.append(FacetCut(facet.facet_address, FacetCutAction.replace, to_replace))
        if to_add:
            cuts.append(FacetCut(facet.facet_address, FacetCutAction.add, to_add))

    to_remove = [s for s in old_selector_facet if s not in new_selectors and s not in protected]
    if to_remove:
        cuts.insert(0, FacetCut(ZERO_ADDRESS, FacetCutAction.remove, to_remove))

    return cuts


def apply_facet_cuts(table: dict[str, str], cuts: Sequence[FacetCut]) -> dict[str, str]:
    """Apply cuts to a selector -> facet address table, the way ``diamondCut`` does.

    :return:
        New table, the input is not modified

    :raise ValueError:
        Cut is not valid against the table
    """
    result = {k.lower(): v for k, v in table.items()}
    for cut in cuts:
        for selector in cut.function_selectors:
            selector = selector.lower()
            if cut.action == FacetCutAction.add:
                if selector in result:
                    raise ValueError(f"Cannot add function that already exists: {selector}")
                result[selector] = cut.facet_address
            elif cut.action == FacetCutAction.replace:
                if selector not in result:
                    raise ValueError(f"Cannot replace function that does not exist: {selector}")
                if result[selector].lower() == cut.facet_address.lower():
                    raise ValueError(f"Cannot replace function with same function: {selector}")
                result[selector] = cut.facet_address
            else:
                if selector not in result:
                    raise ValueError(f"Cannot remove function that does not exist: {selector}")
                del result[selector]
    return result


def facets_to_table(facets: Sequence[Facet]) -> dict[str, str]:
    return {s.lower(): f.facet_address for f in facets for s in f.function_selectors}


def build_diamond_constructor_args(
    template: Sequence[Any],
    owner: HexAddress,
    facet_cuts: Sequence[FacetCut],
    erc165_init: Optional[tuple] = None,
    init: Optional[tuple] = None,
) -> list:
    """Fill the diamond constructor argument template.

    Placeholders:

    - ``{owner}``

    - ``{facetCuts}``, mandatory

    - ``{initializations}``: list of ``(initContract, initData)``, the interface registration first

    - ``{erc165}``: the interface registration ``(initContract, initData)``

    - ``{init}``: the user init call ``(initContract, initData)``

    - ``{initAddress}`` and ``{initData}``: the user init call as separate arguments

    :param erc165_init:
        ``(address, data)`` of the interface registration call

    :param init:
        ``(address, data)`` of the user init call, ``None`` if there is none

    :raise ValueError:
        Invalid template
    """
    args = list(template)

    if "{initializations}" in args and any(p in args for p in ("{init}", "{erc165}", "{initData}")):
        raise ValueError("{initializations} found but also one or more of {init} {erc165} {initData}")

    if "{facetCuts}" not in args:
        raise ValueError("diamond constructor needs a {facetCuts} argument")

    if init is not None and not any(p in args for p in ("{initializations}", "{init}", "{initData}")):
        raise ValueError("no {init} or {initData} found in list of args even though execute is set in option")

    init_address, init_data = init if init is not None else (ZERO_ADDRESS, b"")

    for i, value in enumerate(args):
        if value == "{owner}":
            args[i] = owner
        elif value == "{facetCuts}":
            args[i] = [c.as_abi_tuple() for c in facet_cuts]
        elif value == "{initializations}":
            assert erc165_init, "{initializations} needs the interface registration"
            initializations = [erc165_init]
            if init is not None and HexBytes(init_data) != HexBytes(b""):
                initializations.append((init_address, HexBytes(init_data)))
            args[i] = initializations
        elif value == "{erc165}":
            assert erc165_init, "{erc165} needs the interface registration"
            args[i] = erc165_init
        elif value == "{init}":
            args[i] = (init_address, HexBytes(init_data))
        elif value == "{initAddress}":
            args[i] = init_address
        elif value == "{initData}":
            args[i] = HexBytes(init_data)
    return args


def validate_deterministic_salt(salt: Any) -> str:
    """Diamonds need an explicit non-zero salt, so that different diamonds get different addresses.

    :raise ValueError:
        Salt is zero or not a 32 byte hex string
    """
    if not isinstance(salt, str):
        raise ValueError("deterministic_salt need to be a string, an non-zero bytes32 salt")
    if salt == ZERO_BYTES32:
        raise ValueError(
            "deterministic_salt cannot be 0x000..., it needs to be a non-zero bytes32 salt. "
            "This is to ensure you are explicitly specifying different addresses for multiple diamonds"
        )
    if len(salt) != 66:
        raise ValueError("deterministic_salt needs to be a string of 66 hexadecimal characters (including the 0x prefix)")
    return salt


@dataclass
class _ResolvedFacet:
    name: str
    artifact: ExtendedArtifact
    args: list
    libraries: dict
    linked_data: Any
    deterministic: Any
    excluded_selectors: set[str]


class DiamondCutPlanner:
    """Deploy and upgrade diamonds.

    :param legacy_fingerprints:
        Keccak hashes of the deployed bytecode of legacy diamond bases.
        By default taken from the ``OldDiamondBase`` artifact, if there is one.
    """

    def __init__(self, engine: ReconciliationEngine, legacy_fingerprints: Optional[Collection[bytes]] = None):
        self.engine = engine
        self.ledger: DeploymentLedger = engine.ledger
        self._legacy_fingerprints = set(legacy_fingerprints) if legacy_fingerprints is not None else None

    def _get_default_artifact(self, name: str) -> ExtendedArtifact:
        assert self.ledger.artifact_store is not None, f"No artifact store, cannot get {name}"
        return self.ledger.artifact_store.get_default_artifact(name, tron=self.engine.backend.uses_tron_default_artifacts)

    def get_legacy_fingerprints(self) -> set[bytes]:
        if self._legacy_fingerprints is None:
            self._legacy_fingerprints = set()
            store = self.ledger.artifact_store
            if store is not None and store.has_artifact("OldDiamondBase"):
                artifact = store.get_default_artifact("OldDiamondBase")
                if artifact.deployed_bytecode:
                    self._legacy_fingerprints.add(keccak(HexBytes(artifact.deployed_bytecode)))
        return self._legacy_fingerprints

    def detect_variant(self, proxy: Deployment) -> DiamondVariant:
        if proxy.deployed_bytecode and keccak(HexBytes(proxy.deployed_bytecode)) in self.get_legacy_fingerprints():
            return DiamondVariant.legacy
        return DiamondVariant.standard

    def fetch_facets(self, proxy_name: str) -> list[Facet]:
        """Read the live facet table with the loupe."""
        raw = self.engine.read(proxy_name, None, "facets")
        return [Facet(Web3.to_checksum_address(address), [to_0x_hex(s).lower() for s in selectors]) for address, selectors in raw]

    def get_owner(self, options: DiamondOptions) -> HexAddress:
        return self.engine.signers.resolve_address(options.owner or options.sender)

    def _deploy_options(self, options: DiamondOptions, **kwargs) -> DeployOptions:
        return DeployOptions(
            sender=options.sender,
            gas_price=options.gas_price,
            max_fee_per_gas=options.max_fee_per_gas,
            max_priority_fee_per_gas=options.max_priority_fee_per_gas,
            estimate_gas_extra=options.estimate_gas_extra,
            estimated_gas_limit=options.estimated_gas_limit,
            wait_confirmations=options.wait_confirmations,
            log=options.log,
            **kwargs,
        )

    def _resolve_facet(self, name: str, facet: str | FacetOptions, options: DiamondOptions, deterministic_default: Any) -> _ResolvedFacet:
        linked_data = options.linked_data
        libraries = options.libraries
        facet_args = options.facets_args
        deterministic = deterministic_default
        args_specific = False

        if isinstance(facet, str):
            artifact = self.ledger.get_extended_artifact(facet)
            facet_name = facet
        else:
            if facet.deterministic is not None:
                deterministic = facet.deterministic
            if facet.linked_data is not None:
                linked_data = facet.linked_data
            if facet.libraries:
                libraries = facet.libraries
            if facet.args is not None:
                facet_args = facet.args
                args_specific = True
            if facet.contract:
                if isinstance(facet.contract, str):
                    artifact = self.ledger.get_extended_artifact(facet.contract)
                else:
                    artifact = facet.contract
            else:
                if not facet.name:
                    raise ValueError("no name, no contract is specified for facet, cannot proceed")
                artifact = self.ledger.get_extended_artifact(facet.name)

            facet_name = facet.name
            if not facet_name:
                if isinstance(facet.contract, str):
                    facet_name = f"{name}_facet_{facet.contract}"
                else:
                    raise ValueError("facet has no name, please specify one")

        constructor = next((e for e in artifact.abi if e.get("type") == "constructor"), None)
        if not args_specific and (constructor is None or not constructor.get("inputs")):
            facet_args = []

        excluded = set()
        for selector in options.exclude_selectors.get(facet_name, []):
            if selector.startswith("0x") and len(selector) == 10:
                excluded.add(selector.lower())
            else:
                excluded.add(get_function_selector(find_function_abi(artifact.abi, selector)))

        return _ResolvedFacet(
            name=facet_name,
            artifact=artifact,
            args=list(facet_args or []),
            libraries=dict(libraries or {}),
            linked_data=linked_data,
            deterministic=deterministic,
            excluded_selectors=excluded,
        )

    def _facet_deploy_options(self, facet: _ResolvedFacet, options: DiamondOptions) -> DeployOptions:
        return self._deploy_options(
            options,
            contract=facet.artifact,
            args=facet.args,
            libraries=facet.libraries,
            linked_data=facet.linked_data,
            deterministic_deployment=facet.deterministic or None,
        )

    def check_owner_before_facet_deployments(self, proxy_name: str, owner: HexAddress, facets: Sequence[_ResolvedFacet], options: DiamondOptions):
        """Fail before sending anything if a facet must be deployed for a cut we are not allowed to make.

        :raise AuthorizationError:
            See :py:meth:`check_owner`
        """
        if any(self.engine.fetch_if_different(f.name, self._facet_deploy_options(f, options)).differences for f in facets):
            self.check_owner(proxy_name, owner)

    def _deploy_facet(self, facet: _ResolvedFacet, options: DiamondOptions) -> Facet:
        result = self.engine.deploy_one(facet.name, self._facet_deploy_options(facet, options))
        deployment = result.deployment if result.newly_deployed else self.ledger.get(facet.name)
        selectors = get_function_selectors(filter_abi(deployment.abi, facet.excluded_selectors))
        return Facet(Web3.to_checksum_address(deployment.address), selectors)

    def check_owner(self, proxy_name: str, owner: HexAddress) -> HexAddress:
        """Check the diamond owner before a cut.

        :raise AuthorizationError:
            Declared owner is not the diamond owner, or the ownership was renounced
        """
        current_owner = Web3.to_checksum_address(self.engine.read(proxy_name, None, "owner"))
        if current_owner == ZERO_ADDRESS:
            raise AuthorizationError("The Diamond belongs to no-one. It cannot be upgraded anymore")
        if current_owner.lower() != owner.lower():
            raise AuthorizationError("To change owner, you need to call `transferOwnership`", required_caller=current_owner)
        return current_owner

    def _cut(self, name: str, options: DiamondOptions, owner: HexAddress, proxy_name: str, cuts: list[FacetCut], init_address: str, init_data: bytes):
        current_owner = self.check_owner(proxy_name, owner)
        logger.info("Cutting diamond %s: %s", name, ", ".join(f"{c.action.name} {len(c.function_selectors)} at {c.facet_address}" for c in cuts))
        tx_options = TxOptions(
            sender=current_owner,
            gas_limit=options.gas_limit,
            gas_price=options.gas_price,
            max_fee_per_gas=options.max_fee_per_gas,
            max_priority_fee_per_gas=options.max_priority_fee_per_gas,
            estimate_gas_extra=options.estimate_gas_extra,
            estimated_gas_limit=options.estimated_gas_limit,
            wait_confirmations=options.wait_confirmations,
            log=options.log,
        )
        self.engine.execute(name, tx_options, "diamondCut", [c.as_abi_tuple() for c in cuts], init_address, HexBytes(init_data))

    def _save_upgrade(self, name: str, old_deployment: Deployment, proxy: Deployment, options: DiamondOptions, abi: list[dict], facets: list[Facet]):
        deployment = dataclasses.replace(
            old_deployment,
            linked_data=options.linked_data,
            address=proxy.address,
            abi=abi,
            facets=[f.to_json() for f in facets],
            execute=_execute_json(options),
            history=extend_history(old_deployment),
        )
        self.ledger.save(name, deployment)

    def deploy(self, name: str, options: DiamondOptions) -> DeployResult:
        """Deploy a new diamond or cut an existing one to the desired facets.

        :raise AuthorizationError:
            Declared owner cannot cut the diamond

        :raise eth_deploy.abi.AbiConflict:
            Two facets expose the same selector

        :raise eth_deploy.proxy.UpgradeIndexError:
            ``upgrade_index`` does not match the history
        """
        with self.ledger.lock(name):
            proxy_name = f"{name}_DiamondProxy"
            old_deployment = self.ledger.get_or_none(name)
            proxy = self.ledger.get(proxy_name) if old_deployment else None
            if proxy is not None and self.detect_variant(proxy) == DiamondVariant.legacy:
                return self._deploy_legacy(name, options)
            return self._deploy_standard(name, options)

    def _deploy_standard(self, name: str, options: DiamondOptions) -> DeployResult:
        proxy_name = f"{name}_DiamondProxy"
        old_deployment = self.ledger.get_or_none(name)
        proxy = self.ledger.get(proxy_name) if old_deployment else None

        existing = check_upgrade_index(old_deployment, options.upgrade_index)
        if existing is not None:
            return existing

        if options.diamond_contract is None:
            diamond_artifact = self._get_default_artifact("DiamondBase")
        elif isinstance(options.diamond_contract, str):
            diamond_artifact = self.ledger.get_extended_artifact(options.diamond_contract)
        else:
            diamond_artifact = options.diamond_contract

        owner = self.get_owner(options)
        old_facets = self.fetch_facets(proxy_name) if proxy is not None else []

        facets = list(options.facets)
        if options.default_cut_facet:
            facets.append(FacetOptions(name="_DefaultDiamondCutFacet", contract=self._get_default_artifact("DiamondCutFacet"), args=[], deterministic=True))
        if options.default_ownership_facet:
            facets.append(FacetOptions(name="_DefaultDiamondOwnershipFacet", contract=self._get_default_artifact("OwnershipFacet"), args=[], deterministic=True))
        facets.append(FacetOptions(name="_DefaultDiamondLoupeFacet", contract=self._get_default_artifact("DiamondLoupeFacet"), args=[], deterministic=True))

        resolved_facets = [self._resolve_facet(name, facet, options, deterministic_default=True) for facet in facets]
        if proxy is not None:
            self.check_owner_before_facet_deployments(proxy_name, owner, resolved_facets, options)

        abi = list(diamond_artifact.abi)
        snapshot = []
        facet_found = None
        for resolved in resolved_facets:
            abi = merge_abis([abi, filter_abi(resolved.artifact.abi, resolved.excluded_selectors)], check=True, skip_supports_interface=False)
            deployed = self._deploy_facet(resolved, options)
            snapshot.append(deployed)

            if options.execute and not options.execute.contract:
                methods = [e for e in resolved.artifact.abi if e.get("name") == options.execute.method_name]
                if len(methods) > 1:
                    raise ValueError(f'multiple method named "{options.execute.method_name}" found in facet')
                if methods:
                    if facet_found:
                        raise ValueError(f'multiple facet with method named "{options.execute.method_name}"')
                    facet_found = deployed.facet_address

        cuts = plan_facet_cuts(old_facets, snapshot)
        changes_detected = old_deployment is None or len(cuts) > 0

        init = None
        if options.execute:
            init = self._prepare_execute(options, abi, facet_found)

        if not changes_detected:
            log_progress(options, "reusing diamond %s at %s", name, old_deployment.address)
            return DeployResult(deployment=self.ledger.get(name), newly_deployed=False)

        if proxy is None:
            template = list(options.diamond_contract_args or DEFAULT_DIAMOND_ARGS)
            erc165_init = None
            if "{initializations}" in template or "{erc165}" in template:
                erc165_init = self._prepare_erc165_init(options)

            constructor_args = build_diamond_constructor_args(template, owner, cuts, erc165_init=erc165_init, init=init)

            if options.deterministic_salt is not None:
                salt = validate_deterministic_salt(options.deterministic_salt)
                deploy_options = self._deploy_options(options, contract=diamond_artifact, args=constructor_args, deterministic_deployment=salt)
                expected_address = self.engine.get_deterministic_address(proxy_name, deploy_options)
                if len(self.engine.backend.get_code(expected_address)) > 0:
                    logger.info("Diamond %s already at its deterministic address %s, adopting it", name, expected_address)
                    proxy = Deployment(
                        address=expected_address,
                        abi=abi,
                        args=constructor_args,
                        bytecode=diamond_artifact.bytecode,
                        deployed_bytecode=diamond_artifact.deployed_bytecode,
                        metadata=diamond_artifact.metadata,
                        solc_input_hash=diamond_artifact.solc_input_hash,
                    )
                    self.ledger.save(proxy_name, proxy)
                    self.ledger.save(name, dataclasses.replace(proxy, linked_data=options.linked_data, facets=[f.to_json() for f in snapshot]))
                    # Both records now exist, so this plans a cut against the live table
                    return self._deploy_standard(name, options)

            proxy_result = self.engine.deploy_one(
                proxy_name,
                self._deploy_options(
                    options,
                    contract=diamond_artifact,
                    args=constructor_args,
                    deterministic_deployment=options.deterministic_salt,
                    gas_limit=options.gas_limit,
                    nonce=options.nonce,
                ),
            )
            proxy = dataclasses.replace(proxy_result.deployment, abi=abi)
            self.ledger.save(proxy_name, proxy)
            self.ledger.save(
                name,
                dataclasses.replace(
                    proxy,
                    linked_data=options.linked_data,
                    facets=[f.to_json() for f in snapshot],
                    execute=_execute_json(options),
                ),
            )
        else:
            init_address, init_data = ZERO_ADDRESS, b""
            if init is not None and HexBytes(init[1]) != HexBytes(b""):
                init_address, init_data = init
                if init_address == ZERO_ADDRESS:
                    init_address = proxy.address
            self._cut(name, options, owner, proxy_name, cuts, init_address, init_data)
            self._save_upgrade(name, old_deployment, proxy, options, abi, snapshot)

        return DeployResult(deployment=self.ledger.get(name), newly_deployed=True)

    def _prepare_erc165_init(self, options: DiamondOptions) -> tuple:
        """Deploy the interface registration contract and encode its call."""
        artifact = self._get_default_artifact("DiamondERC165Init")
        deployment = self.engine.deploy_one(
            "_DefaultDiamondERC165Init",
            self._deploy_options(options, contract=artifact, deterministic_deployment=True),
        ).deployment
        interfaces = [LOUPE_INTERFACE_ID]
        if options.default_cut_facet:
            interfaces.append(CUT_INTERFACE_ID)
        if options.default_ownership_facet:
            interfaces.append(OWNERSHIP_INTERFACE_ID)
        data = encode_function_call(deployment.abi, "setERC165", [interfaces, []])
        return Web3.to_checksum_address(deployment.address), data

    def _prepare_execute(self, options: DiamondOptions, abi: list[dict], facet_found: Optional[str]) -> tuple:
        """Encode the init call.

        :return:
            Tuple (init address, init data)
        """
        execute = options.execute
        execution_abi = abi
        execution_address = facet_found
        if execute.contract:
            if isinstance(execute.contract, str):
                init_name = execute.contract
                deploy_options = self._deploy_options(options, deterministic_deployment=True)
            else:
                init_name = execute.contract["name"]
                deploy_options = self._deploy_options(
                    options,
                    contract=execute.contract.get("artifact"),
                    args=list(execute.contract.get("args") or []),
                    deterministic_deployment=True,
                )
            init_deployment = self.engine.deploy_one(init_name, deploy_options).deployment
            execution_abi = init_deployment.abi
            execution_address = Web3.to_checksum_address(init_deployment.address)

        data = encode_function_call(execution_abi, execute.method_name, list(execute.args))
        return execution_address or ZERO_ADDRESS, data

    def _deploy_legacy(self, name: str, options: DiamondOptions) -> DeployResult:
        """Upgrade a diamond deployed with the early diamond base contract."""
        log_progress(options, "handling old diamond %s ...", name)
        proxy_name = f"{name}_DiamondProxy"
        old_deployment = self.ledger.get_or_none(name)

        existing = check_upgrade_index(old_deployment, options.upgrade_index)
        if existing is not None:
            return existing

        if options.deterministic_salt:
            raise ValueError("old diamonds do not support deterministic deployment")

        if old_deployment is None:
            raise ValueError("old diamond deployments are now disabled")

        proxy = self.ledger.get(proxy_name)
        owner = self.get_owner(options)

        old_facets = self.fetch_facets(proxy_name)
        snapshot = []
        for facet in old_facets:
            selectors = set(facet.function_selectors)
            keep = (
                all(s in selectors for s in LOUPE_SELECTORS)
                or (facet.function_selectors and facet.function_selectors[0] == DIAMOND_CUT_SELECTOR)
                or all(s in selectors for s in ERC173_SELECTORS)
            )
            if keep:
                snapshot.append(facet)

        store = self.ledger.artifact_store
        if store is not None and store.has_artifact("OldDiamondBase"):
            abi = list(store.get_default_artifact("OldDiamondBase").abi)
        else:
            abi = list(proxy.abi)

        resolved_facets = [self._resolve_facet(name, facet, options, deterministic_default=None) for facet in options.facets]
        self.check_owner_before_facet_deployments(proxy_name, owner, resolved_facets, options)

        for resolved in resolved_facets:
            abi = merge_abis([abi, resolved.artifact.abi], check=True, skip_supports_interface=False)
            snapshot.append(self._deploy_facet(resolved, options))

        cuts = plan_facet_cuts(old_facets, snapshot, protected=LEGACY_PROTECTED_SELECTORS)
        if not cuts:
            return DeployResult(deployment=self.ledger.get(name), newly_deployed=False)

        init_address, init_data = ZERO_ADDRESS, b""
        if options.execute:
            init_data = encode_function_call(abi, options.execute.method_name, list(options.execute.args))
            init_address = proxy.address

        self._cut(name, options, owner, proxy_name, cuts, init_address, init_data)
        self._save_upgrade(name, old_deployment, proxy, options, abi, snapshot)
        return DeployResult(deployment=self.ledger.get(name), newly_deployed=True)


def _execute_json(options: DiamondOptions) -> Optional[dict]:
    if not options.execute:
        return None
    return {"methodName": options.execute.method_name, "args": list(options.execute.args)}
