"""Compiled contract artifacts.

Read compiler output JSON files produced by

- Hardhat (``artifacts/contracts/Foo.sol/Foo.json``)

- Foundry (``out/Foo.sol/Foo.json``)

- Hardhat zkSync plugin, which adds ``factoryDeps``

Example:

.. code-block:: python

    store = ArtifactStore([Path("artifacts"), Path("deployments-artifacts")])
    artifact = store.get_artifact("MyToken")
    print(artifact.abi)
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


#: Well-known proxy and diamond helper contract names.
#:
#: The deployment options refer to these by their short name.
DEFAULT_ARTIFACT_NAMES = {
    "EIP173Proxy": "EIP173Proxy",
    "EIP173ProxyWithReceive": "EIP173ProxyWithReceive",
    "OpenZeppelinTransparentProxy": "TransparentUpgradeableProxy",
    "OptimizedTransparentProxy": "OptimizedTransparentUpgradeableProxy",
    "UUPS": "ERC1967Proxy",
    "DefaultProxyAdmin": "ProxyAdmin",
    "DiamondBase": "Diamond",
    "DiamondERC165Init": "DiamondERC165Init",
    "DiamondCutFacet": "DiamondCutFacet",
    "OwnershipFacet": "OwnershipFacet",
    "DiamondLoupeFacet": "DiamondLoupeFacet",
    "OldDiamondBase": "OldDiamondBase",
}


class ArtifactNotFound(Exception):
    """No compiled artifact for a contract name."""


@dataclass
class ExtendedArtifact:
    """Compiled contract with the metadata needed for deployment."""

    #: Contract name, e.g. ``Foo``
    contract_name: str

    #: ABI JSON as a list
    abi: list[dict]

    #: Creation bytecode as a hex string.
    #:
    #: May contain unlinked library placeholders, so this is not parsed to bytes.
    bytecode: str

    #: Runtime bytecode
    deployed_bytecode: Optional[str] = None

    #: Solidity source file, e.g. ``contracts/Foo.sol``
    source_name: Optional[str] = None

    #: ``{source file: {library name: [{start, length}]}}``
    link_references: dict = field(default_factory=dict)

    deployed_link_references: dict = field(default_factory=dict)

    #: zkSync: bytecode hash -> ``sourceName:contractName`` of contracts this contract may deploy
    factory_deps: dict = field(default_factory=dict)

    #: Solidity compiler metadata JSON string
    metadata: Optional[str] = None

    solc_input_hash: Optional[str] = None

    devdoc: Optional[dict] = None

    userdoc: Optional[dict] = None

    storage_layout: Optional[dict] = None

    @property
    def fully_qualified_name(self) -> str:
        if self.source_name:
            return f"{self.source_name}:{self.contract_name}"
        return self.contract_name

    @staticmethod
    def from_json(data: dict, contract_name: str | None = None) -> "ExtendedArtifact":
        """Parse Hardhat or Foundry style artifact."""

        def _bytecode(value) -> tuple[str, dict]:
            # Foundry and solc put bytecode and link references under an object
            if isinstance(value, dict):
                code = value.get("object", "")
                refs = value.get("linkReferences", {})
            else:
                code = value or ""
                refs = {}
            if code and not code.startswith("0x"):
                code = "0x" + code
            return code or "0x", refs

        bytecode, link_references = _bytecode(data.get("bytecode"))
        deployed_bytecode, deployed_link_references = _bytecode(data.get("deployedBytecode"))
        name = data.get("contractName") or contract_name
        assert name, f"Artifact lacks contractName: {list(data.keys())}"

        metadata = data.get("metadata")
        if isinstance(metadata, dict):
            metadata = json.dumps(metadata)

        return ExtendedArtifact(
            contract_name=name,
            source_name=data.get("sourceName"),
            abi=data["abi"],
            bytecode=bytecode,
            deployed_bytecode=deployed_bytecode,
            link_references=data.get("linkReferences", link_references) or {},
            deployed_link_references=data.get("deployedLinkReferences", deployed_link_references) or {},
            factory_deps=data.get("factoryDeps", {}) or {},
            metadata=metadata,
            solc_input_hash=data.get("solcInputHash"),
            devdoc=data.get("devdoc"),
            userdoc=data.get("userdoc"),
            storage_layout=data.get("storageLayout"),
        )


class ArtifactStore:
    """Look up compiled artifacts by contract name.

    - Directories are scanned recursively for ``*.json`` files
      that have ``abi`` and ``bytecode`` keys

    - Hardhat debug files ``*.dbg.json`` are ignored

    - Artifacts can also be registered in-memory with :py:meth:`add_artifact`

    When the same contract name is found multiple times, use
    the fully qualified ``contracts/Foo.sol:Foo`` name.

    :param tron_default_paths:
        Well-known proxy and diamond artifacts compiled with tron-solc.
        Used instead of the standard ones when deploying to Tron.
    """

    def __init__(self, paths: list[Path] | None = None, tron_default_paths: list[Path] | None = None):
        self.paths = [Path(p) for p in (paths or [])]
        self.tron_default_store = ArtifactStore(tron_default_paths) if tron_default_paths else None
        self.by_name: dict[str, list[ExtendedArtifact]] = {}
        self.by_fully_qualified_name: dict[str, ExtendedArtifact] = {}
        self._scanned = False

    def add_artifact(self, artifact: ExtendedArtifact):
        self.by_name.setdefault(artifact.contract_name, []).append(artifact)
        self.by_fully_qualified_name[artifact.fully_qualified_name] = artifact

    def _scan(self):
        if self._scanned:
            return
        self._scanned = True
        for path in self.paths:
            if not path.exists():
                logger.warning("Artifact path %s does not exist", path)
                continue
            for fname in sorted(path.rglob("*.json")):
                if fname.name.endswith(".dbg.json"):
                    continue
                try:
                    data = json.loads(fname.read_text())
                except json.JSONDecodeError as e:
                    logger.warning("Skipping broken JSON file %s: %s", fname, e)
                    continue
                if not isinstance(data, dict) or "abi" not in data or "bytecode" not in data:
                    continue
                self.add_artifact(ExtendedArtifact.from_json(data, contract_name=fname.stem))

    def get_artifact(self, name: str) -> ExtendedArtifact:
        """Get artifact by contract name or fully qualified name.

        :raise ArtifactNotFound:
            Nothing matches, or the short name is ambiguous
        """
        self._scan()
        if ":" in name:
            artifact = self.by_fully_qualified_name.get(name)
            if artifact is None:
                raise ArtifactNotFound(f"No artifact for {name}")
            return artifact

        candidates = self.by_name.get(name, [])
        if not candidates:
            raise ArtifactNotFound(f"No artifact for {name}, searched {self.paths}")
        if len(candidates) > 1:
            names = ", ".join(a.fully_qualified_name for a in candidates)
            raise ArtifactNotFound(f"Multiple artifacts for {name}, use a fully qualified name: {names}")
        return candidates[0]

    def has_artifact(self, name: str) -> bool:
        try:
            self.get_artifact(name)
            return True
        except ArtifactNotFound:
            return False

    def get_default_artifact(self, name: str, tron=False) -> ExtendedArtifact:
        """Get one of the well-known proxy or diamond helper artifacts.

        See :py:data:`DEFAULT_ARTIFACT_NAMES`.

        :param tron:
            Take the tron-solc build, if the store has one
        """
        contract_name = DEFAULT_ARTIFACT_NAMES.get(name)
        if contract_name is None:
            raise ArtifactNotFound(f"No default artifact for {name}")
        if tron and self.tron_default_store is not None:
            return self.tron_default_store.get_artifact(contract_name)
        return self.get_artifact(contract_name)
