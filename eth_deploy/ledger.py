"""Deployment ledger.

The ledger is the only durable owner of deployment records.
Records are stored as one JSON file per logical name,
in the same format Hardhat Deploy uses::

    deployments/
        sepolia/
            .chainId
            MyToken.json
            MyToken_Implementation.json
            MyToken_Proxy.json

Writes for the same logical name are serialised with a file lock,
so two deployment scripts running in parallel cannot both deploy the same contract.
"""

import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock
from web3 import Web3

from eth_deploy.artifacts import ArtifactNotFound, ArtifactStore, ExtendedArtifact
from eth_deploy.tx import to_json_friendly_tx

logger = logging.getLogger(__name__)


class DeploymentNotFound(Exception):
    """No deployment record for a name."""


@dataclass
class Deployment:
    """A deployed contract as stored in the ledger."""

    #: Contract address
    address: str

    #: ABI. For proxies this is the merged proxy + implementation ABI.
    abi: list[dict] = field(default_factory=list)

    #: Hash of the transaction that deployed the contract.
    #:
    #: ``None`` for contracts that were adopted, not deployed, by us.
    transaction_hash: Optional[str] = None

    #: Receipt as JSON friendly dict
    receipt: Optional[dict] = None

    #: Constructor arguments
    args: list = field(default_factory=list)

    #: Library name -> address
    libraries: dict[str, str] = field(default_factory=dict)

    #: Anything the user wants to store with the deployment
    linked_data: Any = None

    #: Implementation address, for proxies
    implementation: Optional[str] = None

    #: Last init or upgrade call ``{"methodName": ..., "args": [...]}``
    execute: Optional[dict] = None

    #: Superseded versions, oldest first.
    #:
    #: ``None`` means history tracking is not active for this name.
    history: Optional[list["Deployment"]] = None

    #: How many times this name has been saved
    num_deployments: Optional[int] = None

    #: Diamond facets ``[{"facetAddress": ..., "functionSelectors": [...]}]``
    facets: Optional[list[dict]] = None

    #: zkSync factory dependencies
    factory_deps: Optional[list[str]] = None

    bytecode: Optional[str] = None

    deployed_bytecode: Optional[str] = None

    metadata: Optional[str] = None

    solc_input_hash: Optional[str] = None

    storage_layout: Optional[dict] = None

    devdoc: Optional[dict] = None

    userdoc: Optional[dict] = None

    #: Artifact name, when bytecode is not stored in the record
    artifact_name: Optional[str] = None

    #: JSON key -> attribute name
    FIELD_MAP = {
        "address": "address",
        "abi": "abi",
        "transactionHash": "transaction_hash",
        "receipt": "receipt",
        "args": "args",
        "libraries": "libraries",
        "linkedData": "linked_data",
        "implementation": "implementation",
        "execute": "execute",
        "numDeployments": "num_deployments",
        "facets": "facets",
        "factoryDeps": "factory_deps",
        "bytecode": "bytecode",
        "deployedBytecode": "deployed_bytecode",
        "metadata": "metadata",
        "solcInputHash": "solc_input_hash",
        "storageLayout": "storage_layout",
        "devdoc": "devdoc",
        "userdoc": "userdoc",
        "artifactName": "artifact_name",
    }

    def to_json(self) -> dict:
        """Serialise to Hardhat Deploy compatible dict."""
        data = {}
        for key, attr in self.FIELD_MAP.items():
            value = getattr(self, attr)
            if value is None:
                continue
            data[key] = value
        if self.history is not None:
            data["history"] = [h.to_json() for h in self.history]
        return to_json_friendly_tx(data)

    @classmethod
    def from_json(cls, data: dict) -> "Deployment":
        kwargs = {attr: data[key] for key, attr in cls.FIELD_MAP.items() if key in data}
        if "history" in data:
            kwargs["history"] = [cls.from_json(h) for h in data["history"]]
        return cls(**kwargs)

    @property
    def transaction_hash_from_receipt(self) -> Optional[str]:
        """Transaction hash, preferring the receipt."""
        if self.receipt and self.receipt.get("transactionHash"):
            return self.receipt["transactionHash"]
        return self.transaction_hash


class DeploymentLedger:
    """Key-value store of deployment records, keyed by logical name.

    :param path:
        Network specific deployments folder, like ``deployments/sepolia``.
        ``None`` keeps records in memory only, useful for tests and dry runs.

    :param artifact_store:
        Needed with ``save_space`` to restore bytecode into records

    :param save_space:
        Do not write bytecode into the record when the artifact store has the same bytecode
    """

    def __init__(self, path: Path | None, chain_id: int | None = None, artifact_store: ArtifactStore | None = None, save_space=False):
        self.path = Path(path) if path is not None else None
        self.chain_id = chain_id
        self.artifact_store = artifact_store
        self.save_space = save_space
        self.deployments: dict[str, Deployment] = {}
        self._locks: dict[str, Any] = {}
        self._locks_guard = threading.Lock()
        if self.path is not None:
            self.load()

    def __repr__(self):
        return f"<DeploymentLedger {self.path or 'in-memory'} with {len(self.deployments)} deployments>"

    @property
    def is_persistent(self) -> bool:
        return self.path is not None

    def load(self):
        """(Re)read all deployment records from the disk."""
        self.deployments = {}
        if not self.path.exists():
            return
        chain_id_file = self.path / ".chainId"
        if chain_id_file.exists():
            stored_chain_id = int(chain_id_file.read_text().strip())
            if self.chain_id is not None and stored_chain_id != self.chain_id:
                raise ValueError(f"Deployments folder {self.path} is for chain {stored_chain_id}, but we are connected to chain {self.chain_id}")
        for fname in sorted(self.path.glob("*.json")):
            name = fname.stem
            self.deployments[name] = self._restore(Deployment.from_json(json.loads(fname.read_text())))
        logger.debug("Loaded %d deployments from %s", len(self.deployments), self.path)

    def _restore(self, deployment: Deployment) -> Deployment:
        # Bytecode was left out with save_space
        if deployment.artifact_name and deployment.bytecode is None and self.artifact_store:
            try:
                artifact = self.artifact_store.get_artifact(deployment.artifact_name)
            except ArtifactNotFound:
                logger.warning("Cannot restore bytecode for %s, artifact %s missing", deployment.address, deployment.artifact_name)
                return deployment
            deployment.bytecode = artifact.bytecode
            deployment.deployed_bytecode = artifact.deployed_bytecode
        return deployment

    def get_or_none(self, name: str) -> Optional[Deployment]:
        return self.deployments.get(name)

    def get(self, name: str) -> Deployment:
        """Get a deployment record.

        :raise DeploymentNotFound:
            No record for this name
        """
        deployment = self.deployments.get(name)
        if deployment is None:
            raise DeploymentNotFound(f"No deployment found for: {name}")
        return deployment

    def all(self) -> dict[str, Deployment]:
        return dict(self.deployments)

    def find_by_address(self, address: str) -> Optional[tuple[str, Deployment]]:
        for name, deployment in self.deployments.items():
            if deployment.address.lower() == address.lower():
                return name, deployment
        return None

    def save(self, name: str, deployment: Deployment) -> Deployment:
        """Store a deployment record.

        ``num_deployments`` is bumped on every save of the same name.
        """
        old = self.deployments.get(name)
        if old is not None:
            deployment.num_deployments = (old.num_deployments or 1) + 1
        else:
            deployment.num_deployments = 1

        self.deployments[name] = deployment

        if self.path is not None:
            self._write(name, deployment)

        logger.debug("Saved deployment %s at %s", name, deployment.address)
        return deployment

    def _write(self, name: str, deployment: Deployment):
        self.path.mkdir(parents=True, exist_ok=True)
        if self.chain_id is not None:
            chain_id_file = self.path / ".chainId"
            if not chain_id_file.exists():
                chain_id_file.write_text(str(self.chain_id))

        data = deployment.to_json()
        if self.save_space and deployment.artifact_name and self.artifact_store:
            try:
                artifact = self.artifact_store.get_artifact(deployment.artifact_name)
            except ArtifactNotFound:
                artifact = None
            if artifact is not None and artifact.bytecode == deployment.bytecode:
                data.pop("bytecode", None)
                data.pop("deployedBytecode", None)

        fname = self.path / f"{name}.json"
        tmp = fname.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, fname)

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        """Exclusive access to a logical name.

        Re-entrant within the same ledger, so a deployment can recurse into itself.

        :raise filelock.Timeout:
            Another process holds the lock for too long
        """
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                if self.path is not None:
                    self.path.mkdir(parents=True, exist_ok=True)
                    lock = FileLock(str(self.path / f".{name}.lock"))
                else:
                    lock = threading.RLock()
                self._locks[name] = lock
        with lock:
            yield

    def get_extended_artifact(self, name_or_address: str) -> ExtendedArtifact:
        """Get artifact by contract name, or rebuild one from an existing deployment at an address.

        :raise ArtifactNotFound:
            No artifact and no deployment
        """
        if Web3.is_address(name_or_address):
            found = self.find_by_address(name_or_address)
            if found is None:
                raise ArtifactNotFound(f"No deployment at {name_or_address}")
            name, deployment = found
            return ExtendedArtifact(
                contract_name=name,
                abi=deployment.abi,
                bytecode=deployment.bytecode or "0x",
                deployed_bytecode=deployment.deployed_bytecode,
                metadata=deployment.metadata,
                solc_input_hash=deployment.solc_input_hash,
            )
        if self.artifact_store is None:
            raise ArtifactNotFound(f"No artifact store configured, cannot look up {name_or_address}")
        return self.artifact_store.get_artifact(name_or_address)
