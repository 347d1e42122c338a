"""Deployment transaction factory.

Wraps a :py:class:`eth_deploy.backend.base.ChainBackend` for a single deployment attempt:
the artifact, the linked bytecode and the constructor arguments are fixed
when the factory is created.
"""

from typing import Any, Optional, Sequence

from eth_typing import HexAddress
from web3 import Web3

from eth_deploy.artifacts import ExtendedArtifact
from eth_deploy.backend.base import ChainBackend


class DeploymentFactory:
    """Build, address and compare the deployment transaction of one contract.

    Example:

    .. code-block:: python

        factory = DeploymentFactory(backend, artifact, artifact.bytecode, [1, 2])
        tx = factory.get_deploy_transaction()
        address = factory.get_create2_address(create2_factory, salt)
    """

    def __init__(
        self,
        backend: ChainBackend,
        artifact: ExtendedArtifact,
        bytecode: str,
        args: Sequence[Any] = (),
        overrides: Optional[dict] = None,
    ):
        self.backend = backend
        self.artifact = artifact
        self.bytecode = bytecode
        self.args = list(args)
        self.overrides = dict(overrides or {})
        self._deploy_tx: Optional[dict] = None

    def __repr__(self):
        return f"<DeploymentFactory {self.artifact.contract_name} on {self.backend.name}>"

    def get_deploy_transaction(self) -> dict:
        """Unsigned deployment transaction.

        Built once and reused. Callers get a copy they can freely mutate.

        :raise ValueError:
            Constructor argument count does not match the ABI
        """
        if self._deploy_tx is None:
            self._deploy_tx = self.backend.build_deploy_transaction(self.artifact, self.bytecode, self.args, self.overrides)
        return dict(self._deploy_tx)

    def get_create2_address(self, factory_address: HexAddress | str, salt: bytes) -> HexAddress:
        """Predict where a CREATE2 factory would deploy this contract."""
        return self.backend.compute_create2_address(Web3.to_checksum_address(factory_address), salt, self.get_deploy_transaction())

    def compare_deployment_transaction(self, historical_tx: dict, deployment=None) -> bool:
        """Does the historical transaction differ from what we would send now.

        :return:
            ``True`` if a redeployment is needed
        """
        return not self.backend.is_equivalent_transaction(historical_tx, self.get_deploy_transaction(), deployment)

    def get_deployed_address(self, receipt: dict, create2_address: HexAddress | None = None) -> HexAddress:
        """Final address of the deployment.

        Deterministic deployments go through the factory contract,
        so the receipt does not tell the address.
        """
        if create2_address:
            return create2_address
        return self.backend.get_deployed_address(receipt)
