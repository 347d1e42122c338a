"""Network configuration.

Example:

.. code-block:: python

    config = NetworkConfig(
        name="sepolia",
        json_rpc_url=os.environ["JSON_RPC_URL"],
        named_accounts={"deployer": os.environ["PRIVATE_KEY"]},
    )

Or read everything from environment variables with :py:meth:`NetworkConfig.from_env`.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class DeterministicFactoryConfig:
    """CREATE2 factory used for deterministic deployments.

    Defaults to `Arachnid's deterministic deployment proxy <https://github.com/Arachnid/deterministic-deployment-proxy>`__,
    which is deployed with a keyless pre-signed transaction, so it has the same address on every chain.
    """

    #: Factory contract address
    factory: str = "0x4e59b44847b379578588920ca78fbf26c0b4956c"

    #: One-time deployer of the factory, recovered from the pre-signed transaction
    deployer: str = "0x3fab184622dc19b6109349b94811493bf2a45362"

    #: Gas money we need to send to the deployer (100 gwei * 100k gas)
    funding: int = 10_000_000_000_000_000

    #: Pre-signed factory deployment transaction, not replay protected
    signed_tx: str = (
        "0xf8a58085174876e800830186a08080b853604580600e600039806000f350fe7fffffffffffffffffffffffffffffffffffffffffffffffffffffffffffffffe03601600081602082378035828234f58015156039578182fd5b8082525050506014600cf31ba02222222222222222222222222222222222222222222222222222222222222222a02222222222222222222222222222222222222222222222222222222222222222"
    )


@dataclass
class NetworkConfig:
    """Everything we need to know about the network we deploy to."""

    #: Network name, used as the deployments subfolder
    name: str = "localhost"

    #: JSON-RPC endpoint. For Tron, this is the ``/jsonrpc`` endpoint.
    json_rpc_url: Optional[str] = None

    #: Expected chain id, checked against the node and written to ``.chainId``
    chain_id: Optional[int] = None

    #: Where deployment records are stored
    deployments_path: Path = Path("deployments")

    #: Where compiled contracts are read from
    artifact_paths: list[Path] = field(default_factory=lambda: [Path("artifacts")])

    #: Account name -> address or private key
    named_accounts: dict[str, str] = field(default_factory=dict)

    #: Private keys we can sign with
    private_keys: list[str] = field(default_factory=list)

    #: zkSync Era style chain
    zksync: bool = False

    #: Tron chain
    tron: bool = False

    #: Tron full node HTTP API, e.g. ``https://api.trongrid.io``
    tron_full_host: Optional[str] = None

    #: Extra HTTP headers for Tron API, like ``TRON-PRO-API-KEY``
    tron_headers: dict[str, str] = field(default_factory=dict)

    #: Proxy and diamond helper artifacts compiled with tron-solc
    tron_default_artifact_paths: list[Path] = field(default_factory=list)

    #: Factory for deterministic deployments. ``None`` disables deterministic deployments.
    deterministic_factory: Optional[DeterministicFactoryConfig] = field(default_factory=DeterministicFactoryConfig)

    #: Do not store bytecode in deployment records, read it from artifacts instead
    save_space: bool = False

    #: Keep track of broadcasted transactions on the disk, so they can be recovered after a crash
    track_pending_transactions: bool = True

    #: Default confirmation count when the deploy options do not tell
    wait_confirmations: int = 0

    #: How often we poll for receipts, seconds
    poll_delay: float = 1.0

    @staticmethod
    def from_env(env: dict | None = None) -> "NetworkConfig":
        """Read configuration from environment variables.

        - ``JSON_RPC_URL`` (required)
        - ``NETWORK_NAME``
        - ``DEPLOYMENTS_PATH``
        - ``ARTIFACTS_PATH``, colon separated
        - ``PRIVATE_KEY``, becomes ``deployer`` named account
        - ``ZKSYNC``, ``TRON`` set to ``true`` to select the chain backend
        - ``TRON_FULL_HOST``, ``TRON_PRO_API_KEY``
        - ``TRON_DEFAULT_ARTIFACTS_PATH``, colon separated

        :raise ValueError:
            If ``JSON_RPC_URL`` is not set
        """
        env = os.environ if env is None else env

        json_rpc_url = env.get("JSON_RPC_URL")
        if not json_rpc_url:
            raise ValueError("Environment variable JSON_RPC_URL is not set")

        def _flag(name: str) -> bool:
            return env.get(name, "").lower() in ("1", "true", "yes")

        named_accounts = {}
        private_keys = []
        private_key = env.get("PRIVATE_KEY")
        if private_key:
            named_accounts["deployer"] = private_key
            private_keys.append(private_key)

        tron_headers = {}
        if env.get("TRON_PRO_API_KEY"):
            tron_headers["TRON-PRO-API-KEY"] = env["TRON_PRO_API_KEY"]

        artifact_paths = [Path(p) for p in env.get("ARTIFACTS_PATH", "artifacts").split(":") if p]
        tron_default_artifact_paths = [Path(p) for p in env.get("TRON_DEFAULT_ARTIFACTS_PATH", "").split(":") if p]

        return NetworkConfig(
            name=env.get("NETWORK_NAME", "localhost"),
            json_rpc_url=json_rpc_url,
            deployments_path=Path(env.get("DEPLOYMENTS_PATH", "deployments")),
            artifact_paths=artifact_paths,
            named_accounts=named_accounts,
            private_keys=private_keys,
            zksync=_flag("ZKSYNC"),
            tron=_flag("TRON"),
            tron_full_host=env.get("TRON_FULL_HOST"),
            tron_headers=tron_headers,
            tron_default_artifact_paths=tron_default_artifact_paths,
        )
