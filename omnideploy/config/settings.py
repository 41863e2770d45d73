"""
Deployment settings.

Loaded from the process environment (and a ``.env`` file, never
overriding variables already set) into a validated pydantic model.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from omnideploy.errors import ConfigurationError

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class Cluster(str, Enum):
    LOCALNET = "localnet"
    DEVNET = "devnet"
    TESTNET = "testnet"
    MAINNET = "mainnet-beta"

    @property
    def is_production(self) -> bool:
        return self is Cluster.MAINNET

    @property
    def allows_airdrop(self) -> bool:
        return not self.is_production


DEFAULT_RPC_URLS = {
    Cluster.LOCALNET: "http://localhost:8899",
    Cluster.DEVNET: "https://api.devnet.solana.com",
    Cluster.TESTNET: "https://api.testnet.solana.com",
    Cluster.MAINNET: "https://api.mainnet-beta.solana.com",
}


def _env_rpc_url(cluster, env: Mapping[str, str]) -> Optional[str]:
    """OMNI_RPC_URL, else DEVNET_RPC_URL when the cluster is devnet."""
    rpc_url = env.get("OMNI_RPC_URL")
    if not rpc_url and cluster == Cluster.DEVNET.value:
        rpc_url = env.get("DEVNET_RPC_URL")
    return rpc_url or None


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_dir: str = "logs"
    json_format: bool = True


class DeploySettings(BaseModel):
    """Everything a deployment run needs besides persisted artifacts."""

    model_config = ConfigDict(frozen=True)

    cluster: Cluster = Cluster.DEVNET
    rpc_url: Optional[str] = None
    operator_keypair_path: Path = Field(default_factory=lambda: Path.home() / ".config" / "solana" / "id.json")
    keys_dir: Path = Path("target/deploy")
    artifacts_dir: Path = Path("deploy-artifacts")
    min_operator_balance: int = Field(default=2 * LAMPORTS_PER_SOL, ge=0)
    bootstrap_airdrop: int = Field(default=2 * LAMPORTS_PER_SOL, ge=0)
    test_account_count: int = Field(default=5, ge=0, le=100)
    rpc_max_retries: int = Field(default=3, ge=1, le=10)
    rpc_backoff_seconds: float = Field(default=0.5, ge=0)
    confirm_timeout_seconds: float = Field(default=60.0, gt=0)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def resolved_rpc_url(self) -> str:
        return self.rpc_url or DEFAULT_RPC_URLS[self.cluster]

    @property
    def cluster_artifacts_dir(self) -> Path:
        return self.artifacts_dir / self.cluster.value

    def with_cluster(self, cluster: "Cluster | str", env: Optional[Mapping[str, str]] = None) -> "DeploySettings":
        cluster = Cluster(cluster)
        if cluster is self.cluster:
            return self
        # An RPC URL inherited from the environment belongs to the old cluster.
        rpc_url = _env_rpc_url(cluster, os.environ if env is None else env)
        return self.model_copy(update={"cluster": cluster, "rpc_url": rpc_url})

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, load_dotenv_file: bool = True) -> "DeploySettings":
        if env is None:
            if load_dotenv_file:
                from dotenv import load_dotenv
                load_dotenv(override=False)
            env = os.environ

        cluster = env.get("OMNI_CLUSTER", Cluster.DEVNET.value)
        rpc_url = _env_rpc_url(cluster, env)

        raw = {
            "cluster": cluster,
            "rpc_url": rpc_url,
            "logging": {
                "level": env.get("OMNI_LOG_LEVEL", "INFO").upper(),
                "log_dir": env.get("OMNI_LOG_DIR", "logs"),
                "json_format": env.get("OMNI_LOG_JSON", "true").lower() in ("1", "true", "yes"),
            },
        }
        optional = {
            "operator_keypair_path": "DEPLOYER_WALLET_PATH",
            "keys_dir": "OMNI_KEYS_DIR",
            "artifacts_dir": "OMNI_ARTIFACTS_DIR",
            "min_operator_balance": "OMNI_MIN_OPERATOR_BALANCE_LAMPORTS",
            "bootstrap_airdrop": "OMNI_BOOTSTRAP_AIRDROP_LAMPORTS",
            "test_account_count": "OMNI_TEST_ACCOUNT_COUNT",
            "rpc_max_retries": "OMNI_RPC_MAX_RETRIES",
            "rpc_backoff_seconds": "OMNI_RPC_BACKOFF_SECONDS",
            "confirm_timeout_seconds": "OMNI_CONFIRM_TIMEOUT_SECONDS",
        }
        for field_name, var in optional.items():
            value = env.get(var)
            if value:
                raw[field_name] = value
        if "operator_keypair_path" in raw:
            raw["operator_keypair_path"] = Path(os.path.expanduser(raw["operator_keypair_path"]))

        try:
            settings = cls(**raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid deployment settings: {e}") from e

        logger.debug(f"Loaded settings for cluster {settings.cluster.value} ({settings.resolved_rpc_url})")
        return settings
