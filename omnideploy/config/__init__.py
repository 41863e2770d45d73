"""Configuration for deployment runs."""

from omnideploy.config.settings import (
    DEFAULT_RPC_URLS,
    LAMPORTS_PER_SOL,
    Cluster,
    DeploySettings,
    LoggingSettings,
)

__all__ = [
    "DEFAULT_RPC_URLS",
    "LAMPORTS_PER_SOL",
    "Cluster",
    "DeploySettings",
    "LoggingSettings",
]
