"""Everything a stage needs to run, built once per invocation."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List

from solders.keypair import Keypair

from omnideploy import catalog
from omnideploy.artifacts import ArtifactStore
from omnideploy.config import Cluster, DeploySettings
from omnideploy.errors import ConfigurationError
from omnideploy.keypairs import KeypairStore, load_keypair_file, short_address
from omnideploy.logging_config import new_run_id
from omnideploy.models import AssetDescriptor, MarketDescriptor
from omnideploy.programs import ProgramFactory
from omnideploy.rpc import ChainGateway

logger = logging.getLogger(__name__)


@dataclass
class DeployContext:
    settings: DeploySettings
    store: ArtifactStore
    keypairs: KeypairStore
    chain: ChainGateway
    programs: ProgramFactory
    operator: Keypair
    assets: List[AssetDescriptor] = field(default_factory=lambda: list(catalog.ASSETS))
    markets: List[MarketDescriptor] = field(default_factory=lambda: list(catalog.MARKETS))
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    run_id: str = field(default_factory=new_run_id)

    @property
    def cluster(self) -> Cluster:
        return self.settings.cluster

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        if not self.cancel_event.is_set():
            logger.warning("Cancellation requested; finishing the in-flight item")
        self.cancel_event.set()

    async def close(self) -> None:
        await self.chain.close()


def load_operator(settings: DeploySettings) -> Keypair:
    """Load the operator identity; generated only on non-production clusters."""
    create = not settings.cluster.is_production
    operator = load_keypair_file(settings.operator_keypair_path, create=create)
    if operator is None:
        raise ConfigurationError(
            f"Operator keypair {settings.operator_keypair_path} not found; "
            f"it must exist before deploying to {settings.cluster.value}",
            path=str(settings.operator_keypair_path),
        )
    logger.info(f"Operator {short_address(operator.pubkey())} on {settings.cluster.value}")
    return operator


def build_context(settings: DeploySettings) -> DeployContext:
    operator = load_operator(settings)
    chain = ChainGateway(
        settings.resolved_rpc_url,
        max_retries=settings.rpc_max_retries,
        backoff_seconds=settings.rpc_backoff_seconds,
        confirm_timeout=settings.confirm_timeout_seconds,
    )
    return DeployContext(
        settings=settings,
        store=ArtifactStore(settings.cluster_artifacts_dir, settings.cluster.value),
        keypairs=KeypairStore(settings.keys_dir),
        chain=chain,
        programs=ProgramFactory(chain, operator),
        operator=operator,
    )
