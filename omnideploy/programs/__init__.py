"""Clients for the venue's on-chain programs."""

from solders.keypair import Keypair

from omnideploy.models import ProgramIds
from omnideploy.programs.base import ProgramClient, anchor_discriminator
from omnideploy.programs.clob import MarketAccounts, MarketClient, MarketInitParams, oracle_feed_id_hex
from omnideploy.programs.omni_token import UtilityTokenClient, UtilityTokenParams
from omnideploy.programs.registry import RegistryClient, RegistryInitParams, UpsertOutcome
from omnideploy.programs.spl_token import SplTokenClient
from omnideploy.rpc import ChainGateway


class ProgramFactory:
    """Builds program clients bound to one gateway and fee payer."""

    def __init__(self, gateway: ChainGateway, payer: Keypair):
        self.gateway = gateway
        self.payer = payer

    def registry(self, ids: ProgramIds) -> RegistryClient:
        return RegistryClient(self.gateway, ids.pubkey("registry"), self.payer)

    def utility_token(self, ids: ProgramIds) -> UtilityTokenClient:
        return UtilityTokenClient(self.gateway, ids.pubkey("omni_token"), self.payer)

    def market(self, ids: ProgramIds) -> MarketClient:
        return MarketClient(self.gateway, ids.pubkey("clob"), self.payer)

    def spl_token(self) -> SplTokenClient:
        return SplTokenClient(self.gateway, self.payer)


__all__ = [
    "MarketAccounts",
    "MarketClient",
    "MarketInitParams",
    "ProgramClient",
    "ProgramFactory",
    "RegistryClient",
    "RegistryInitParams",
    "SplTokenClient",
    "UpsertOutcome",
    "UtilityTokenClient",
    "UtilityTokenParams",
    "anchor_discriminator",
    "oracle_feed_id_hex",
]
