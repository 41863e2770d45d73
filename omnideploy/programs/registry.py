"""Client for the registry program: governance roles and the asset catalog."""

import logging
from dataclasses import dataclass

import borsh_construct as borsh
from anchorpy.borsh_extension import BorshPubkey
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from omnideploy import pda
from omnideploy.errors import FailureClass
from omnideploy.models import AssetDescriptor, UpsertAction
from omnideploy.programs.base import ProgramClient, readonly, writable
from omnideploy.rpc import TxReceipt

logger = logging.getLogger(__name__)

INITIALIZE_LAYOUT = borsh.CStruct(
    "gov" / BorshPubkey,
    "dev" / BorshPubkey,
    "manager" / BorshPubkey,
)

REGISTER_ASSET_LAYOUT = borsh.CStruct(
    "asset_id" / borsh.String,
    "asset_type" / borsh.U8,
    "pyth_price_feed" / BorshPubkey,
    "min_order_size" / borsh.U64,
    "max_leverage" / borsh.U16,
    "maintenance_margin_ratio" / borsh.U16,
    "liquidation_fee" / borsh.U16,
    "funding_rate_multiplier" / borsh.U16,
    "active" / borsh.Bool,
)

UPDATE_ASSET_LAYOUT = borsh.CStruct(
    "asset_id" / borsh.String,
    "min_order_size" / borsh.Option(borsh.U64),
    "max_leverage" / borsh.Option(borsh.U16),
    "maintenance_margin_ratio" / borsh.Option(borsh.U16),
    "liquidation_fee" / borsh.Option(borsh.U16),
    "funding_rate_multiplier" / borsh.Option(borsh.U16),
    "active" / borsh.Option(borsh.Bool),
)

HAS_ALREADY_ROLE = 6000
ALREADY_REGISTERED = 6001
NOT_FOUND = 6002
NOT_OWNER = 6003
NOT_GOV = 6004
ASSET_ALREADY_REGISTERED = 6005
ASSET_NOT_FOUND = 6006


@dataclass(frozen=True)
class RegistryInitParams:
    gov: Pubkey
    dev: Pubkey
    manager: Pubkey


@dataclass(frozen=True)
class UpsertOutcome:
    asset_id: str
    action: UpsertAction
    signature: str


class RegistryClient(ProgramClient):
    ERROR_NAMES = {
        HAS_ALREADY_ROLE: "HasAlreadyRole",
        ALREADY_REGISTERED: "AlreadyRegistered",
        NOT_FOUND: "NotFound",
        NOT_OWNER: "NotOwner",
        NOT_GOV: "NotGov",
        ASSET_ALREADY_REGISTERED: "AssetAlreadyRegistered",
        ASSET_NOT_FOUND: "AssetNotFound",
    }
    ALREADY_EXISTS_CODES = frozenset({ASSET_ALREADY_REGISTERED})

    @property
    def registry(self) -> Pubkey:
        return pda.registry_address(self.program_id)[0]

    async def is_initialized(self) -> bool:
        return await self.gateway.account_exists(self.registry)

    def initialize_ix(self, params: RegistryInitParams) -> Instruction:
        registry = self.registry
        authority, _ = pda.registry_authority_address(self.program_id, registry)
        data = INITIALIZE_LAYOUT.build({"gov": params.gov, "dev": params.dev, "manager": params.manager})
        return self.instruction(
            "initialize",
            data,
            [
                writable(registry),
                writable(self.payer.pubkey(), signer=True),
                readonly(authority),
                readonly(SYSTEM_PROGRAM_ID),
            ],
        )

    async def initialize(self, params: RegistryInitParams) -> TxReceipt:
        """Create the registry account with the operator as owner."""
        return await self.send([self.initialize_ix(params)], label="registry.initialize")

    def register_asset_ix(self, asset: AssetDescriptor, gov: Pubkey) -> Instruction:
        data = REGISTER_ASSET_LAYOUT.build({
            "asset_id": asset.asset_id,
            "asset_type": int(asset.asset_type),
            "pyth_price_feed": Pubkey.from_string(asset.price_feed),
            "min_order_size": asset.min_order_size,
            "max_leverage": asset.max_leverage,
            "maintenance_margin_ratio": asset.maintenance_margin_ratio,
            "liquidation_fee": asset.liquidation_fee,
            "funding_rate_multiplier": asset.funding_rate_multiplier,
            "active": asset.active,
        })
        return self.instruction("register_asset", data, [writable(self.registry), readonly(gov, signer=True)])

    def update_asset_ix(self, asset: AssetDescriptor, gov: Pubkey) -> Instruction:
        # The program cannot change asset_type or the price feed once registered
        data = UPDATE_ASSET_LAYOUT.build({
            "asset_id": asset.asset_id,
            "min_order_size": asset.min_order_size,
            "max_leverage": asset.max_leverage,
            "maintenance_margin_ratio": asset.maintenance_margin_ratio,
            "liquidation_fee": asset.liquidation_fee,
            "funding_rate_multiplier": asset.funding_rate_multiplier,
            "active": asset.active,
        })
        return self.instruction("update_asset", data, [writable(self.registry), readonly(gov, signer=True)])

    async def register_asset(self, asset: AssetDescriptor, governance: Keypair) -> TxReceipt:
        return await self.send(
            [self.register_asset_ix(asset, governance.pubkey())],
            label=f"registry.register_asset({asset.asset_id})",
            extra_signers=[governance],
        )

    async def update_asset(self, asset: AssetDescriptor, governance: Keypair) -> TxReceipt:
        return await self.send(
            [self.update_asset_ix(asset, governance.pubkey())],
            label=f"registry.update_asset({asset.asset_id})",
            extra_signers=[governance],
        )

    async def register_or_update(self, asset: AssetDescriptor, governance: Keypair) -> UpsertOutcome:
        """
        Register ``asset``, falling back to an update when the registry
        already holds it. Any other rejection raises.
        """
        outcome = await self.submit(
            [self.register_asset_ix(asset, governance.pubkey())],
            label=f"registry.register_asset({asset.asset_id})",
            extra_signers=[governance],
        )
        if outcome.ok:
            return UpsertOutcome(asset.asset_id, UpsertAction.REGISTERED, outcome.signature)

        if outcome.failure is FailureClass.ALREADY_EXISTS:
            logger.info(f"{asset.asset_id} already registered, updating")
            receipt = await self.update_asset(asset, governance)
            return UpsertOutcome(asset.asset_id, UpsertAction.UPDATED, receipt.signature)

        raise outcome.error()
