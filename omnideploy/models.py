"""
Typed records exchanged between pipeline stages.

Numeric risk and fee parameters are fixed-point integers (basis points,
smallest-unit sizes) sized to the on-chain fields. StrictInt keeps them
from being coerced to or from floats when persisted and reloaded.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, field_validator
from solders.keypair import Keypair
from solders.pubkey import Pubkey

U8 = Annotated[StrictInt, Field(ge=0, le=0xFF)]
U16 = Annotated[StrictInt, Field(ge=0, le=0xFFFF)]
U64 = Annotated[StrictInt, Field(ge=0, le=0xFFFF_FFFF_FFFF_FFFF)]


def _check_pubkey(value: str) -> str:
    try:
        Pubkey.from_string(value)
    except Exception as e:
        raise ValueError(f"not a valid base58 public key: {value!r}") from e
    return value


class AssetType(IntEnum):
    """Ordinals match the registry program's AssetType enum."""
    CRYPTO = 0
    STOCK = 1
    FOREX = 2
    COMMODITY = 3
    INDEX = 4
    LONG_TAIL = 5


class UpsertAction(str, Enum):
    REGISTERED = "registered"
    UPDATED = "updated"


class Artifact(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProgramIds(Artifact):
    """Program name -> deployed program id, for one cluster."""
    cluster: str
    registry: str
    clob: str
    price_router: str
    trading_storage: str
    omni_token: str
    olp_vault: str

    @field_validator("registry", "clob", "price_router", "trading_storage", "omni_token", "olp_vault")
    @classmethod
    def check_program_id(cls, v):
        return _check_pubkey(v)

    def pubkey(self, program: str) -> Pubkey:
        return Pubkey.from_string(getattr(self, program))

    def as_map(self) -> Dict[str, str]:
        return self.model_dump(exclude={"cluster"})


class TokenIds(Artifact):
    settlement_mint: Optional[str] = None
    settlement_account: Optional[str] = None
    utility_mint: Optional[str] = None
    utility_config: Optional[str] = None


class AssetDescriptor(Artifact):
    asset_id: str = Field(min_length=1, max_length=16)
    asset_type: AssetType
    price_feed: str
    min_order_size: U64
    max_leverage: U16
    maintenance_margin_ratio: U16
    liquidation_fee: U16
    funding_rate_multiplier: U16
    active: StrictBool = True

    @field_validator("price_feed")
    @classmethod
    def check_price_feed(cls, v):
        return _check_pubkey(v)

    @field_validator("asset_type", mode="before")
    @classmethod
    def reject_float_type(cls, v):
        if isinstance(v, float):
            raise ValueError("asset_type must be an integer ordinal")
        return v


class RegisteredAsset(AssetDescriptor):
    applied_via: UpsertAction
    signature: str

    def descriptor(self) -> AssetDescriptor:
        return AssetDescriptor(**self.model_dump(exclude={"applied_via", "signature"}))


class MarketDescriptor(Artifact):
    name: str = Field(min_length=1, max_length=32)
    symbol: str = Field(min_length=1, max_length=16)
    asset_id: str = Field(min_length=1, max_length=16)
    is_perpetual: StrictBool = True
    settle_with_usdc: StrictBool = True
    min_base_order_size: U64 = Field(gt=0)
    tick_size: U64 = Field(gt=0)
    taker_fee_bps: U16 = Field(le=500)
    maker_rebate_bps: U16
    funding_interval: U64 = 3600
    max_oracle_age: U64 = 60

    @field_validator("maker_rebate_bps")
    @classmethod
    def rebate_within_fee(cls, v, info):
        taker = info.data.get("taker_fee_bps")
        if taker is not None and v > taker:
            raise ValueError("maker rebate cannot exceed taker fee")
        return v


class DeployedMarket(MarketDescriptor):
    market: str
    orderbook: str
    base_mint: str
    base_vault: str
    quote_vault: str
    vault_signer: str
    vault_signer_bump: U8
    # None when a landed-but-unconfirmed market was adopted on a later run
    signature: Optional[str] = None


class TestAccount(Artifact):
    __test__ = False

    public_key: str
    secret_key: List[U8] = Field(min_length=64, max_length=64)

    @classmethod
    def from_keypair(cls, keypair: Keypair) -> "TestAccount":
        return cls(public_key=str(keypair.pubkey()), secret_key=list(bytes(keypair)))

    def keypair(self) -> Keypair:
        keypair = Keypair.from_bytes(bytes(self.secret_key))
        if str(keypair.pubkey()) != self.public_key:
            raise ValueError("public_key does not match secret_key")
        return keypair


class WalletSet:
    """Governance/dev/manager identities for the registry."""

    ROLES = ("governance", "dev", "manager")

    def __init__(self, governance: Keypair, dev: Keypair, manager: Keypair):
        self.governance = governance
        self.dev = dev
        self.manager = manager

    @classmethod
    def generate(cls) -> "WalletSet":
        return cls(Keypair(), Keypair(), Keypair())

    def pubkeys(self) -> Dict[str, Pubkey]:
        return {role: getattr(self, role).pubkey() for role in self.ROLES}

    def __eq__(self, other) -> bool:
        if not isinstance(other, WalletSet):
            return NotImplemented
        return all(bytes(getattr(self, r)) == bytes(getattr(other, r)) for r in self.ROLES)
