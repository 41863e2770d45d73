"""Client for the CLOB program's market setup instruction."""

import logging
from dataclasses import dataclass

import borsh_construct as borsh
from anchorpy.borsh_extension import BorshPubkey
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import RENT
from spl.token.constants import TOKEN_PROGRAM_ID

from omnideploy import catalog, pda
from omnideploy.keypairs import KeypairStore
from omnideploy.models import MarketDescriptor
from omnideploy.programs.base import ProgramClient, readonly, writable
from omnideploy.rpc import TxReceipt

logger = logging.getLogger(__name__)

INITIALIZE_LAYOUT = borsh.CStruct(
    "market_name" / borsh.String,
    "market_symbol" / borsh.String,
    "asset_id" / borsh.String,
    "is_perpetual" / borsh.Bool,
    "settle_with_usdc" / borsh.Bool,
    "min_base_order_size" / borsh.U64,
    "tick_size" / borsh.U64,
    "taker_fee_bps" / borsh.U16,
    "maker_rebate_bps" / borsh.U16,
    "max_leverage" / borsh.U16,
    "funding_interval" / borsh.U64,
    "vault_signer_bump" / borsh.U8,
    "registry" / BorshPubkey,
    "oracle_feed_id_hex" / borsh.String,
    "max_oracle_age" / borsh.U64,
)

MAX_LEVERAGE_LIMIT = 10_000

_ERRORS = (
    "InvalidParameters", "OrderSizeTooSmall", "InvalidTickSize", "MarketInactive",
    "OrderNotFound", "InvalidOrderbook", "InvalidVault", "InvalidAuthority",
    "PostOnlyWouldMatch", "InvalidReduceOnlyOrder", "InvalidReduceOnlySize",
    "NoPositionToReduce", "NotPerpetualMarket", "FundingRateTooSoon",
    "PositionNotFound", "PositionNotLiquidatable", "InsufficientMargin",
    "WithdrawalWouldTriggerLiquidation", "ExceedsMaxLeverage", "AssetNotAvailable",
    "InvalidRegistry", "InvalidPriceFeed", "InvalidOrderType", "SelfTradePrevented",
    "PriceOutOfRange", "MarketFull",
)


def oracle_feed_id_hex(price_feed: str) -> str:
    """64-char hex feed id for a price feed account."""
    return bytes(Pubkey.from_string(price_feed)).hex()


@dataclass(frozen=True)
class MarketInitParams:
    descriptor: MarketDescriptor
    base_mint: Pubkey
    quote_mint: Pubkey
    registry: Pubkey
    max_leverage: int
    oracle_feed_id_hex: str

    def __post_init__(self):
        if not 0 < self.max_leverage <= MAX_LEVERAGE_LIMIT:
            raise ValueError(f"max_leverage must be in 1..{MAX_LEVERAGE_LIMIT}, got {self.max_leverage}")
        if len(self.oracle_feed_id_hex) != 64:
            raise ValueError("oracle feed id must be 32 bytes of hex")


@dataclass(frozen=True)
class MarketAccounts:
    """Accounts the program initializes; all sign the setup transaction."""
    market: Keypair
    orderbook: Keypair
    base_vault: Keypair
    quote_vault: Keypair

    @classmethod
    def generate(cls) -> "MarketAccounts":
        return cls(Keypair(), Keypair(), Keypair(), Keypair())

    @classmethod
    def load(cls, keypairs: KeypairStore, symbol: str) -> "MarketAccounts":
        """Persisted per-symbol keypairs, generated on first use."""
        return cls(*(
            keypairs.load(catalog.market_account_keypair_name(symbol, role))
            for role in catalog.MARKET_ACCOUNT_ROLES
        ))

    def signers(self) -> list:
        return [self.market, self.orderbook, self.base_vault, self.quote_vault]


class MarketClient(ProgramClient):
    ERROR_NAMES = {6000 + i: name for i, name in enumerate(_ERRORS)}

    def vault_signer(self, market: Pubkey):
        return pda.vault_signer_address(self.program_id, market)

    def initialize_ix(self, params: MarketInitParams, accounts: MarketAccounts) -> Instruction:
        market = params.descriptor
        vault_signer, bump = self.vault_signer(accounts.market.pubkey())
        data = INITIALIZE_LAYOUT.build({
            "market_name": market.name,
            "market_symbol": market.symbol,
            "asset_id": market.asset_id,
            "is_perpetual": market.is_perpetual,
            "settle_with_usdc": market.settle_with_usdc,
            "min_base_order_size": market.min_base_order_size,
            "tick_size": market.tick_size,
            "taker_fee_bps": market.taker_fee_bps,
            "maker_rebate_bps": market.maker_rebate_bps,
            "max_leverage": params.max_leverage,
            "funding_interval": market.funding_interval,
            "vault_signer_bump": bump,
            "registry": params.registry,
            "oracle_feed_id_hex": params.oracle_feed_id_hex,
            "max_oracle_age": market.max_oracle_age,
        })
        return self.instruction(
            "initialize",
            data,
            [
                writable(accounts.market.pubkey(), signer=True),
                writable(accounts.orderbook.pubkey(), signer=True),
                readonly(params.base_mint),
                readonly(params.quote_mint),
                writable(accounts.base_vault.pubkey(), signer=True),
                writable(accounts.quote_vault.pubkey(), signer=True),
                readonly(vault_signer),
                writable(self.payer.pubkey(), signer=True),
                readonly(SYSTEM_PROGRAM_ID),
                readonly(TOKEN_PROGRAM_ID),
                readonly(RENT),
            ],
        )

    async def initialize(self, params: MarketInitParams, accounts: MarketAccounts) -> TxReceipt:
        return await self.send(
            [self.initialize_ix(params, accounts)],
            label=f"clob.initialize({params.descriptor.symbol})",
            extra_signers=accounts.signers(),
        )
