"""
Static deployment catalog: programs, tokens, assets and markets.

Risk and fee parameters are fixed-point: sizes in base smallest units,
ratios and fees in basis points, funding multipliers in percent of the
base rate.
"""

from typing import Dict, List

from omnideploy.config import LAMPORTS_PER_SOL
from omnideploy.models import AssetDescriptor, AssetType, MarketDescriptor

# Program name -> keypair name under keys_dir
PROGRAM_NAMES = ("registry", "clob", "price_router", "trading_storage", "omni_token", "olp_vault")
PROGRAM_KEYPAIR_PREFIX = "omniliquid_"


def program_keypair_name(program: str) -> str:
    return f"{PROGRAM_KEYPAIR_PREFIX}{program}"


# Settlement token (mock USDC)
SETTLEMENT_MINT_KEYPAIR = "settlement-mint"
SETTLEMENT_DECIMALS = 6
SETTLEMENT_INITIAL_SUPPLY = 1_000_000 * 10 ** SETTLEMENT_DECIMALS

# Utility token
UTILITY_MINT_KEYPAIR = "omni-mint"
UTILITY_TOKEN_NAME = "Omniliquid"
UTILITY_TOKEN_SYMBOL = "OMNI"
UTILITY_TOKEN_URI = "https://omniliquid.xyz/token-metadata.json"
UTILITY_TOKEN_DECIMALS = 9
UTILITY_MAX_SUPPLY = 1_000_000_000 * 10 ** UTILITY_TOKEN_DECIMALS

BASE_MINT_DECIMALS = 9


def base_mint_keypair_name(symbol: str) -> str:
    return f"{symbol}-base-mint"


# Accounts the market program initializes; persisted so a re-run can find a landed market
MARKET_ACCOUNT_ROLES = ("market", "orderbook", "base-vault", "quote-vault")


def market_account_keypair_name(symbol: str, role: str) -> str:
    return f"{symbol}-{role}"


# Test account funding
TEST_ACCOUNT_AIRDROP = 1 * LAMPORTS_PER_SOL
TEST_ACCOUNT_FALLBACK_TRANSFER = LAMPORTS_PER_SOL // 10
TEST_ACCOUNT_LOCALNET_TRANSFER = 2 * LAMPORTS_PER_SOL
TEST_SETTLEMENT_AMOUNT = 10_000 * 10 ** SETTLEMENT_DECIMALS
TEST_BASE_AMOUNT = 1_000 * 10 ** BASE_MINT_DECIMALS

# Pyth price feed accounts (devnet)
PYTH_FEEDS: Dict[str, str] = {
    "BTC/USD": "HovQMDrbAgAYPCmHVSrezcSmkMtXSSUsLDFANExrZh2J",
    "ETH/USD": "EdVCmQ9FSPcVe5YySXDPCRmc8aDQLKJ9xvYBMZPie1Vw",
    "SOL/USD": "J83w4HKfqxwcq3BEMMkPFSppX3gqekLyLJBexebFVkix",
    "AAPL/USD": "5yixRcKtcs5BZ1K2FsLFwmES1MyA92d6efvijjVevQkw",
    "TSLA/USD": "3Mnn2fX6rQyUsyELYms1sBJyChWofzSNRoqYzvgMVz5E",
    "MSFT/USD": "8s9NADL7iQnMpZTsyM64qwZB7wCshB4WdE1s7ZswXhPJ",
    "EUR/USD": "8qFUgxVE2sLhK4cAVtiZd3kiAqkVwA8bA94VWQvsAbVf",
    "GBP/USD": "B1oNGyQcTG3jchtxdGJvSKnvrYCm8cmXTDQJPBsXqxeJ",
    "JPY/USD": "BLM5vgxJnsJhJSCenj5LF4XhNpjrRHxqQ8jLYYAFmX8s",
    "XAU/USD": "9YsFRbGHvxjRLGhV1LJBsJQUjUekitPv3ynJKWzHS8Ao",
    "XAG/USD": "B2bW27xZyqMwNGivnzF9zHtLgJfaKjBTA1C3LJKzG5ui",
    "BRENT/USD": "4amtaGQJzEXPtWmZh7vBGwfM8YJXxRnCbLbSLLYYZrFe",
}

# Per-class risk profile: max_leverage, maintenance margin bps,
# liquidation fee bps, funding multiplier percent
_RISK = {
    AssetType.CRYPTO: (100, 500, 250, 100),
    AssetType.STOCK: (10, 1000, 150, 120),
    AssetType.FOREX: (30, 750, 150, 80),
    AssetType.COMMODITY: (20, 800, 200, 110),
}


def _asset(asset_id: str, asset_type: AssetType, feed: str, min_order_size: int) -> AssetDescriptor:
    leverage, margin, liquidation_fee, funding = _RISK[asset_type]
    return AssetDescriptor(
        asset_id=asset_id,
        asset_type=asset_type,
        price_feed=PYTH_FEEDS[feed],
        min_order_size=min_order_size,
        max_leverage=leverage,
        maintenance_margin_ratio=margin,
        liquidation_fee=liquidation_fee,
        funding_rate_multiplier=funding,
        active=True,
    )


ASSETS: List[AssetDescriptor] = [
    _asset("BTC", AssetType.CRYPTO, "BTC/USD", 100_000),
    _asset("ETH", AssetType.CRYPTO, "ETH/USD", 1_000_000),
    _asset("SOL", AssetType.CRYPTO, "SOL/USD", 10_000_000),
    _asset("AAPL", AssetType.STOCK, "AAPL/USD", 100_000),
    _asset("TSLA", AssetType.STOCK, "TSLA/USD", 100_000),
    _asset("MSFT", AssetType.STOCK, "MSFT/USD", 100_000),
    _asset("EUR/USD", AssetType.FOREX, "EUR/USD", 1_000_000),
    _asset("GBP/USD", AssetType.FOREX, "GBP/USD", 1_000_000),
    _asset("JPY/USD", AssetType.FOREX, "JPY/USD", 1_000_000),
    _asset("GOLD", AssetType.COMMODITY, "XAU/USD", 100_000),
    _asset("SILVER", AssetType.COMMODITY, "XAG/USD", 100_000),
    _asset("OIL", AssetType.COMMODITY, "BRENT/USD", 100_000),
]


def _market(
    symbol: str,
    asset_id: str,
    min_base_order_size: int,
    tick_size: int,
    taker_fee_bps: int,
    maker_rebate_bps: int,
) -> MarketDescriptor:
    return MarketDescriptor(
        name=symbol,
        symbol=symbol,
        asset_id=asset_id,
        is_perpetual=True,
        settle_with_usdc=True,
        min_base_order_size=min_base_order_size,
        tick_size=tick_size,
        taker_fee_bps=taker_fee_bps,
        maker_rebate_bps=maker_rebate_bps,
    )


MARKETS: List[MarketDescriptor] = [
    _market("BTC-PERP", "BTC", 100_000, 100_000, 75, 25),
    _market("ETH-PERP", "ETH", 1_000_000, 10_000, 75, 25),
    _market("SOL-PERP", "SOL", 10_000_000, 1_000, 75, 25),
    _market("AAPL-PERP", "AAPL", 100_000, 1_000, 100, 30),
    _market("EUR/USD-PERP", "EUR/USD", 1_000_000, 10, 80, 20),
    _market("GOLD-PERP", "GOLD", 100_000, 10_000, 80, 20),
]
