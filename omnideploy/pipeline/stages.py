"""
Deployment stages.

Each stage reads one artifact snapshot, requires its upstream records,
then works through its items one at a time. An item failing with a
network or program error is recorded and the stage moves on; a missing
or corrupt artifact aborts the stage. Every stage can be re-run: items
that are already applied on chain are detected and counted as done.
"""

import logging
from typing import Awaitable, Callable, Optional, Tuple

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from omnideploy import catalog, pda
from omnideploy.config import LAMPORTS_PER_SOL, Cluster
from omnideploy.errors import (
    ITEM_ERRORS,
    ConfigurationError,
    CorruptArtifactError,
    OnChainLogicError,
    PreconditionMissingError,
)
from omnideploy.keypairs import short_address
from omnideploy.logging_config import DeployLogContext
from omnideploy.models import (
    AssetDescriptor,
    DeployedMarket,
    ProgramIds,
    RegisteredAsset,
    TestAccount,
    UpsertAction,
    WalletSet,
)
from omnideploy.pipeline.context import DeployContext
from omnideploy.pipeline.report import ItemStatus, StageReport
from omnideploy.programs import MarketAccounts, MarketInitParams, RegistryInitParams, UtilityTokenParams, oracle_feed_id_hex

logger = logging.getLogger(__name__)

# Stage-fatal conditions
STAGE_ERRORS = (PreconditionMissingError, CorruptArtifactError, ConfigurationError)

# Item-fatal conditions; ValueError covers parameters the program would reject
ITEM_FAILURES = ITEM_ERRORS + (ValueError,)

ItemAction = Callable[[], Awaitable[Tuple[ItemStatus, str]]]


def _sol(lamports: int) -> str:
    return f"{lamports / LAMPORTS_PER_SOL:.4f} SOL"


class Stage:
    """Base class: logging context, abort handling and per-item isolation."""

    name = "stage"

    async def run(self, ctx: DeployContext) -> StageReport:
        report = StageReport(self.name)
        with DeployLogContext(run_id=ctx.run_id, stage=self.name):
            logger.info(f"=== {self.name} on {ctx.cluster.value} ===")
            try:
                await self.execute(ctx, report)
            except STAGE_ERRORS as e:
                logger.error(f"{self.name} aborted: {e}")
                report.abort(e)
            report.log_summary()
        return report

    async def execute(self, ctx: DeployContext, report: StageReport) -> None:
        raise NotImplementedError

    def stop_requested(self, ctx: DeployContext, report: StageReport) -> bool:
        if ctx.cancelled:
            report.cancelled = True
            logger.warning(f"{self.name}: cancelled before remaining items")
            return True
        return False

    async def attempt(self, report: StageReport, item: str, action: ItemAction) -> bool:
        """Run one item; record its outcome. Returns True when it succeeded."""
        with DeployLogContext(item=item):
            logger.info(f"[attempt] {item}")
            try:
                status, detail = await action()
            except ITEM_FAILURES as e:
                logger.error(f"[fail] {item}: {e}")
                logs = getattr(e, "logs", None)
                if logs:
                    logger.debug(f"{item} program logs:\n" + "\n".join(logs[-10:]))
                report.failed_item(item, e)
                return False
            if status is ItemStatus.SKIPPED:
                logger.info(f"[ok] {item}: already applied ({detail})")
                report.skipped_item(item, detail)
            else:
                logger.info(f"[ok] {item}: {detail}")
                report.ok_item(item, detail)
            return True


class Bootstrap(Stage):
    """Make sure the operator can pay for the rest of the run."""

    name = "bootstrap"

    async def execute(self, ctx: DeployContext, report: StageReport) -> None:
        await self.attempt(report, "operator-balance", lambda: self._check_balance(ctx))

    async def _check_balance(self, ctx: DeployContext) -> Tuple[ItemStatus, str]:
        operator = ctx.operator.pubkey()
        minimum = ctx.settings.min_operator_balance
        balance = await ctx.chain.get_balance(operator)
        if balance >= minimum:
            return ItemStatus.SKIPPED, f"balance {_sol(balance)}"

        if not ctx.cluster.allows_airdrop:
            logger.warning(
                f"Operator {short_address(operator)} holds {_sol(balance)}, below {_sol(minimum)}; "
                f"fund it before continuing on {ctx.cluster.value}"
            )
            return ItemStatus.OK, f"balance {_sol(balance)} (below minimum)"

        try:
            await ctx.chain.request_airdrop(operator, ctx.settings.bootstrap_airdrop)
        except ITEM_ERRORS as e:
            logger.warning(f"Airdrop failed: {e}")
        balance = await ctx.chain.get_balance(operator)
        if balance < minimum:
            logger.warning(f"Operator balance {_sol(balance)} still below {_sol(minimum)}")
        return ItemStatus.OK, f"balance {_sol(balance)}"


class DeployRegistry(Stage):
    """Record program ids, create the wallet set and initialize the registry."""

    name = "deploy-registry"

    async def execute(self, ctx: DeployContext, report: StageReport) -> None:
        # Local bookkeeping only; the registry item decides the stage outcome
        ids = self._record_program_ids(ctx)
        wallets, created = self._wallet_set(ctx)
        logger.info(f"Wallet set {'generated' if created else 'reused'}")

        registry = ctx.programs.registry(ids)

        async def initialize() -> Tuple[ItemStatus, str]:
            if await registry.is_initialized():
                return ItemStatus.SKIPPED, f"registry {registry.registry} exists"
            pubkeys = wallets.pubkeys()
            receipt = await registry.initialize(RegistryInitParams(
                gov=pubkeys["governance"],
                dev=pubkeys["dev"],
                manager=pubkeys["manager"],
            ))
            return ItemStatus.OK, f"registry {registry.registry} ({receipt.signature[:16]}...)"

        await self.attempt(report, "registry", initialize)

    def _record_program_ids(self, ctx: DeployContext) -> ProgramIds:
        ids = {
            name: str(ctx.keypairs.load(catalog.program_keypair_name(name)).pubkey())
            for name in catalog.PROGRAM_NAMES
        }
        program_ids = ProgramIds(cluster=ctx.cluster.value, **ids)
        ctx.store.put_program_ids(program_ids)
        for name, program_id in ids.items():
            logger.info(f"  {name}: {program_id}")
        return program_ids

    def _wallet_set(self, ctx: DeployContext) -> Tuple[WalletSet, bool]:
        wallets = ctx.store.snapshot().wallets
        if wallets is not None:
            return wallets, False
        # Persist before any remote call references these keys
        wallets = WalletSet.generate()
        ctx.store.put_wallets(wallets)
        for role, pubkey in wallets.pubkeys().items():
            logger.info(f"  {role}: {pubkey}")
        return wallets, True


class IssueSettlementToken(Stage):
    """Create the settlement (quote) mint and the operator's supply."""

    name = "issue-settlement-token"

    async def execute(self, ctx: DeployContext, report: StageReport) -> None:
        mint_keypair = ctx.keypairs.load(catalog.SETTLEMENT_MINT_KEYPAIR)
        mint = mint_keypair.pubkey()
        spl = ctx.programs.spl_token()

        async def create_mint() -> Tuple[ItemStatus, str]:
            if await spl.mint_exists(mint):
                status = ItemStatus.SKIPPED
            else:
                await spl.create_mint(mint_keypair, catalog.SETTLEMENT_DECIMALS)
                status = ItemStatus.OK
            ctx.store.update_tokens(settlement_mint=str(mint))
            return status, f"mint {mint}"

        if not await self.attempt(report, "settlement-mint", create_mint):
            return

        async def initial_supply() -> Tuple[ItemStatus, str]:
            account, _ = await spl.ensure_token_account(ctx.operator.pubkey(), mint)
            balance = await spl.token_balance(account)
            if balance > 0:
                status, detail = ItemStatus.SKIPPED, f"{account} holds {balance}"
            else:
                await spl.mint_to(mint, account, catalog.SETTLEMENT_INITIAL_SUPPLY)
                status, detail = ItemStatus.OK, f"minted {catalog.SETTLEMENT_INITIAL_SUPPLY} to {account}"
            ctx.store.update_tokens(settlement_account=str(account))
            return status, detail

        await self.attempt(report, "operator-supply", initial_supply)


class DeployUtilityToken(Stage):
    """Initialize the OMNI token: mint plus capped-supply config."""

    name = "deploy-utility-token"

    async def execute(self, ctx: DeployContext, report: StageReport) -> None:
        ids = ctx.store.snapshot().require_program_ids()
        mint_keypair = ctx.keypairs.load(catalog.UTILITY_MINT_KEYPAIR)
        mint = mint_keypair.pubkey()
        token = ctx.programs.utility_token(ids)
        config = token.token_config(mint)

        async def initialize() -> Tuple[ItemStatus, str]:
            if await token.is_initialized(mint):
                status = ItemStatus.SKIPPED
            else:
                await token.initialize(
                    UtilityTokenParams(
                        name=catalog.UTILITY_TOKEN_NAME,
                        symbol=catalog.UTILITY_TOKEN_SYMBOL,
                        uri=catalog.UTILITY_TOKEN_URI,
                        max_supply=catalog.UTILITY_MAX_SUPPLY,
                    ),
                    mint_keypair,
                )
                status = ItemStatus.OK
            ctx.store.update_tokens(utility_mint=str(mint), utility_config=str(config))
            return status, f"mint {mint}, config {config}"

        await self.attempt(report, catalog.UTILITY_TOKEN_SYMBOL, initialize)


class RegisterAssets(Stage):
    """Register (or update) every catalog asset in the registry."""

    name = "register-assets"

    # update_asset cannot change these; the registry keeps the registration values
    IMMUTABLE_FIELDS = ("asset_type", "price_feed")

    async def execute(self, ctx: DeployContext, report: StageReport) -> None:
        snapshot = ctx.store.snapshot()
        ids = snapshot.require_program_ids()
        governance = snapshot.require_wallets().governance
        registry = ctx.programs.registry(ids)

        for asset in ctx.assets:
            if self.stop_requested(ctx, report):
                break

            async def upsert(asset=asset) -> Tuple[ItemStatus, str]:
                prior = snapshot.asset(asset.asset_id)
                if prior is not None:
                    self._check_immutable(prior, asset)
                outcome = await registry.register_or_update(asset, governance)
                if outcome.action is UpsertAction.UPDATED and prior is None:
                    logger.warning(
                        f"{asset.asset_id} was registered outside this artifact set; "
                        f"recording {', '.join(self.IMMUTABLE_FIELDS)} from the catalog"
                    )
                ctx.store.merge_assets([
                    RegisteredAsset(
                        **asset.model_dump(),
                        applied_via=outcome.action,
                        signature=outcome.signature,
                    )
                ])
                return ItemStatus.OK, outcome.action.value

            await self.attempt(report, asset.asset_id, upsert)

    def _check_immutable(self, prior: RegisteredAsset, asset: AssetDescriptor) -> None:
        for field in self.IMMUTABLE_FIELDS:
            registered, requested = getattr(prior, field), getattr(asset, field)
            if registered != requested:
                raise OnChainLogicError(
                    f"{asset.asset_id}: {field} is fixed at registration "
                    f"(registered {registered}, catalog {requested})",
                    field=field,
                    registered=str(registered),
                    requested=str(requested),
                )


class InitializeMarkets(Stage):
    """Create one CLOB market per catalog market."""

    name = "initialize-markets"

    async def execute(self, ctx: DeployContext, report: StageReport) -> None:
        snapshot = ctx.store.snapshot()
        ids = snapshot.require_program_ids()
        quote_mint = Pubkey.from_string(snapshot.require_settlement_mint())
        assets = snapshot.require_assets([m.asset_id for m in ctx.markets])

        registry, _ = pda.registry_address(ids.pubkey("registry"))
        clob = ctx.programs.market(ids)
        spl = ctx.programs.spl_token()

        for market in ctx.markets:
            if self.stop_requested(ctx, report):
                break
            existing = snapshot.market(market.symbol)
            if existing is not None:
                logger.info(f"[ok] {market.symbol}: already applied (market {existing.market})")
                report.skipped_item(market.symbol, f"market {existing.market}")
                continue

            async def initialize(market=market) -> Tuple[ItemStatus, str]:
                asset = assets[market.asset_id]
                base_keypair = ctx.keypairs.load(catalog.base_mint_keypair_name(market.symbol))
                base_mint = base_keypair.pubkey()
                # Persisted before sending so an unconfirmed attempt is found again
                accounts = MarketAccounts.load(ctx.keypairs, market.symbol)

                if await ctx.chain.account_exists(accounts.market.pubkey()):
                    status, signature = ItemStatus.SKIPPED, None
                else:
                    if not await spl.mint_exists(base_mint):
                        await spl.create_mint(base_keypair, catalog.BASE_MINT_DECIMALS)
                    params = MarketInitParams(
                        descriptor=market,
                        base_mint=base_mint,
                        quote_mint=quote_mint,
                        registry=registry,
                        max_leverage=asset.max_leverage,
                        oracle_feed_id_hex=oracle_feed_id_hex(asset.price_feed),
                    )
                    receipt = await clob.initialize(params, accounts)
                    status, signature = ItemStatus.OK, receipt.signature

                vault_signer, bump = clob.vault_signer(accounts.market.pubkey())
                deployed = DeployedMarket(
                    **market.model_dump(),
                    market=str(accounts.market.pubkey()),
                    orderbook=str(accounts.orderbook.pubkey()),
                    base_mint=str(base_mint),
                    base_vault=str(accounts.base_vault.pubkey()),
                    quote_vault=str(accounts.quote_vault.pubkey()),
                    vault_signer=str(vault_signer),
                    vault_signer_bump=bump,
                    signature=signature,
                )
                ctx.store.merge_markets([deployed])
                return status, f"market {deployed.market}"

            await self.attempt(report, market.symbol, initialize)


class FundTestAccounts(Stage):
    """Give each test identity SOL, settlement tokens and base tokens."""

    name = "fund-test-accounts"

    async def execute(self, ctx: DeployContext, report: StageReport) -> None:
        if ctx.cluster.is_production:
            raise ConfigurationError(f"Refusing to fund test accounts on {ctx.cluster.value}")

        snapshot = ctx.store.snapshot()
        quote_mint = Pubkey.from_string(snapshot.require_settlement_mint())
        markets = snapshot.require_markets()
        spl = ctx.programs.spl_token()

        for index in range(1, ctx.settings.test_account_count + 1):
            if self.stop_requested(ctx, report):
                break

            async def fund(index=index) -> Tuple[ItemStatus, str]:
                keypair = self._test_identity(ctx, index)
                owner = keypair.pubkey()
                sol = await self._fund_sol(ctx, owner)
                minted = await spl.mint_up_to(quote_mint, owner, catalog.TEST_SETTLEMENT_AMOUNT)
                for market in markets:
                    minted += await spl.mint_up_to(
                        Pubkey.from_string(market.base_mint), owner, catalog.TEST_BASE_AMOUNT
                    )
                if sol is None and minted == 0:
                    return ItemStatus.SKIPPED, f"{short_address(owner)} already funded"
                return ItemStatus.OK, f"{short_address(owner)} funded"

            await self.attempt(report, f"test-account-{index}", fund)

    def _test_identity(self, ctx: DeployContext, index: int) -> Keypair:
        account = ctx.store.test_account(index)
        if account is not None:
            return account.keypair()
        keypair = Keypair()
        ctx.store.put_test_account(index, TestAccount.from_keypair(keypair))
        return keypair

    async def _fund_sol(self, ctx: DeployContext, owner: Pubkey) -> Optional[str]:
        """Top up SOL; returns how it was funded, or None when nothing was needed."""
        if ctx.cluster is Cluster.LOCALNET:
            target = catalog.TEST_ACCOUNT_LOCALNET_TRANSFER
        else:
            target = catalog.TEST_ACCOUNT_FALLBACK_TRANSFER
        if await ctx.chain.get_balance(owner) >= target:
            return None

        if ctx.cluster is Cluster.LOCALNET:
            await ctx.chain.transfer(ctx.operator, owner, catalog.TEST_ACCOUNT_LOCALNET_TRANSFER)
            return "transfer"

        try:
            await ctx.chain.request_airdrop(owner, catalog.TEST_ACCOUNT_AIRDROP)
            return "airdrop"
        except ITEM_ERRORS as e:
            logger.warning(f"Airdrop to {short_address(owner)} failed ({e}); transferring from operator")
        await ctx.chain.transfer(ctx.operator, owner, catalog.TEST_ACCOUNT_FALLBACK_TRANSFER)
        return "transfer"


STAGES = (
    Bootstrap,
    DeployRegistry,
    IssueSettlementToken,
    DeployUtilityToken,
    RegisterAssets,
    InitializeMarkets,
    FundTestAccounts,
)

STAGE_NAMES = tuple(stage.name for stage in STAGES)
