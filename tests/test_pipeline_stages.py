"""
test_pipeline_stages.py: Stage behaviour against the in-memory ledger.

Tests:
    1. Bootstrap tops up on test clusters, only warns on mainnet
    2. DeployRegistry persists ids and wallets once, is re-runnable and fails
       when the registry initialize is rejected
    3. Corrupt identities and artifacts abort without being replaced
    4. Settlement and utility tokens are created once
    5. RegisterAssets upserts idempotently, isolates item failures and never
       records a changed feed or asset type the registry would ignore
    6. InitializeMarkets checks every precondition before touching the chain
       and adopts a market that landed unconfirmed instead of creating another
    7. FundTestAccounts reuses identities and only tops up
    8. Cancellation stops between items
    9. run_all runs in order and stops at the first failed stage
"""

import json

import pytest
from solders.pubkey import Pubkey

from omnideploy import catalog, pda
from omnideploy.config import LAMPORTS_PER_SOL
from omnideploy.errors import (
    CorruptArtifactError,
    CorruptIdentityError,
    OnChainLogicError,
    PreconditionMissingError,
)
from omnideploy.models import UpsertAction, WalletSet
from omnideploy.pipeline import (
    Bootstrap,
    DeploymentPipeline,
    DeployRegistry,
    DeployUtilityToken,
    FundTestAccounts,
    InitializeMarkets,
    IssueSettlementToken,
    ItemStatus,
    RegisterAssets,
)

BTC, ETH = catalog.ASSETS[0], catalog.ASSETS[1]


async def _prepare(ctx, *stages):
    for stage in stages:
        report = await stage().run(ctx)
        assert report.ok, report.to_dict()


# ─── Bootstrap ──────────────────────────────────────────────────────────────

class TestBootstrap:
    @pytest.mark.asyncio
    async def test_airdrops_when_below_minimum_on_devnet(self, ctx, ledger, operator):
        report = await Bootstrap().run(ctx)

        assert report.ok
        assert ledger.remote_calls("airdrop") == [("airdrop", operator.pubkey(), 2 * LAMPORTS_PER_SOL)]
        assert ledger.balances[operator.pubkey()] == 2 * LAMPORTS_PER_SOL

    @pytest.mark.asyncio
    async def test_sufficient_balance_is_left_alone(self, ctx, ledger, operator):
        ledger.balances[operator.pubkey()] = 5 * LAMPORTS_PER_SOL

        report = await Bootstrap().run(ctx)

        assert report.ok
        assert report.items[0].status is ItemStatus.SKIPPED
        assert ledger.remote_calls("airdrop") == []

    @pytest.mark.asyncio
    async def test_failed_airdrop_only_warns(self, ctx, ledger):
        ledger.airdrop_fails = True
        report = await Bootstrap().run(ctx)
        assert report.ok

    @pytest.mark.asyncio
    async def test_mainnet_never_airdrops(self, make_context, ledger):
        ctx = make_context(cluster="mainnet-beta")
        report = await Bootstrap().run(ctx)

        assert report.ok
        assert ledger.remote_calls("airdrop") == []


# ─── DeployRegistry ─────────────────────────────────────────────────────────

class TestDeployRegistry:
    @pytest.mark.asyncio
    async def test_records_program_ids_and_wallets(self, ctx, ledger):
        report = await DeployRegistry().run(ctx)

        assert report.ok
        ids = ctx.store.program_ids()
        assert ids.cluster == "devnet"
        assert set(ids.as_map()) == set(catalog.PROGRAM_NAMES)
        for name in catalog.PROGRAM_NAMES:
            path = ctx.keypairs.path_for(catalog.program_keypair_name(name))
            assert path.exists()

        wallets = ctx.store.wallets()
        registry = pda.registry_address(ids.pubkey("registry"))[0]
        assert ledger.registry_init[registry]["gov"] == wallets.governance.pubkey()

    @pytest.mark.asyncio
    async def test_rerun_reuses_everything(self, ctx, ledger):
        await _prepare(ctx, DeployRegistry)
        ids_before = ctx.store.program_ids()
        wallets_before = ctx.store.wallets()

        report = await DeployRegistry().run(ctx)

        assert report.ok
        assert ctx.store.program_ids() == ids_before
        assert ctx.store.wallets() == wallets_before
        assert len(ledger.remote_calls("registry.initialize")) == 1
        assert report.items[-1].status is ItemStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_rejected_initialize_fails_the_stage(self, ctx, ledger):
        ledger.registry_init_rejected = True

        report = await DeployRegistry().run(ctx)

        assert not report.ok
        assert [r.item for r in report.items] == ["registry"]
        assert report.failures[0].error.error_name == "HasAlreadyRole"
        # Bookkeeping is still persisted for the next run
        assert ctx.store.program_ids() is not None
        assert ctx.store.wallets() is not None

    @pytest.mark.asyncio
    async def test_corrupt_wallets_abort_and_are_kept(self, ctx, ledger):
        path = ctx.store.path("wallets.json")
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        report = await DeployRegistry().run(ctx)

        assert not report.ok
        assert isinstance(report.aborted, CorruptArtifactError)
        assert path.read_text() == "{not json"
        assert ledger.remote_calls("registry.initialize") == []

    @pytest.mark.asyncio
    async def test_corrupt_program_keypair_aborts(self, ctx):
        path = ctx.keypairs.path_for(catalog.program_keypair_name("clob"))
        path.parent.mkdir(parents=True)
        path.write_text("[1, 2, 3]")

        report = await DeployRegistry().run(ctx)

        assert isinstance(report.aborted, CorruptIdentityError)
        assert path.read_text() == "[1, 2, 3]"
        assert ctx.store.program_ids() is None


# ─── Tokens ─────────────────────────────────────────────────────────────────

class TestTokens:
    @pytest.mark.asyncio
    async def test_settlement_token_issued_once(self, ctx, ledger, operator):
        await _prepare(ctx, IssueSettlementToken)
        tokens = ctx.store.tokens()
        mint = Pubkey.from_string(tokens.settlement_mint)

        assert ledger.mints[mint] == catalog.SETTLEMENT_DECIMALS
        spl = ctx.programs.spl_token()
        assert spl.balance_of(operator.pubkey(), mint) == catalog.SETTLEMENT_INITIAL_SUPPLY
        assert tokens.settlement_account is not None

        report = await IssueSettlementToken().run(ctx)

        assert report.ok
        assert [r.status for r in report.items] == [ItemStatus.SKIPPED, ItemStatus.SKIPPED]
        assert len(ledger.remote_calls("spl.mint_to")) == 1
        assert len(ledger.remote_calls("spl.create_mint")) == 1

    @pytest.mark.asyncio
    async def test_utility_token_requires_program_ids(self, ctx, ledger):
        report = await DeployUtilityToken().run(ctx)

        assert isinstance(report.aborted, PreconditionMissingError)
        assert ledger.remote_calls("omni_token.initialize") == []

    @pytest.mark.asyncio
    async def test_utility_token_initialized_once(self, ctx, ledger):
        await _prepare(ctx, DeployRegistry, DeployUtilityToken)
        await _prepare(ctx, DeployUtilityToken)

        calls = ledger.remote_calls("omni_token.initialize")
        assert calls == [("omni_token.initialize", "OMNI", catalog.UTILITY_MAX_SUPPLY)]
        tokens = ctx.store.tokens()
        assert tokens.utility_mint == str(ctx.keypairs.load(catalog.UTILITY_MINT_KEYPAIR).pubkey())
        assert tokens.utility_config is not None


# ─── RegisterAssets ─────────────────────────────────────────────────────────

class TestRegisterAssets:
    @pytest.mark.asyncio
    async def test_requires_registry_artifacts(self, ctx, ledger):
        report = await RegisterAssets().run(ctx)

        assert isinstance(report.aborted, PreconditionMissingError)
        assert report.attempted == 0
        assert ledger.remote_calls("registry.upsert") == []

    @pytest.mark.asyncio
    async def test_registering_twice_leaves_one_updated_entry_each(self, make_context):
        ctx = make_context(assets=[BTC, ETH])
        await _prepare(ctx, DeployRegistry, RegisterAssets)
        first = ctx.store.assets()
        assert [a.applied_via for a in first] == [UpsertAction.REGISTERED] * 2

        report = await RegisterAssets().run(ctx)

        assert report.ok
        assets = ctx.store.assets()
        assert [a.asset_id for a in assets] == ["BTC", "ETH"]
        assert [a.applied_via for a in assets] == [UpsertAction.UPDATED] * 2

    @pytest.mark.asyncio
    async def test_one_rejected_asset_does_not_stop_the_rest(self, make_context, ledger):
        assets = catalog.ASSETS[:5]
        ctx = make_context(assets=assets)
        ledger.rejected_assets.add(assets[1].asset_id)
        await _prepare(ctx, DeployRegistry)

        report = await RegisterAssets().run(ctx)

        assert report.ok
        assert (report.attempted, report.succeeded, report.failed) == (5, 4, 1)
        assert report.failures[0].item == assets[1].asset_id
        persisted = [a.asset_id for a in ctx.store.assets()]
        assert persisted == [a.asset_id for a in assets if a.asset_id != assets[1].asset_id]

    @pytest.mark.asyncio
    async def test_every_asset_rejected_fails_the_stage(self, make_context, ledger):
        ctx = make_context(assets=[BTC, ETH])
        ledger.rejected_assets.update({"BTC", "ETH"})
        await _prepare(ctx, DeployRegistry)

        report = await RegisterAssets().run(ctx)

        assert not report.ok
        assert report.failed == 2
        assert ctx.store.assets() == []

    @pytest.mark.asyncio
    async def test_prior_entries_are_kept(self, make_context):
        ctx = make_context(assets=[BTC])
        await _prepare(ctx, DeployRegistry, RegisterAssets)
        ctx.assets = [ETH]

        await _prepare(ctx, RegisterAssets)

        assert [a.asset_id for a in ctx.store.assets()] == ["BTC", "ETH"]

    @pytest.mark.asyncio
    async def test_changed_price_feed_fails_and_keeps_the_registered_feed(self, make_context, ledger):
        ctx = make_context(assets=[BTC])
        await _prepare(ctx, DeployRegistry, RegisterAssets)
        ctx.assets = [BTC.model_copy(update={"price_feed": str(Pubkey.new_unique())})]

        report = await RegisterAssets().run(ctx)

        assert not report.ok
        error = report.failures[0].error
        assert isinstance(error, OnChainLogicError)
        assert error.context["field"] == "price_feed"
        assert [a.price_feed for a in ctx.store.assets()] == [BTC.price_feed]
        assert len(ledger.remote_calls("registry.upsert")) == 1

    @pytest.mark.asyncio
    async def test_mutable_fields_are_updated(self, make_context):
        ctx = make_context(assets=[BTC])
        await _prepare(ctx, DeployRegistry, RegisterAssets)
        ctx.assets = [BTC.model_copy(update={"max_leverage": 50})]

        await _prepare(ctx, RegisterAssets)

        (btc,) = ctx.store.assets()
        assert btc.applied_via is UpsertAction.UPDATED
        assert btc.max_leverage == 50
        assert btc.price_feed == BTC.price_feed

    @pytest.mark.asyncio
    async def test_foreign_governance_is_rejected(self, make_context):
        ctx = make_context(assets=[BTC])
        await _prepare(ctx, DeployRegistry)
        # Not the wallet set the registry was initialized with
        ctx.store.path("wallets.json").unlink()
        ctx.store.put_wallets(WalletSet.generate())

        report = await RegisterAssets().run(ctx)

        assert not report.ok
        assert report.failures[0].error.error_name == "NotGov"


# ─── InitializeMarkets ──────────────────────────────────────────────────────

class TestInitializeMarkets:
    @pytest.mark.asyncio
    async def test_before_register_assets_touches_nothing(self, ctx, ledger):
        await _prepare(ctx, DeployRegistry, IssueSettlementToken)
        calls_before = list(ledger.calls)

        report = await InitializeMarkets().run(ctx)

        assert isinstance(report.aborted, PreconditionMissingError)
        assert report.attempted == 0
        assert ledger.calls == calls_before
        assert ctx.store.markets() == []

    @pytest.mark.asyncio
    async def test_missing_settlement_mint_aborts(self, ctx, ledger):
        await _prepare(ctx, DeployRegistry, RegisterAssets)

        report = await InitializeMarkets().run(ctx)

        assert isinstance(report.aborted, PreconditionMissingError)
        assert ledger.remote_calls("clob.initialize") == []

    @pytest.mark.asyncio
    async def test_markets_are_created_with_derived_accounts(self, ctx, ledger):
        await _prepare(ctx, DeployRegistry, IssueSettlementToken, RegisterAssets, InitializeMarkets)

        markets = ctx.store.markets()
        assert [m.symbol for m in markets] == [m.symbol for m in catalog.MARKETS]
        clob = ctx.store.program_ids().pubkey("clob")
        for market in markets:
            assert pda.verify(
                [pda.VAULT_SIGNER_SEED, bytes(Pubkey.from_string(market.market))],
                clob,
                Pubkey.from_string(market.vault_signer),
                market.vault_signer_bump,
            )
            assert ledger.mints[Pubkey.from_string(market.base_mint)] == catalog.BASE_MINT_DECIMALS

        btc = ledger.markets["BTC-PERP"]
        assert btc.max_leverage == 100
        assert btc.oracle_feed_id_hex == bytes(Pubkey.from_string(BTC.price_feed)).hex()
        assert str(btc.quote_mint) == ctx.store.tokens().settlement_mint

    @pytest.mark.asyncio
    async def test_rerun_skips_persisted_markets(self, ctx, ledger):
        await _prepare(ctx, DeployRegistry, IssueSettlementToken, RegisterAssets, InitializeMarkets)
        before = ctx.store.markets()

        report = await InitializeMarkets().run(ctx)

        assert report.ok
        assert report.skipped == len(catalog.MARKETS)
        assert len(ledger.remote_calls("clob.initialize")) == len(catalog.MARKETS)
        assert ctx.store.markets() == before

    @pytest.mark.asyncio
    async def test_rejected_market_is_retried_on_next_run(self, ctx, ledger):
        ledger.rejected_markets.add("SOL-PERP")
        await _prepare(ctx, DeployRegistry, IssueSettlementToken, RegisterAssets)

        report = await InitializeMarkets().run(ctx)
        assert report.ok
        assert report.failed == 1
        assert ctx.store.snapshot().market("SOL-PERP") is None

        ledger.rejected_markets.clear()
        report = await InitializeMarkets().run(ctx)

        assert report.failed == 0
        assert ctx.store.snapshot().market("SOL-PERP") is not None
        # Base mint keypair was persisted on the failed attempt and reused
        assert len(ledger.remote_calls("spl.create_mint")) == 1 + len(catalog.MARKETS)
        # So were the market accounts: both sends targeted the same market
        sends = [c[2] for c in ledger.remote_calls("clob.initialize") if c[1] == "SOL-PERP"]
        assert len(sends) == 2 and sends[0] == sends[1]

    @pytest.mark.asyncio
    async def test_unconfirmed_market_is_adopted_not_duplicated(self, make_context, ledger):
        btc_perp = catalog.MARKETS[0]
        ctx = make_context(markets=[btc_perp])
        ledger.unconfirmed_markets.add(btc_perp.symbol)
        await _prepare(ctx, DeployRegistry, IssueSettlementToken, RegisterAssets)

        report = await InitializeMarkets().run(ctx)
        assert not report.ok
        assert ctx.store.snapshot().market(btc_perp.symbol) is None

        ledger.unconfirmed_markets.clear()
        report = await InitializeMarkets().run(ctx)

        assert report.ok
        assert report.items[0].status is ItemStatus.SKIPPED
        sends = ledger.remote_calls("clob.initialize")
        assert len(sends) == 1
        deployed = ctx.store.snapshot().market(btc_perp.symbol)
        assert deployed.market == str(sends[0][2])
        assert deployed.signature is None


# ─── FundTestAccounts ───────────────────────────────────────────────────────

class TestFundTestAccounts:
    async def _deployed(self, ctx):
        await _prepare(ctx, DeployRegistry, IssueSettlementToken, RegisterAssets, InitializeMarkets)

    @pytest.mark.asyncio
    async def test_refused_on_mainnet(self, make_context, ledger):
        ctx = make_context(cluster="mainnet-beta")
        report = await FundTestAccounts().run(ctx)

        assert not report.ok
        assert report.attempted == 0
        assert ledger.remote_calls("airdrop") == []

    @pytest.mark.asyncio
    async def test_requires_markets(self, ctx):
        await _prepare(ctx, IssueSettlementToken)
        report = await FundTestAccounts().run(ctx)
        assert isinstance(report.aborted, PreconditionMissingError)

    @pytest.mark.asyncio
    async def test_funds_and_persists_accounts(self, make_context, ledger):
        ctx = make_context(test_account_count=2)
        await self._deployed(ctx)

        report = await FundTestAccounts().run(ctx)

        assert report.ok
        assert report.succeeded == 2
        spl = ctx.programs.spl_token()
        quote = Pubkey.from_string(ctx.store.tokens().settlement_mint)
        for index in (1, 2):
            owner = ctx.store.test_account(index).keypair().pubkey()
            assert ledger.balances[owner] == catalog.TEST_ACCOUNT_AIRDROP
            assert spl.balance_of(owner, quote) == catalog.TEST_SETTLEMENT_AMOUNT
            for market in ctx.store.markets():
                assert spl.balance_of(owner, Pubkey.from_string(market.base_mint)) == catalog.TEST_BASE_AMOUNT

    @pytest.mark.asyncio
    async def test_airdrop_failure_falls_back_to_transfer(self, make_context, ledger):
        ctx = make_context(test_account_count=1)
        await self._deployed(ctx)
        ledger.airdrop_fails = True

        report = await FundTestAccounts().run(ctx)

        assert report.ok
        owner = ctx.store.test_account(1).keypair().pubkey()
        assert ledger.remote_calls("transfer") == [
            ("transfer", owner, catalog.TEST_ACCOUNT_FALLBACK_TRANSFER)
        ]

    @pytest.mark.asyncio
    async def test_localnet_transfers_from_operator(self, make_context, ledger):
        ctx = make_context(cluster="localnet", test_account_count=1)
        await self._deployed(ctx)

        await _prepare(ctx, FundTestAccounts)

        assert ledger.remote_calls("airdrop") == []
        assert ledger.remote_calls("transfer")[0][2] == catalog.TEST_ACCOUNT_LOCALNET_TRANSFER

    @pytest.mark.asyncio
    async def test_rerun_reuses_identities_and_mints_nothing(self, make_context, ledger):
        ctx = make_context(test_account_count=2)
        await self._deployed(ctx)
        await _prepare(ctx, FundTestAccounts)
        accounts = [ctx.store.test_account(i).public_key for i in (1, 2)]
        mints = len(ledger.remote_calls("spl.mint_to"))

        report = await FundTestAccounts().run(ctx)

        assert report.ok
        assert report.skipped == 2
        assert [ctx.store.test_account(i).public_key for i in (1, 2)] == accounts
        assert len(ledger.remote_calls("spl.mint_to")) == mints

    @pytest.mark.asyncio
    async def test_corrupt_test_account_aborts(self, make_context):
        ctx = make_context(test_account_count=1)
        await self._deployed(ctx)
        path = ctx.store.path(ctx.store.test_account_name(1))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"public_key": "x", "secret_key": [1.5] * 64}))

        report = await FundTestAccounts().run(ctx)

        assert isinstance(report.aborted, CorruptArtifactError)
        assert json.loads(path.read_text())["public_key"] == "x"


# ─── Cancellation and runner ────────────────────────────────────────────────

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_item(self, make_context, ledger):
        ctx = make_context(assets=[BTC, ETH])
        await _prepare(ctx, DeployRegistry)
        ctx.cancel()

        report = await RegisterAssets().run(ctx)

        assert report.cancelled
        assert not report.ok
        assert ledger.remote_calls("registry.upsert") == []


class TestRunner:
    @pytest.mark.asyncio
    async def test_run_all_completes(self, make_context, ledger):
        ctx = make_context(test_account_count=1)
        reports = await DeploymentPipeline(ctx).run_all()

        assert [r.stage for r in reports] == [
            "bootstrap",
            "deploy-registry",
            "issue-settlement-token",
            "deploy-utility-token",
            "register-assets",
            "initialize-markets",
            "fund-test-accounts",
        ]
        assert all(r.ok for r in reports)

    @pytest.mark.asyncio
    async def test_run_all_stops_at_first_failed_stage(self, make_context, ledger):
        ctx = make_context(assets=[BTC])
        ledger.rejected_assets.add("BTC")

        reports = await DeploymentPipeline(ctx).run_all()

        assert reports[-1].stage == "register-assets"
        assert not reports[-1].ok
        assert ledger.remote_calls("clob.initialize") == []

    @pytest.mark.asyncio
    async def test_run_all_stops_when_registry_is_rejected(self, ctx, ledger):
        ledger.registry_init_rejected = True

        reports = await DeploymentPipeline(ctx).run_all()

        assert reports[-1].stage == "deploy-registry"
        assert not reports[-1].ok
        assert ledger.remote_calls("registry.upsert") == []

    @pytest.mark.asyncio
    async def test_unknown_stage(self, ctx):
        with pytest.raises(KeyError):
            await DeploymentPipeline(ctx).run_stage("deploy-everything")

    @pytest.mark.asyncio
    async def test_status_lists_artifacts(self, ctx, ledger, operator):
        ledger.balances[operator.pubkey()] = LAMPORTS_PER_SOL
        await _prepare(ctx, DeployRegistry)

        status = await DeploymentPipeline(ctx).status()

        assert status["balance_sol"] == 1.0
        assert status["artifacts"]["program-ids.json"] is True
        assert status["artifacts"]["markets.json"] is False
