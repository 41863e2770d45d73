"""
omnideploy test configuration.

Shared fixtures: isolated settings under tmp_path, an in-memory ledger
and a DeployContext wired to fake program clients.
"""

import os
import sys

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest
from solders.keypair import Keypair

from omnideploy.artifacts import ArtifactStore
from omnideploy.config import Cluster, DeploySettings
from omnideploy.keypairs import KeypairStore
from omnideploy.pipeline import DeployContext

from fakes import FakeChain, FakeLedger, FakeProgramFactory


@pytest.fixture
def settings(tmp_path):
    return DeploySettings(
        cluster=Cluster.DEVNET,
        operator_keypair_path=tmp_path / "operator.json",
        keys_dir=tmp_path / "keys",
        artifacts_dir=tmp_path / "artifacts",
        rpc_backoff_seconds=0,
    )


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def operator():
    return Keypair()


@pytest.fixture
def make_context(settings, ledger, operator):
    """Factory for a DeployContext over the fake ledger.

    Keyword overrides: ``cluster``, ``assets``, ``markets`` and any
    DeploySettings field.
    """

    def _make(cluster=None, assets=None, markets=None, **overrides):
        run_settings = settings
        if cluster is not None:
            run_settings = run_settings.with_cluster(cluster)
        if overrides:
            run_settings = run_settings.model_copy(update=overrides)
        ctx = DeployContext(
            settings=run_settings,
            store=ArtifactStore(run_settings.cluster_artifacts_dir, run_settings.cluster.value),
            keypairs=KeypairStore(run_settings.keys_dir),
            chain=FakeChain(ledger),
            programs=FakeProgramFactory(ledger, operator),
            operator=operator,
        )
        if assets is not None:
            ctx.assets = list(assets)
        if markets is not None:
            ctx.markets = list(markets)
        return ctx

    return _make


@pytest.fixture
def ctx(make_context):
    return make_context()
