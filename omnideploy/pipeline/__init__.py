"""Resumable, ordered deployment pipeline."""

from omnideploy.pipeline.context import DeployContext, build_context, load_operator
from omnideploy.pipeline.report import ItemResult, ItemStatus, StageReport
from omnideploy.pipeline.runner import DeploymentPipeline
from omnideploy.pipeline.stages import (
    STAGE_NAMES,
    STAGES,
    Bootstrap,
    DeployRegistry,
    DeployUtilityToken,
    FundTestAccounts,
    InitializeMarkets,
    IssueSettlementToken,
    RegisterAssets,
    Stage,
)

__all__ = [
    "Bootstrap",
    "DeployContext",
    "DeployRegistry",
    "DeployUtilityToken",
    "DeploymentPipeline",
    "FundTestAccounts",
    "InitializeMarkets",
    "IssueSettlementToken",
    "ItemResult",
    "ItemStatus",
    "RegisterAssets",
    "STAGES",
    "STAGE_NAMES",
    "Stage",
    "StageReport",
    "build_context",
    "load_operator",
]
