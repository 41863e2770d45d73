"""Ordered execution of the deployment stages."""

import logging
from typing import Dict, List

from omnideploy.config import LAMPORTS_PER_SOL
from omnideploy.errors import ITEM_ERRORS
from omnideploy.pipeline.context import DeployContext
from omnideploy.pipeline.report import StageReport
from omnideploy.pipeline.stages import STAGE_NAMES, STAGES, Stage

logger = logging.getLogger(__name__)


class DeploymentPipeline:
    """Runs stages one at a time against a single DeployContext."""

    def __init__(self, ctx: DeployContext):
        self.ctx = ctx
        self.stages: Dict[str, Stage] = {cls.name: cls() for cls in STAGES}

    async def run_stage(self, name: str) -> StageReport:
        if name not in self.stages:
            raise KeyError(f"Unknown stage {name!r}; expected one of {', '.join(STAGE_NAMES)}")
        return await self.stages[name].run(self.ctx)

    async def run_all(self) -> List[StageReport]:
        """Run every stage in order, stopping after the first failed one."""
        reports = []
        for name in STAGE_NAMES:
            report = await self.run_stage(name)
            reports.append(report)
            if not report.ok:
                logger.error(f"Stopping: {name} failed")
                break
        return reports

    async def status(self) -> dict:
        operator = self.ctx.operator.pubkey()
        try:
            balance = await self.ctx.chain.get_balance(operator)
        except ITEM_ERRORS as e:
            logger.warning(f"Could not read operator balance: {e}")
            balance = None
        return {
            "cluster": self.ctx.cluster.value,
            "rpc_url": self.ctx.settings.resolved_rpc_url,
            "operator": str(operator),
            "balance_sol": balance / LAMPORTS_PER_SOL if balance is not None else None,
            "artifacts_dir": str(self.ctx.store.root),
            "artifacts": self.ctx.store.inventory(),
        }
