"""omnideploy CLI entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from omnideploy.config import Cluster, DeploySettings
from omnideploy.errors import DeploymentError
from omnideploy.logging_config import DeployLogContext, setup_logging
from omnideploy.pipeline import STAGE_NAMES, DeploymentPipeline, StageReport, build_context

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def _tag(level: str) -> str:
    return f"[{level}]"


def _print_status(level: str, message: str) -> None:
    print(f"{_tag(level)} {message}")


def _print_reports(reports: List[StageReport]) -> None:
    for report in reports:
        level = "OK" if report.ok else "FAIL"
        _print_status(
            level,
            f"{report.stage}: {report.succeeded}/{report.attempted} succeeded, {report.failed} failed",
        )
        for reason in report.fatal_errors:
            _print_status("ERROR", f"  {reason}")


def _exit_code(reports: List[StageReport]) -> int:
    if any(r.cancelled for r in reports):
        return EXIT_CANCELLED
    return EXIT_OK if all(r.ok for r in reports) else EXIT_FAILED


async def _execute(command: str, settings: DeploySettings) -> int:
    ctx = build_context(settings)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, ctx.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        with DeployLogContext(run_id=ctx.run_id):
            pipeline = DeploymentPipeline(ctx)
            if command == "status":
                print(json.dumps(await pipeline.status(), indent=2))
                return EXIT_OK
            if command == "all":
                reports = await pipeline.run_all()
            else:
                reports = [await pipeline.run_stage(command)]
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        await ctx.close()

    _print_reports(reports)
    return _exit_code(reports)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="omnideploy", description="Omniliquid venue deployment.")
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--cluster",
        choices=[c.value for c in Cluster],
        help="Target cluster (overrides OMNI_CLUSTER).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    helps = {
        "bootstrap": "Check (and on test clusters top up) the operator balance.",
        "deploy-registry": "Record program ids and initialize the registry.",
        "issue-settlement-token": "Create the settlement mint and operator supply.",
        "deploy-utility-token": "Initialize the OMNI utility token.",
        "register-assets": "Register or update every catalog asset.",
        "initialize-markets": "Create the CLOB markets.",
        "fund-test-accounts": "Fund test identities with SOL and tokens.",
    }
    for name in STAGE_NAMES:
        subparsers.add_parser(name, parents=[common], help=helps.get(name))
    subparsers.add_parser("all", parents=[common], help="Run every stage in order.")
    subparsers.add_parser("status", parents=[common], help="Show operator balance and recorded artifacts.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = DeploySettings.from_env()
        if args.cluster:
            settings = settings.with_cluster(args.cluster)
    except DeploymentError as e:
        _print_status("ERROR", str(e))
        return EXIT_FAILED

    setup_logging(
        log_dir=settings.logging.log_dir,
        level=settings.logging.level,
        json_format=settings.logging.json_format,
    )

    try:
        return asyncio.run(_execute(args.command, settings))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_CANCELLED
    except DeploymentError as e:
        logger.error(f"{args.command} failed [{e.code}]: {e}", exc_info=True)
        return EXIT_FAILED
    except Exception as e:
        logger.exception(f"{args.command} crashed: {e}")
        return EXIT_FAILED


def run(argv: Optional[List[str]] = None) -> None:
    raise SystemExit(main(argv))


if __name__ == "__main__":
    run(sys.argv[1:])
