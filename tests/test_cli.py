"""
test_cli.py: Command line parsing and exit codes.

Tests:
    1. Parser exposes every stage plus all/status
    2. Exit code 0 on success, 1 on failure, 130 on cancellation
    3. Configuration errors are reported without a traceback
"""

import json

import pytest

from omnideploy import cli
from omnideploy.config import DeploySettings
from omnideploy.errors import ConfigurationError
from omnideploy.pipeline import STAGE_NAMES


@pytest.fixture
def wired(monkeypatch, settings, make_context):
    """Point the CLI at a fake-ledger context; returns the settings it was built from."""
    built = {}

    def fake_build_context(run_settings):
        built["settings"] = run_settings
        if "ctx" not in built:
            built["ctx"] = make_context()
        return built["ctx"]

    monkeypatch.setattr(DeploySettings, "from_env", staticmethod(lambda: settings))
    monkeypatch.setattr(cli, "build_context", fake_build_context)
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    return built


class TestParser:
    def test_stage_commands(self):
        parser = cli.build_parser()
        for name in STAGE_NAMES + ("all", "status"):
            assert parser.parse_args([name]).command == name

    def test_cluster_flag(self):
        args = cli.build_parser().parse_args(["register-assets", "--cluster", "localnet"])
        assert args.cluster == "localnet"

    def test_unknown_cluster(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["all", "--cluster", "moonnet"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_unknown_flag(self):
        with pytest.raises(SystemExit):
            cli.main(["all", "--force"])


class TestExitCodes:
    def test_status(self, wired, capsys):
        assert cli.main(["status"]) == cli.EXIT_OK
        output = json.loads(capsys.readouterr().out)
        assert output["cluster"] == "devnet"
        assert output["artifacts"]["program-ids.json"] is False

    def test_stage_success(self, wired, capsys):
        assert cli.main(["deploy-registry"]) == cli.EXIT_OK
        assert "[OK] deploy-registry" in capsys.readouterr().out

    def test_missing_precondition_fails(self, wired, capsys):
        assert cli.main(["register-assets"]) == cli.EXIT_FAILED
        out = capsys.readouterr().out
        assert "[FAIL] register-assets" in out
        assert "PreconditionMissingError" in out

    def test_full_run(self, wired):
        assert cli.main(["all"]) == cli.EXIT_OK
        assert wired["ctx"].chain.closed

    def test_cancelled(self, wired):
        assert cli.main(["deploy-registry"]) == cli.EXIT_OK
        wired["ctx"].cancel()
        assert cli.main(["register-assets"]) == cli.EXIT_CANCELLED

    def test_cluster_override_passed_through(self, wired):
        cli.main(["status", "--cluster", "localnet"])
        assert wired["settings"].cluster.value == "localnet"

    def test_keyboard_interrupt(self, wired, monkeypatch):
        def interrupted(coro):
            coro.close()
            raise KeyboardInterrupt

        monkeypatch.setattr(cli.asyncio, "run", interrupted)
        assert cli.main(["all"]) == cli.EXIT_CANCELLED

    def test_unexpected_error(self, wired, monkeypatch):
        def broken(run_settings):
            raise RuntimeError("boom")

        monkeypatch.setattr(cli, "build_context", broken)
        assert cli.main(["status"]) == cli.EXIT_FAILED

    def test_configuration_error(self, monkeypatch, capsys):
        def bad_env():
            raise ConfigurationError("Invalid deployment settings: cluster")

        monkeypatch.setattr(DeploySettings, "from_env", staticmethod(bad_env))
        assert cli.main(["status"]) == cli.EXIT_FAILED
        assert "[ERROR] Invalid deployment settings" in capsys.readouterr().out

    def test_run_exits(self, wired):
        with pytest.raises(SystemExit) as exc_info:
            cli.run(["status"])
        assert exc_info.value.code == cli.EXIT_OK
