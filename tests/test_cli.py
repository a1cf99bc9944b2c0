"""Tests for rosetta_builder.cli."""

from __future__ import annotations

import asyncio
import json
import os
import plistlib
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rosetta_builder.cli import build_parser, main
from rosetta_builder.convergence import ConvergenceState, HostStateRecord


class TestParser:
    def test_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_install_keys_root(self):
        args = build_parser().parse_args(["install-keys", "--root", "/mnt"])
        assert args.root == "/mnt"

    def test_render_choices(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["render", "bogus"])


class TestRender:
    async def test_machines(self, config_file, working_dir, capsys):
        code = await main(["--config", str(config_file(cores=2)), "render", "machines"])
        assert code == 0
        assert capsys.readouterr().out.startswith("ssh-ng://rosetta-builder aarch64-linux")

    async def test_config_from_environment(self, config_file, working_dir, monkeypatch, capsys):
        monkeypatch.setenv("ROSETTA_BUILDER_CONFIG_FILE", str(config_file(port=2222)))
        assert await main(["render", "ssh-config"]) == 0
        assert 'Port "2222"' in capsys.readouterr().out

    async def test_sshd_keys_unit_needs_no_config(self, monkeypatch, capsys):
        monkeypatch.delenv("ROSETTA_BUILDER_CONFIG_FILE", raising=False)
        assert await main(["render", "sshd-keys-unit"]) == 0
        assert "Type=oneshot" in capsys.readouterr().out

    async def test_idle_policy_always_on_is_empty(self, config_file, working_dir, capsys):
        assert await main(["--config", str(config_file()), "render", "idle-policy"]) == 0
        assert capsys.readouterr().out == ""

    async def test_missing_config(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ROSETTA_BUILDER_CONFIG_FILE", raising=False)
        assert await main(["--config", str(tmp_path / "missing.json"), "render", "machines"]) == 1

    async def test_launchd(self, config_file, working_dir, capsysbinary):
        path = config_file()
        argv = ["--config", str(path), "render", "launchd"]
        argv += ["--program", "/opt/rb/bin/rosetta-builder", "--search-path", "/x/bin:/usr/bin"]
        assert await main(argv) == 0

        daemon = plistlib.loads(capsysbinary.readouterr().out)
        assert daemon["ProgramArguments"] == [
            "/opt/rb/bin/rosetta-builder",
            "--config",
            str(path),
            "run",
        ]
        assert daemon["EnvironmentVariables"] == {
            "ROSETTA_BUILDER_CONFIG_FILE": str(path),
            "ROSETTA_BUILDER_WORKING_DIRECTORY": str(working_dir),
            "PATH": "/x/bin:/usr/bin",
        }

    async def test_sshd_keys_unit_program(self, capsys):
        argv = ["render", "sshd-keys-unit", "--program", "/run/current-system/sw/bin/rb"]
        assert await main(argv) == 0
        assert "ExecStart=/run/current-system/sw/bin/rb install-keys" in capsys.readouterr().out


class TestStatus:
    async def test_no_record(self, config_file, working_dir, capsys):
        assert await main(["--config", str(config_file()), "status"]) == 1
        assert json.loads(capsys.readouterr().out) == {"state": None}

    async def test_record(self, config_file, working_dir, capsys):
        HostStateRecord(
            state=ConvergenceState.CONVERGED,
            definition_digest="abc",
            vm_name="rosetta-builder-vm",
            key_policy="owner-only",
        ).write(working_dir / "state.json")

        assert await main(["--config", str(config_file()), "status"]) == 0
        assert json.loads(capsys.readouterr().out)["state"] == "converged"


class TestInstallKeys:
    async def test_runs_installer(self, tmp_path):
        with patch("rosetta_builder.cli.KeyInstaller") as installer_cls:
            installer_cls.return_value.run = AsyncMock(return_value=True)
            assert await main(["install-keys", "--root", str(tmp_path)]) == 0

        paths = installer_cls.call_args.args[0]
        assert paths.mount_point == tmp_path / "var/sshd-keys"


class SignalledController:
    """Stands in for LifecycleController; sends itself SIGTERM and waits for the shutdown."""

    instances: list["SignalledController"] = []

    def __init__(self, config, signal_manager, bootstrap):
        self.config = config
        self.signal_manager = signal_manager
        self.instances.append(self)

    async def run(self):
        os.kill(os.getpid(), signal.SIGTERM)
        while not self.signal_manager.is_shutdown_requested():
            await asyncio.sleep(0.01)


@pytest.fixture
def daemon_patches():
    with (
        patch("rosetta_builder.cli.setup_logging"),
        patch("rosetta_builder.cli.LimaClient"),
        patch("rosetta_builder.cli.HostBootstrap"),
        patch("rosetta_builder.cli.cleanup_orphaned_vm_processes", new=AsyncMock()) as cleanup,
    ):
        yield cleanup


class TestRunDaemon:
    async def test_sigterm_ends_run(self, config_file, working_dir, daemon_patches):
        previous = signal.getsignal(signal.SIGTERM)
        SignalledController.instances.clear()

        with patch("rosetta_builder.cli.LifecycleController", SignalledController):
            code = await asyncio.wait_for(main(["--config", str(config_file()), "run"]), 5)

        assert code == 0
        daemon_patches.assert_awaited_once_with(working_dir)
        (controller,) = SignalledController.instances
        assert controller.config.working_directory == working_dir
        assert signal.getsignal(signal.SIGTERM) is previous

    async def test_orphan_cleanup_failure_is_not_fatal(
        self, config_file, working_dir, daemon_patches
    ):
        daemon_patches.side_effect = OSError("no permission")
        with patch("rosetta_builder.cli.LifecycleController") as controller_cls:
            controller_cls.return_value.run = AsyncMock()
            assert await main(["--config", str(config_file()), "run"]) == 0

        controller_cls.return_value.run.assert_awaited_once()

    async def test_controller_failure_restores_handlers(
        self, config_file, working_dir, daemon_patches
    ):
        previous = signal.getsignal(signal.SIGTERM)
        controller = MagicMock()
        controller.run = AsyncMock(side_effect=RuntimeError("boom"))
        with patch("rosetta_builder.cli.LifecycleController", return_value=controller):
            assert await main(["--config", str(config_file()), "run"]) == 1

        assert signal.getsignal(signal.SIGTERM) is previous
