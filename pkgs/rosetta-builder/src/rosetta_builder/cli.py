"""CLI entry point for rosetta-builder."""

import argparse
import asyncio
import json
import logging
import os
import stat
import sys
from pathlib import Path

from .accounts import ServiceAccount
from .bootstrap import HostBootstrap
from .config import BuilderConfig
from .constants import CONFIG_FILE_ENV, GUEST_SEARCH_PATH, HOST_SEARCH_PATH, WORKING_DIRECTORY_ENV
from .convergence import HostStateRecord
from .exceptions import RosettaBuilderError
from .guest_keys import GuestPaths, KeyInstaller
from .lifecycle import LifecycleController
from .lima import LimaClient, cleanup_orphaned_vm_processes
from .signal_manager import SignalManager
from .units import (
    render_build_machine,
    render_idle_policy,
    render_launchd_daemon,
    render_ssh_config,
    render_sshd_keys_unit,
)
from .vm_definition import VMDefinition

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def debug_startup_environment() -> None:
    """Debug environment and file descriptors at startup."""
    if not logger.isEnabledFor(logging.DEBUG):
        return

    env_vars = [CONFIG_FILE_ENV, WORKING_DIRECTORY_ENV, "LIMA_HOME", "PATH"]
    env_info = [f"{var}={os.environ.get(var, 'null')}" for var in env_vars]
    logger.debug(f"ENV: {', '.join(env_info)}")

    socket_fds = []
    for fd in range(3, 11):
        try:
            if stat.S_ISSOCK(os.fstat(fd).st_mode):
                socket_fds.append(str(fd))
        except OSError:
            continue

    if socket_fds:
        logger.debug(f"Socket FDs: {', '.join(socket_fds)}")


def load_config(path: str | None) -> BuilderConfig:
    return BuilderConfig(config_path=path or os.getenv(CONFIG_FILE_ENV))


async def run_daemon(args: argparse.Namespace) -> int:
    signal_manager = SignalManager()
    try:
        config = load_config(args.config)
        setup_logging(config.debug_enabled)
        debug_startup_environment()
        logger.debug(repr(config))

        signal_manager.setup_signal_handlers()

        try:
            await cleanup_orphaned_vm_processes(config.working_directory)
        except OSError as e:
            logger.warning(f"Error during orphan cleanup: {e}")

        lima = LimaClient(config.working_directory, config.debug_enabled)
        controller = LifecycleController(config, signal_manager, HostBootstrap(config, lima))
        await controller.run()
        return 0
    finally:
        signal_manager.cleanup()


async def install_keys(args: argparse.Namespace) -> int:
    installer = KeyInstaller(GuestPaths.under(Path(args.root)))
    await installer.run()
    return 0


async def setup_account(args: argparse.Namespace) -> int:
    await ServiceAccount().ensure()
    return 0


async def teardown_account(args: argparse.Namespace) -> int:
    await ServiceAccount().remove()
    return 0


async def show_status(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    record = HostStateRecord.read(config.state_path)
    if record is None:
        print(json.dumps({"state": None}))
        return 1
    print(json.dumps(record.to_dict(), indent=2, sort_keys=True))
    return 0


async def render(args: argparse.Namespace) -> int:
    program = args.program or os.path.abspath(sys.argv[0])

    if args.artifact == "sshd-keys-unit":
        search_path = args.search_path or GUEST_SEARCH_PATH
        sys.stdout.write(render_sshd_keys_unit(GuestPaths.under(), program, search_path))
        return 0

    config = load_config(args.config)
    if args.artifact == "launchd":
        search_path = args.search_path or os.environ.get("PATH", HOST_SEARCH_PATH)
        sys.stdout.buffer.write(render_launchd_daemon(config, program, search_path))
    elif args.artifact == "ssh-config":
        sys.stdout.write(render_ssh_config(config))
    elif args.artifact == "machines":
        sys.stdout.write(render_build_machine(config) + "\n")
    elif args.artifact == "idle-policy":
        sys.stdout.write(render_idle_policy(config) or "")
    elif args.artifact == "vm-definition":
        sys.stdout.buffer.write(VMDefinition.from_config(config).render())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rosetta-builder", description="Rosetta-enabled Linux builder VM for macOS"
    )
    parser.add_argument(
        "--config", help=f"JSON configuration file (default: ${CONFIG_FILE_ENV})", default=None
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="run the VM under the lifecycle controller").set_defaults(
        handler=run_daemon
    )

    install = subparsers.add_parser("install-keys", help="guest: install keys from the host")
    install.add_argument("--root", default="/", help="alternate guest root directory")
    install.set_defaults(handler=install_keys)

    subparsers.add_parser("setup", help="create the service account").set_defaults(
        handler=setup_account
    )
    subparsers.add_parser("teardown", help="remove the service account").set_defaults(
        handler=teardown_account
    )
    subparsers.add_parser("status", help="print the last convergence state").set_defaults(
        handler=show_status
    )

    render_parser = subparsers.add_parser("render", help="print a generated configuration file")
    render_parser.add_argument(
        "artifact",
        choices=[
            "launchd",
            "ssh-config",
            "machines",
            "sshd-keys-unit",
            "idle-policy",
            "vm-definition",
        ],
    )
    render_parser.add_argument(
        "--program", help="absolute path of rosetta-builder for service files (default: this one)"
    )
    render_parser.add_argument(
        "--search-path", help="PATH for service files (default: current PATH on the host)"
    )
    render_parser.set_defaults(handler=render)

    return parser


async def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        return await args.handler(args)
    except RosettaBuilderError as e:
        logger.error(f"error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1


def cli_main() -> None:
    """Entry point for CLI."""
    setup_logging()
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli_main()
