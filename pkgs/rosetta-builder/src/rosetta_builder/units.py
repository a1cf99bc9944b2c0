"""Render the supervisor and client configuration around the builder VM."""

import os
import plistlib

from .config import BuilderConfig
from .constants import (
    BUILD_MACHINE_FEATURES,
    CONFIG_FILE_ENV,
    DAEMON_NAME,
    DAEMON_SOCKET_NAME,
    DARWIN_USER,
    GUEST_SEARCH_PATH,
    GUEST_SSHD_SERVICE,
    HOST_SEARCH_PATH,
    LINUX_USER,
    SSH_HOST,
    SSH_HOST_KEY_ALIAS,
    WORKING_DIRECTORY_ENV,
)
from .exceptions import ConfigurationError
from .guest_keys import GuestPaths


def _require_absolute(program: str) -> str:
    if not os.path.isabs(program):
        raise ConfigurationError(f"Program path must be absolute: {program}")
    return program


def render_sshd_keys_unit(
    paths: GuestPaths, program: str, search_path: str = GUEST_SEARCH_PATH
) -> str:
    """systemd unit for the key installation service.

    ``RequiredBy``/``Before`` make sshd depend on a completed installation, and the negated
    ``ConditionPathExists`` keeps the channel from ever being mounted once installation is done.
    """
    program = _require_absolute(program)
    return "\n".join(
        [
            "[Unit]",
            "Description=Install sshd's host and authorized keys",
            f"Before={GUEST_SSHD_SERVICE}",
            f"ConditionPathExists=!{paths.guard}",
            "",
            "[Service]",
            "Type=oneshot",
            f"Environment=PATH={search_path}",
            f"ExecStart={program} install-keys",
            "",
            "[Install]",
            f"RequiredBy={GUEST_SSHD_SERVICE}",
            "",
        ]
    )


def render_idle_policy(config: BuilderConfig) -> str | None:
    """logind drop-in that powers the guest off after the linger period without sessions."""
    if not config.on_demand_enabled:
        return None
    return "\n".join(
        [
            "[Login]",
            "IdleAction=poweroff",
            f"IdleActionSec={config.on_demand_linger_minutes}min",
            "",
        ]
    )


def render_launchd_daemon(
    config: BuilderConfig, program: str, search_path: str = HOST_SEARCH_PATH
) -> bytes:
    """launchd daemon running ``program --config <file> run`` for the file ``config`` came from."""
    if config.config_path is None:
        raise ConfigurationError("The launchd daemon needs a configuration file to load")

    config_path = os.path.abspath(config.config_path)
    daemon = {
        "Label": DAEMON_NAME,
        "ProgramArguments": [_require_absolute(program), "--config", config_path, "run"],
        "EnvironmentVariables": {
            CONFIG_FILE_ENV: config_path,
            WORKING_DIRECTORY_ENV: str(config.working_directory),
            "PATH": search_path,
        },
        "KeepAlive": not config.on_demand_enabled,
        "RunAtLoad": not config.on_demand_enabled,
        "UserName": DARWIN_USER,
        "WorkingDirectory": str(config.working_directory),
    }

    if config.on_demand_enabled:
        daemon["Sockets"] = {
            DAEMON_SOCKET_NAME: {
                "SockFamily": "IPv4",
                "SockNodeName": "localhost",
                "SockServiceName": str(config.port),
            }
        }

    if config.debug_enabled:
        daemon["StandardErrorPath"] = f"/tmp/{DAEMON_NAME}.err.log"
        daemon["StandardOutPath"] = f"/tmp/{DAEMON_NAME}.out.log"

    return plistlib.dumps(daemon)


def render_ssh_config(config: BuilderConfig) -> str:
    return "\n".join(
        [
            f'Host "{SSH_HOST}"',
            f'  GlobalKnownHostsFile "{config.known_hosts_path}"',
            "  Hostname localhost",
            f'  HostKeyAlias "{SSH_HOST_KEY_ALIAS}"',
            f'  Port "{config.port}"',
            "  StrictHostKeyChecking yes",
            f'  User "{LINUX_USER}"',
            f'  IdentityFile "{config.user_private_key_path}"',
            "",
        ]
    )


def render_build_machine(config: BuilderConfig) -> str:
    """One line of Nix's ``machines`` file dispatching Linux builds to the VM.

    Columns: URI, systems, identity, max jobs, speed factor, supported features, mandatory
    features, host public key. Identity and host key come from the ssh config above.
    """
    systems = ",".join(dict.fromkeys([config.linux_system, "x86_64-linux"]))
    return " ".join(
        [
            f"ssh-ng://{SSH_HOST}",
            systems,
            "-",
            str(config.cores),
            "1",
            ",".join(BUILD_MACHINE_FEATURES),
            "-",
            "-",
        ]
    )
