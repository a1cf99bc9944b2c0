"""Configuration management for rosetta-builder."""

import json
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict

from .constants import (
    DEFAULT_COLD_START_TIMEOUT,
    DEFAULT_CORES,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY,
    DEFAULT_ON_DEMAND_LINGER_MINUTES,
    DEFAULT_PORT,
    DEFAULT_RESTART_DELAY,
    DEFAULT_SSH_READY_TIMEOUT,
    DEFAULT_VM_STOP_TIMEOUT,
    LIMA_HOME_DIR_NAME,
    LINUX_SYSTEM,
    SSH_KNOWN_HOSTS_FILE_NAME,
    SSH_USER_PRIVATE_KEY_FILE_NAME,
    SSHD_KEYS_SHARED_DIR_NAME,
    STATE_FILE_NAME,
    WORKING_DIRECTORY,
    WORKING_DIRECTORY_ENV,
)
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SIZE_REGEXP = re.compile(r"^[1-9][0-9]*(B|KiB|MiB|GiB|TiB)$")


class LifecycleMode(Enum):
    """How the VM process is kept alive."""

    ALWAYS_ON = "always-on"
    ON_DEMAND = "on-demand"


class BuilderConfig:
    """Builder configuration management."""

    def __init__(self, config_path: str | None = None):
        """Initialize builder configuration.

        Args:
            config_path: Path to JSON configuration file.
        """
        if not config_path:
            raise ConfigurationError("Configuration file path must be provided")

        self.config_path: Path | None = Path(config_path)
        self._config: Dict[str, Any] = self._load_config()
        self._validate_and_store_config()

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "BuilderConfig":
        """Build a configuration from already-parsed values."""
        config = cls.__new__(cls)
        config.config_path = None
        config._config = dict(values)
        config._validate_and_store_config()
        return config

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from JSON file."""
        try:
            with open(self.config_path) as f:
                config = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if not isinstance(config, dict):
            raise ConfigurationError("Configuration file must contain a JSON object")

        logger.debug(f"Loaded configuration from {self.config_path}")
        return config

    def _get_bool(self, key: str, default: bool) -> bool:
        value = self._config.get(key, default)
        if not isinstance(value, bool):
            raise ConfigurationError(f"Invalid {key} setting: {value}. Expected: boolean")
        return value

    def _get_positive_int(self, key: str, default: int) -> int:
        value = self._config.get(key, default)
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigurationError(f"Invalid {key}: {value}. Expected: positive integer")
        return value

    def _get_size(self, key: str, default: str) -> str:
        value = self._config.get(key, default)
        if not isinstance(value, str) or not SIZE_REGEXP.match(value):
            raise ConfigurationError(
                f"Invalid {key}: {value}. Expected: size such as 6GiB (B, KiB, MiB, GiB or TiB)"
            )
        return value

    def _validate_and_store_config(self) -> None:
        """Validate configuration parameters and store validated values."""
        image = self._config.get("image")
        if not isinstance(image, str) or not image:
            raise ConfigurationError(f"Invalid image: {image}. Expected: path to a disk image")
        self._image = image

        self._cores = self._get_positive_int("cores", DEFAULT_CORES)
        self._memory = self._get_size("memory", DEFAULT_MEMORY)
        self._disk_size = self._get_size("disk-size", DEFAULT_DISK_SIZE)

        port = self._config.get("port", DEFAULT_PORT)
        # on-demand mode also claims port + 1 for the VM's own forward
        if isinstance(port, bool) or not isinstance(port, int) or port < 1024 or port > 65534:
            raise ConfigurationError(
                f"Invalid port: {port}. Expected: integer between 1024 and 65534"
            )
        self._port = port

        self._on_demand_enabled = self._get_bool("on-demand", False)
        self._on_demand_linger_minutes = self._get_positive_int(
            "on-demand-linger-minutes", DEFAULT_ON_DEMAND_LINGER_MINUTES
        )
        self._permit_non_root_ssh_access = self._get_bool("permit-non-root-ssh-access", False)
        self._rosetta_enabled = self._get_bool("rosetta", True)
        self._debug_enabled = self._get_bool("debug", False)

        self._cold_start_timeout = self._get_positive_int(
            "cold-start-timeout", DEFAULT_COLD_START_TIMEOUT
        )
        self._ssh_ready_timeout = self._get_positive_int(
            "ssh-ready-timeout", DEFAULT_SSH_READY_TIMEOUT
        )
        self._vm_stop_timeout = self._get_positive_int("vm-stop-timeout", DEFAULT_VM_STOP_TIMEOUT)

        restart_delay = self._config.get("restart-delay", DEFAULT_RESTART_DELAY)
        if (
            isinstance(restart_delay, bool)
            or not isinstance(restart_delay, (int, float))
            or restart_delay < 0
        ):
            raise ConfigurationError(
                f"Invalid restart-delay: {restart_delay}. Expected: non-negative number"
            )
        self._restart_delay = float(restart_delay)

        linux_system = self._config.get("linux-system", LINUX_SYSTEM)
        if not isinstance(linux_system, str) or not linux_system.endswith("-linux"):
            raise ConfigurationError(
                f"Invalid linux-system: {linux_system}. Expected: <arch>-linux"
            )
        self._linux_system = linux_system

    @property
    def image(self) -> str:
        """Get guest disk image location."""
        return self._image

    @property
    def cores(self) -> int:
        """Get number of CPU cores."""
        return self._cores

    @property
    def memory(self) -> str:
        """Get memory size, e.g. "6GiB"."""
        return self._memory

    @property
    def disk_size(self) -> str:
        """Get disk size, e.g. "100GiB"."""
        return self._disk_size

    @property
    def port(self) -> int:
        """Get the SSH port callers connect to."""
        return self._port

    @property
    def vm_ssh_port(self) -> int:
        """Get the local port Lima forwards to the guest's sshd."""
        if self.on_demand_enabled:
            return self._port + 1
        return self._port

    @property
    def on_demand_enabled(self) -> bool:
        """Check if on-demand activation is enabled."""
        return self._on_demand_enabled

    @property
    def lifecycle_mode(self) -> LifecycleMode:
        if self._on_demand_enabled:
            return LifecycleMode.ON_DEMAND
        return LifecycleMode.ALWAYS_ON

    @property
    def on_demand_linger_minutes(self) -> int:
        """Get minutes of inactivity before the guest powers itself off."""
        return self._on_demand_linger_minutes

    @property
    def permit_non_root_ssh_access(self) -> bool:
        """Check if non-root users may read the user private key."""
        return self._permit_non_root_ssh_access

    @property
    def rosetta_enabled(self) -> bool:
        """Check if Rosetta is enabled."""
        return self._rosetta_enabled

    @property
    def debug_enabled(self) -> bool:
        """Check if debug mode is enabled."""
        return self._debug_enabled

    @property
    def cold_start_timeout(self) -> int:
        """Get seconds an on-demand activation may wait for the VM."""
        return self._cold_start_timeout

    @property
    def ssh_ready_timeout(self) -> int:
        """Get SSH ready timeout in seconds."""
        return self._ssh_ready_timeout

    @property
    def vm_stop_timeout(self) -> int:
        """Get VM stop timeout in seconds."""
        return self._vm_stop_timeout

    @property
    def restart_delay(self) -> float:
        """Get delay in seconds before restarting an exited always-on VM."""
        return self._restart_delay

    @property
    def linux_system(self) -> str:
        return self._linux_system

    @property
    def working_directory(self) -> Path:
        """Get working directory."""
        value = os.getenv(WORKING_DIRECTORY_ENV, WORKING_DIRECTORY)
        return Path(value)

    @property
    def lima_home(self) -> Path:
        return self.working_directory / LIMA_HOME_DIR_NAME

    @property
    def sshd_keys_dir(self) -> Path:
        return self.working_directory / SSHD_KEYS_SHARED_DIR_NAME

    @property
    def known_hosts_path(self) -> Path:
        return self.working_directory / SSH_KNOWN_HOSTS_FILE_NAME

    @property
    def user_private_key_path(self) -> Path:
        return self.working_directory / SSH_USER_PRIVATE_KEY_FILE_NAME

    @property
    def state_path(self) -> Path:
        return self.working_directory / STATE_FILE_NAME

    def __repr__(self) -> str:
        """String representation of configuration."""
        return ", ".join(
            [
                f"BuilderConfig(cores={self.cores}",
                f"cold_start_timeout={self.cold_start_timeout}",
                f"debug={self.debug_enabled}",
                f"disk_size={self.disk_size}",
                f"image={self.image}",
                f"memory={self.memory}",
                f"mode={self.lifecycle_mode.value}",
                f"on_demand_linger_minutes={self.on_demand_linger_minutes}",
                f"permit_non_root_ssh_access={self.permit_non_root_ssh_access}",
                f"port={self.port}",
                f"rosetta_enabled={self.rosetta_enabled}",
                f"ssh_ready_timeout={self.ssh_ready_timeout}",
                f"vm_stop_timeout={self.vm_stop_timeout}",
                f"working_directory={self.working_directory})",
            ]
        )
