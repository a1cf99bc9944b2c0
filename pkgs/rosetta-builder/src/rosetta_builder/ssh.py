"""SSH connectivity testing for the builder VM."""

import asyncio
import logging
from pathlib import Path

from .constants import (
    LINUX_USER,
    SSH_HOST_KEY_ALIAS,
    SSH_KNOWN_HOSTS_FILE_NAME,
    SSH_USER_PRIVATE_KEY_FILE_NAME,
)

logger = logging.getLogger(__name__)


class SSHConnectivityTester:
    """Cached SSH connectivity tester.

    The guest's host key is pinned through the alias in the known-hosts record; an unknown or
    changed key fails the check instead of being accepted on first use.
    """

    def __init__(self, working_dir: Path, port: int, username: str = LINUX_USER):
        self.working_dir = working_dir
        self.port = port
        self.username = username
        self.ssh_key_path = working_dir / SSH_USER_PRIVATE_KEY_FILE_NAME
        self.known_hosts_path = working_dir / SSH_KNOWN_HOSTS_FILE_NAME

        self._ssh_base_command = [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            "LogLevel=ERROR",
            "-o",
            "PasswordAuthentication=no",
            "-o",
            "StrictHostKeyChecking=yes",
            "-o",
            f"HostKeyAlias={SSH_HOST_KEY_ALIAS}",
            "-o",
            f"GlobalKnownHostsFile={self.known_hosts_path}",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "IdentitiesOnly=yes",
            "-p",
            str(self.port),
            "-i",
            str(self.ssh_key_path),
        ]

    def build_command(self, host: str, timeout: int) -> list[str]:
        return self._ssh_base_command + [
            "-o",
            f"ConnectTimeout={timeout}",
            f"{self.username}@{host}",
            "true",
        ]

    async def test_connectivity(self, host: str = "localhost", timeout: int = 10) -> bool:
        """Test SSH connectivity with cached command."""
        if not self.ssh_key_path.exists():
            logger.debug(f"SSH key not found at {self.ssh_key_path}")
            return False

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(host, timeout),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"SSH connectivity test failed: {e}")
            return False

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return False

        success = process.returncode == 0
        if success:
            logger.debug(f"SSH connection to {host}:{self.port} successful")
        return success
