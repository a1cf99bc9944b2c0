"""One-shot guest service installing sshd's host key and the builder's authorized key.

The host shares these secrets over virtiofs. macOS' Virtualization framework makes every file on
that share appear to be owned by whichever guest user looks at it, so access cannot be
restricted inside the guest. The VM therefore allows no logins until this service has run: it
mounts the share, copies the keys to local files with proper ownership and permissions, and
unmounts before sshd may start.

Once sshd has started, a guest user may have left a process waiting to read the share, so it must
never be mounted again. The authorized keys file doubles as the guard: it appears, atomically,
only as the very last step, and the systemd unit refuses to run while it exists.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import aiofiles

from .constants import (
    GUEST_AUTHORIZED_KEYS_FILE_PATH,
    GUEST_SSH_HOST_PRIVATE_KEY_FILE_PATH,
    GUEST_SSHD_KEYS_MOUNT_PATH,
    SSH_HOST_PRIVATE_KEY_FILE_NAME,
    SSH_USER_PUBLIC_KEY_FILE_NAME,
    SSHD_KEYS_MOUNT_INDEX,
)
from .exceptions import ChannelError
from .vm_definition import mount_tag

logger = logging.getLogger(__name__)

MOUNT_OPTIONS = "nodev,noexec,nosuid,ro"
HOST_KEY_MODE = 0o600
AUTHORIZED_KEYS_MODE = 0o644


def _rooted(root: Path, path: str) -> Path:
    return root / path.lstrip("/")


@dataclass(frozen=True)
class GuestPaths:
    """Guest file locations, optionally below an alternate root."""

    mount_point: Path
    host_private_key: Path
    authorized_keys: Path

    @classmethod
    def under(cls, root: Path = Path("/")) -> "GuestPaths":
        return cls(
            mount_point=_rooted(root, GUEST_SSHD_KEYS_MOUNT_PATH),
            host_private_key=_rooted(root, GUEST_SSH_HOST_PRIVATE_KEY_FILE_PATH),
            authorized_keys=_rooted(root, GUEST_AUTHORIZED_KEYS_FILE_PATH),
        )

    @property
    def authorized_keys_tmp(self) -> Path:
        return self.authorized_keys.with_name(f"{self.authorized_keys.name}.tmp")

    @property
    def guard(self) -> Path:
        return self.authorized_keys


def _private_opener(path, flags):
    return os.open(path, flags | os.O_NOFOLLOW, HOST_KEY_MODE)


async def _run(*cmd: str) -> None:
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
    except OSError as e:
        raise ChannelError(f"Failed to run {cmd[0]}: {e}")

    if process.returncode != 0:
        raise ChannelError(
            f"{' '.join(cmd)} failed (exit {process.returncode}): "
            f"{stderr.decode(errors='replace').strip()}"
        )


class KeyInstaller:
    """Drains the shared secret channel exactly once per VM disk."""

    def __init__(self, paths: GuestPaths, tag: str = mount_tag(SSHD_KEYS_MOUNT_INDEX)):
        self.paths = paths
        self.tag = tag

    @property
    def installed(self) -> bool:
        return self.paths.guard.exists()

    async def run(self) -> bool:
        """Install the keys unless a previous boot already did.

        Returns:
            bool: True if keys were installed, False if the guard file already existed
        """
        if self.installed:
            logger.info(f"{self.paths.guard} exists, keys already installed")
            return False

        await self.mount()
        try:
            await self.install_host_key()
            await self.stage_authorized_keys()
        except BaseException:
            # the installation error is the one to report
            try:
                await self.unmount()
            except ChannelError as e:
                logger.error(f"Failed to unmount the keys channel after a failed install: {e}")
            raise
        await self.unmount()

        # must be last so the guard only now exists
        os.replace(self.paths.authorized_keys_tmp, self.paths.authorized_keys)
        logger.info("Installed sshd host key and authorized keys")
        return True

    async def mount(self) -> None:
        mount_point = self.paths.mount_point
        mount_point.mkdir(parents=True, exist_ok=True)

        # left over by an attempt that failed before unmounting; options may not be ours
        if os.path.ismount(mount_point):
            logger.warning(f"{mount_point} is already mounted, remounting")
            await _run("umount", str(mount_point))

        await _run("mount", "-t", "virtiofs", "-o", MOUNT_OPTIONS, self.tag, str(mount_point))
        logger.debug(f"Mounted {self.tag} read-only at {mount_point}")

    async def unmount(self) -> None:
        mount_point = self.paths.mount_point
        if os.path.ismount(mount_point):
            await _run("umount", str(mount_point))
        try:
            mount_point.rmdir()
        except FileNotFoundError:
            pass
        logger.debug(f"Unmounted {mount_point}")

    async def _read_channel_file(self, name: str) -> bytes:
        path = self.paths.mount_point / name
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except OSError as e:
            raise ChannelError(f"Failed to read {path} from shared keys channel: {e}")

    async def install_host_key(self) -> None:
        """Copy the host private key without ever exposing it to group or other."""
        content = await self._read_channel_file(SSH_HOST_PRIVATE_KEY_FILE_NAME)

        target = self.paths.host_private_key
        target.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(target, "wb", opener=_private_opener) as f:
            # a file left by an earlier attempt keeps its old mode on open
            os.fchmod(f.fileno(), HOST_KEY_MODE)
            if os.geteuid() == 0:
                os.fchown(f.fileno(), 0, 0)
            await f.write(content)

    async def stage_authorized_keys(self) -> None:
        content = await self._read_channel_file(SSH_USER_PUBLIC_KEY_FILE_NAME)

        tmp = self.paths.authorized_keys_tmp
        tmp.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(tmp, "wb") as f:
            await f.write(content)
        os.chmod(tmp, AUTHORIZED_KEYS_MODE)
