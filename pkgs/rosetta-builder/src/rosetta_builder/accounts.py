"""Host service account for the builder daemon, managed through macOS' directory service."""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from .constants import DARWIN_GID, DARWIN_GROUP, DARWIN_UID, DARWIN_USER, WORKING_DIRECTORY
from .exceptions import InconsistentStateError, RosettaBuilderError

logger = logging.getLogger(__name__)


async def _run(*cmd: str, check: bool = True) -> tuple[int, str]:
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()

    if check and process.returncode != 0:
        raise RosettaBuilderError(
            f"{' '.join(cmd)} failed (exit {process.returncode}): "
            f"{stderr.decode(errors='replace').strip()}"
        )
    return process.returncode, stdout.decode()


@dataclass(frozen=True)
class ServiceAccount:
    """The hidden role account the daemon runs as.

    UIDs and GIDs in the 200-400 range are reserved for role accounts; newer macOS releases
    install accounts from below and Nix installers allocate from 350 up, hence 349.
    """

    user: str = DARWIN_USER
    group: str = DARWIN_GROUP
    uid: int = DARWIN_UID
    gid: int = DARWIN_GID
    home: Path = Path(WORKING_DIRECTORY)

    @property
    def user_record(self) -> str:
        return f"/Users/{self.user}"

    @property
    def group_record(self) -> str:
        return f"/Groups/{self.group}"

    async def current_gid(self) -> int | None:
        code, output = await _run(
            "dscl", ".", "-read", self.group_record, "PrimaryGroupID", check=False
        )
        if code != 0:
            return None
        # "PrimaryGroupID: 349"
        value = output.strip().rpartition(" ")[2]
        try:
            return int(value)
        except ValueError:
            raise InconsistentStateError(
                f"existing group: {self.group} has unreadable PrimaryGroupID: {output.strip()}"
            )

    async def current_uid(self) -> int | None:
        code, output = await _run("id", "-u", self.user, check=False)
        if code != 0:
            return None
        return int(output.strip())

    def _check_gid(self, gid: int) -> None:
        if gid != self.gid:
            raise InconsistentStateError(
                f"existing group: {self.group} has unexpected PrimaryGroupID: {gid}"
            )

    def _check_uid(self, uid: int) -> None:
        if uid != self.uid:
            raise InconsistentStateError(f"existing user: {self.user} has unexpected UID: {uid}")

    async def ensure(self) -> None:
        """Create the group, user and home directory, or verify existing ones."""
        logger.info(f"Setting up group {self.group}")
        gid = await self.current_gid()
        if gid is None:
            logger.info(f"Creating group {self.group}")
            await _run("dscl", ".", "-create", self.group_record, "PrimaryGroupID", str(self.gid))
        else:
            self._check_gid(gid)

        logger.info(f"Setting up user {self.user}")
        uid = await self.current_uid()
        if uid is None:
            logger.info(f"Creating user {self.user}")
            record = self.user_record
            await _run("dscl", ".", "-create", record)
            await _run("dscl", ".", "-create", record, "PrimaryGroupID", str(self.gid))
            await _run("dscl", ".", "-create", record, "NFSHomeDirectory", str(self.home))
            await _run("dscl", ".", "-create", record, "UserShell", "/usr/bin/false")
            await _run("dscl", ".", "-create", record, "IsHidden", "1")
            # must be last so `id` only now succeeds
            await _run("dscl", ".", "-create", record, "UniqueID", str(self.uid))
        else:
            self._check_uid(uid)

        logger.info(f"Setting up working directory {self.home}")
        self.home.mkdir(parents=True, exist_ok=True)
        os.chown(self.home, self.uid, self.gid)

    async def remove(self) -> None:
        """Delete the working directory, user and group.

        Both identifiers are verified before anything is deleted.
        """
        uid = await self.current_uid()
        if uid is not None:
            self._check_uid(uid)
        gid = await self.current_gid()
        if gid is not None:
            self._check_gid(gid)

        if self.home.is_dir():
            logger.info(f"Removing working directory {self.home}")
            shutil.rmtree(self.home)

        if uid is not None:
            logger.info(f"Deleting user {self.user}")
            await _run("dscl", ".", "-delete", self.user_record)

        if gid is not None:
            logger.info(f"Deleting group {self.group}")
            await _run("dscl", ".", "-delete", self.group_record)
