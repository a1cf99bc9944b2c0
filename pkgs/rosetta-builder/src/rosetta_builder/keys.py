"""SSH key material for the builder VM."""

import asyncio
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path

from .constants import SSH_KEY_TYPE
from .exceptions import KeyMaterialError

logger = logging.getLogger(__name__)

OWNER_ONLY_MODE = 0o600
GROUP_READABLE_MODE = 0o640


@dataclass(frozen=True)
class KeyPair:
    """A key pair as it lies on disk."""

    private_path: Path
    public_path: Path
    algorithm: str = SSH_KEY_TYPE

    @classmethod
    def at(cls, private_path: Path, algorithm: str = SSH_KEY_TYPE) -> "KeyPair":
        return cls(private_path, private_path.with_name(f"{private_path.name}.pub"), algorithm)

    def public_key(self) -> str:
        try:
            return self.public_path.read_text().strip()
        except OSError as e:
            raise KeyMaterialError(f"Failed to read public key {self.public_path}: {e}")


def remove_key_pair(private_path: Path) -> None:
    """Delete both halves of a key pair if present."""
    pair = KeyPair.at(private_path)
    for path in (pair.private_path, pair.public_path):
        path.unlink(missing_ok=True)


async def generate_key_pair(
    private_path: Path, comment: str, key_type: str = SSH_KEY_TYPE
) -> KeyPair:
    """Generate a fresh, passphrase-less key pair at ``private_path``.

    Stale files are removed first so a retry after a crash never sees half of an old pair next to
    half of a new one (ssh-keygen would also stop to ask before overwriting).
    """
    remove_key_pair(private_path)

    cmd = ["ssh-keygen", "-q", "-C", comment, "-f", str(private_path), "-N", "", "-t", key_type]
    logger.debug(f"Generating {key_type} key pair at {private_path}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
    except OSError as e:
        raise KeyMaterialError(f"Failed to run ssh-keygen: {e}")

    if process.returncode != 0:
        raise KeyMaterialError(
            f"ssh-keygen failed for {private_path} (exit {process.returncode}): "
            f"{stderr.decode(errors='replace').strip()}"
        )

    return KeyPair.at(private_path, key_type)


def file_mode(path: Path) -> int | None:
    """Return the permission bits of ``path``, or None if it does not exist."""
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return None


def key_policy_mode(permit_non_root: bool) -> int:
    """Most permissive mode the user private key may carry under the given policy."""
    return GROUP_READABLE_MODE if permit_non_root else OWNER_ONLY_MODE


def exceeds_policy(mode: int, permit_non_root: bool) -> bool:
    """Check whether ``mode`` grants group/other access the policy does not allow."""
    granted = mode & (stat.S_IRWXG | stat.S_IRWXO)
    return bool(granted & ~key_policy_mode(permit_non_root))


def widen_to_group_readable(path: Path) -> None:
    """Let the service group read ``path``; other users never gain access."""
    mode = file_mode(path)
    if mode is None:
        raise KeyMaterialError(f"Cannot widen permissions, key not found: {path}")
    os.chmod(path, (mode & stat.S_IRWXU) | (GROUP_READABLE_MODE & ~stat.S_IRWXU))
