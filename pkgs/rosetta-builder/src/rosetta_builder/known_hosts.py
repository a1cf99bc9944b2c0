"""Known-hosts record pinning the guest's host key to a fixed alias."""

import logging
import os
import tempfile
from pathlib import Path

import aiofiles

logger = logging.getLogger(__name__)

WORLD_READABLE_MODE = 0o644


def write_known_hosts(path: Path, alias: str, public_key: str) -> None:
    """Atomically replace the record with a single ``<alias> <public key>`` line."""
    line = f"{alias} {public_key.strip()}\n"

    with tempfile.NamedTemporaryFile(
        mode="w", dir=path.parent, prefix=f"{path.name}.tmp.", delete=False
    ) as tmp_file:
        tmp_file.write(line)
        tmp_file.flush()
        os.fsync(tmp_file.fileno())
        tmp_path = tmp_file.name

    try:
        os.replace(tmp_path, path)
    except OSError:
        os.unlink(tmp_path)
        raise

    logger.debug(f"Wrote known hosts record for {alias} to {path}")


async def read_known_hosts(path: Path, alias: str) -> str | None:
    """Return the key pinned to ``alias``, or None when the record has no such entry."""
    try:
        async with aiofiles.open(path, "r") as file:
            content = await file.read()
    except FileNotFoundError:
        return None

    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        hosts, _, key = line.partition(" ")
        if alias in hosts.split(","):
            return key.strip()

    return None


def make_world_readable(path: Path) -> None:
    """Every local user may verify the guest's identity, even without access to the VM."""
    os.chmod(path, WORLD_READABLE_MODE)
