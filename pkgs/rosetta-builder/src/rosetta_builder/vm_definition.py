"""Desired VM definition, rendered in Lima's YAML schema."""

import hashlib
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .config import BuilderConfig
from .constants import SSHD_KEYS_MOUNT_INDEX


def mount_tag(index: int) -> str:
    """Return the virtiofs tag Lima assigns to the mount at ``index``."""
    return f"mount{index}"


@dataclass(frozen=True)
class VMDefinition:
    """Everything Lima needs to register the builder VM.

    ``mounts`` is positional: the guest locates each share by ``mount_tag(index)``, so reordering
    it breaks the guest even when the set of directories is unchanged.
    """

    cpus: int
    memory: str
    disk: str
    image: str
    ssh_local_port: int
    mounts: tuple[str, ...] = field(default_factory=tuple)
    socket_activated: bool = False
    rosetta: bool = True

    @classmethod
    def from_config(cls, config: BuilderConfig) -> "VMDefinition":
        mounts: list[str] = []
        mounts.insert(SSHD_KEYS_MOUNT_INDEX, str(config.sshd_keys_dir))
        return cls(
            cpus=config.cores,
            memory=config.memory,
            disk=config.disk_size,
            image=config.image,
            ssh_local_port=config.vm_ssh_port,
            mounts=tuple(mounts),
            socket_activated=config.on_demand_enabled,
            rosetta=config.rosetta_enabled,
        )

    def to_lima(self) -> dict:
        return {
            # skips the unused nerdctl archive download
            "containerd": {"system": False, "user": False},
            "cpus": self.cpus,
            "disk": self.disk,
            "images": [{"location": self.image}],
            "memory": self.memory,
            "mountType": "virtiofs",
            "mounts": [{"location": location, "writable": False} for location in self.mounts],
            "param": {"SOCKET_ACTIVATED": str(self.socket_activated).lower()},
            "rosetta": {"binfmt": self.rosetta, "enabled": self.rosetta},
            "ssh": {
                "forwardAgent": False,
                "loadDotSSHPubKeys": False,
                "localPort": self.ssh_local_port,
            },
            "vmType": "vz",
        }

    def render(self) -> bytes:
        """Render the canonical serialized form.

        Two equal definitions always render to identical bytes; convergence compares these bytes
        against the copy Lima stored when the VM was registered.
        """
        text = yaml.safe_dump(self.to_lima(), default_flow_style=False, sort_keys=True)
        return text.encode("utf-8")

    def digest(self) -> str:
        return hashlib.sha256(self.render()).hexdigest()

    def write(self, path: Path) -> Path:
        path.write_bytes(self.render())
        return path
