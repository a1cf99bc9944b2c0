"""Host bootstrap: converge key material and VM registration, then start the VM."""

import logging
import os
import shutil

from .config import BuilderConfig
from .constants import (
    DARWIN_USER,
    LINUX_HOST_NAME,
    SSH_HOST_KEY_ALIAS,
    SSH_HOST_PRIVATE_KEY_FILE_NAME,
    SSH_USER_PRIVATE_KEY_FILE_NAME,
    VM_DEFINITION_FILE_NAME,
    VM_NAME,
)
from .convergence import (
    Assessment,
    ConvergenceState,
    DesiredState,
    HostStateRecord,
    ObservedState,
    assess,
    begin_provision,
    complete_provision,
    fail,
    retry,
)
from .keys import KeyPair, file_mode, generate_key_pair, widen_to_group_readable
from .known_hosts import make_world_readable, write_known_hosts
from .lima import LimaClient, LimaVMProcess
from .vm_definition import VMDefinition

logger = logging.getLogger(__name__)

# g-w,o=
PROCESS_UMASK = 0o027


class HostBootstrap:
    """Decides whether existing VM state satisfies the configuration, and fixes it if not.

    Only one instance may run against a given working directory at a time; launchd runs at most
    one copy of the daemon, and nothing here takes a lock of its own.
    """

    def __init__(self, config: BuilderConfig, lima: LimaClient, vm_name: str = VM_NAME):
        self.config = config
        self.lima = lima
        self.vm_name = vm_name
        self.working_dir = config.working_directory

        self.definition = VMDefinition.from_config(config)
        self.definition_path = self.working_dir / VM_DEFINITION_FILE_NAME
        self.user_key_path = self.working_dir / SSH_USER_PRIVATE_KEY_FILE_NAME
        self.host_key_path = self.working_dir / SSH_HOST_PRIVATE_KEY_FILE_NAME

        self.state = ConvergenceState.NEEDS_PROVISION

    def desired_state(self) -> DesiredState:
        return DesiredState(
            definition=self.definition.render(),
            vm_name=self.vm_name,
            permit_non_root=self.config.permit_non_root_ssh_access,
        )

    def prepare_working_directory(self) -> None:
        """Restrict new files to the service account and keep the directory traversable."""
        os.umask(PROCESS_UMASK)
        # g-w,o=x: other users may reach the known hosts record by path, never list the directory
        mode = os.stat(self.working_dir).st_mode & 0o7777
        os.chmod(self.working_dir, (mode & ~0o027) | 0o001)

    async def observe(self) -> ObservedState:
        record = HostStateRecord.read(self.config.state_path)
        return ObservedState(
            applied_definition=self.lima.applied_definition(self.vm_name),
            registered=await self.lima.is_registered(self.vm_name),
            user_key_mode=file_mode(self.user_key_path),
            recorded_state=record.state if record else None,
        )

    def _record(self) -> None:
        desired = self.desired_state()
        HostStateRecord(
            state=self.state,
            definition_digest=self.definition.digest(),
            vm_name=self.vm_name,
            key_policy=desired.key_policy,
        ).write(self.config.state_path)

    async def converge(self) -> Assessment:
        """Bring key material and the VM registration in line with the configuration."""
        self.prepare_working_directory()

        assessment = assess(self.desired_state(), await self.observe())

        if assessment.converged:
            logger.info(f"VM {self.vm_name} is up to date, skipping provisioning")
            self.state = ConvergenceState.CONVERGED
        else:
            for reason in assessment.reasons:
                logger.info(f"Provisioning required: {reason}")
            if self.state is ConvergenceState.FAILED:
                self.state = retry(self.state)
            else:
                self.state = assessment.state
            await self.provision()

        self.apply_permissions()
        self._record()
        return assessment

    async def provision(self) -> None:
        """Regenerate keys and re-register the VM.

        Each step is safe to repeat. The old registration is only removed once new key material
        is fully in place, and the new one is created last, so "registered" implies a complete
        run.
        """
        self.state = begin_provision(self.state)
        self._record()

        try:
            user_keys = await generate_key_pair(self.user_key_path, f"{DARWIN_USER}@darwin")
            host_keys = await generate_key_pair(self.host_key_path, f"root@{LINUX_HOST_NAME}")

            self.publish_to_channel(user_keys, host_keys)

            write_known_hosts(
                self.config.known_hosts_path, SSH_HOST_KEY_ALIAS, host_keys.public_key()
            )

            if await self.lima.is_registered(self.vm_name):
                await self.lima.delete(self.vm_name)

            # must be last so the VM only counts as registered after everything above succeeded
            await self.lima.create(self.vm_name, self.definition.write(self.definition_path))
        except Exception:
            self.state = fail(self.state)
            self._record()
            raise

        self.state = complete_provision(self.state)
        logger.info(f"Provisioned VM {self.vm_name} with new key material")

    def publish_to_channel(self, user_keys: KeyPair, host_keys: KeyPair) -> None:
        """Move the files the guest needs into the shared keys directory.

        This is the only copy of the host private key; the guest takes it over on first boot.
        """
        channel = self.config.sshd_keys_dir
        channel.mkdir(parents=True, exist_ok=True)

        for path in (user_keys.public_path, host_keys.private_path):
            shutil.move(str(path), str(channel / path.name))
        logger.debug(f"Published user public key and host private key to {channel}")

    def apply_permissions(self) -> None:
        """Permissions that hold for both fresh and existing installations."""
        make_world_readable(self.config.known_hosts_path)

        # outside provisioning so non-root access can be enabled without recreating the VM
        if self.config.permit_non_root_ssh_access:
            widen_to_group_readable(self.user_key_path)

    async def start_vm(self) -> LimaVMProcess:
        return await self.lima.start_foreground(self.vm_name)

    async def activate(self) -> int:
        """Converge, then run the VM in the foreground until it exits."""
        await self.converge()
        vm = await self.start_vm()
        return await vm.wait()
