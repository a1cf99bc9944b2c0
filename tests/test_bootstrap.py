"""Tests for rosetta_builder.bootstrap."""

from __future__ import annotations

import asyncio
import os
import stat

import pytest

from rosetta_builder.bootstrap import HostBootstrap
from rosetta_builder.constants import VM_NAME
from rosetta_builder.convergence import ConvergenceState, HostStateRecord
from rosetta_builder.exceptions import RegistrationError
from rosetta_builder.keys import file_mode

from fakes import FakeLima, fake_keygen


@pytest.fixture
def events():
    return []


@pytest.fixture
def lima(working_dir, events):
    return FakeLima(working_dir / ".lima", events)


@pytest.fixture(autouse=True)
def keygen(monkeypatch, events):
    monkeypatch.setattr("rosetta_builder.bootstrap.generate_key_pair", fake_keygen(events))


@pytest.fixture
def make_bootstrap(make_config, lima):
    def _make(**overrides) -> HostBootstrap:
        return HostBootstrap(make_config(**overrides), lima)

    return _make


def keygen_count(events) -> int:
    return sum(1 for event in events if event[0] == "keygen")


class TestFirstRun:
    async def test_provisions_everything(self, make_bootstrap, lima, working_dir):
        bootstrap = make_bootstrap()
        assessment = await bootstrap.converge()

        assert not assessment.converged
        assert bootstrap.state is ConvergenceState.CONVERGED
        assert VM_NAME in lima.registered
        assert lima.applied_definition(VM_NAME) == bootstrap.definition.render()

        channel = working_dir / "linux-sshd-keys"
        assert sorted(p.name for p in channel.iterdir()) == [
            "ssh_host_ed25519_key",
            "ssh_user_ed25519_key.pub",
        ]
        # the host private key only exists in the channel
        assert not (working_dir / "ssh_host_ed25519_key").exists()
        assert (working_dir / "ssh_user_ed25519_key").exists()

    async def test_known_hosts_pins_new_host_key(self, make_bootstrap, working_dir):
        await make_bootstrap().converge()

        known_hosts = working_dir / "ssh_known_hosts"
        host_public = (working_dir / "ssh_host_ed25519_key.pub").read_text().strip()
        assert known_hosts.read_text() == f"rosetta-builder-key {host_public}\n"
        assert file_mode(known_hosts) == 0o644

    async def test_step_order(self, make_bootstrap, lima, events):
        lima.registered.add(VM_NAME)
        await make_bootstrap().converge()

        kinds = [event[0] for event in events]
        assert kinds == ["keygen", "keygen", "delete", "create"]

    async def test_skips_delete_when_unregistered(self, make_bootstrap, events):
        await make_bootstrap().converge()
        assert "delete" not in [event[0] for event in events]

    async def test_records_state(self, make_bootstrap, working_dir):
        bootstrap = make_bootstrap()
        await bootstrap.converge()

        record = HostStateRecord.read(working_dir / "state.json")
        assert record.state is ConvergenceState.CONVERGED
        assert record.definition_digest == bootstrap.definition.digest()
        assert record.key_policy == "owner-only"

    async def test_working_directory_traversable_not_listable(self, make_bootstrap, working_dir):
        os.chmod(working_dir, 0o777)
        await make_bootstrap().converge()
        mode = stat.S_IMODE(working_dir.stat().st_mode)
        assert mode & stat.S_IRWXO == stat.S_IXOTH
        assert not mode & stat.S_IWGRP


class TestIdempotence:
    async def test_second_run_does_nothing(self, make_bootstrap, events):
        await make_bootstrap().converge()
        events.clear()

        assessment = await make_bootstrap().converge()

        assert assessment.converged
        assert events == []

    async def test_same_instance_second_run(self, make_bootstrap, events):
        bootstrap = make_bootstrap()
        await bootstrap.converge()
        events.clear()

        assert (await bootstrap.converge()).converged
        assert events == []

    async def test_changed_definition_reprovisions(self, make_bootstrap, events):
        await make_bootstrap().converge()
        events.clear()

        bootstrap = make_bootstrap(cores=2)
        assessment = await bootstrap.converge()

        assert not assessment.converged
        assert [event[0] for event in events] == ["keygen", "keygen", "delete", "create"]
        assert bootstrap.lima.applied_definition(VM_NAME) == bootstrap.definition.render()

    async def test_missing_user_key_reprovisions(self, make_bootstrap, working_dir, events):
        await make_bootstrap().converge()
        (working_dir / "ssh_user_ed25519_key").unlink()
        events.clear()

        assert not (await make_bootstrap().converge()).converged
        assert keygen_count(events) == 2

    async def test_unregistered_vm_reprovisions(self, make_bootstrap, lima, events):
        await make_bootstrap().converge()
        lima.registered.clear()
        events.clear()

        assert not (await make_bootstrap().converge()).converged
        assert ("create", VM_NAME) in events


class TestInterruptedProvisioning:
    async def test_failure_is_recorded_and_retried(self, make_bootstrap, lima, working_dir):
        lima.fail_create = True
        bootstrap = make_bootstrap()

        with pytest.raises(RegistrationError):
            await bootstrap.converge()

        assert bootstrap.state is ConvergenceState.FAILED
        assert HostStateRecord.read(working_dir / "state.json").state is ConvergenceState.FAILED

        lima.fail_create = False
        await bootstrap.converge()
        assert bootstrap.state is ConvergenceState.CONVERGED

    async def test_crash_before_reregistration(self, make_bootstrap, lima, events, working_dir):
        """New keys were published but the old registration was never replaced."""
        await make_bootstrap().converge()

        lima.fail_delete = True
        with pytest.raises(RegistrationError):
            await make_bootstrap(cores=2).converge()
        lima.fail_delete = False

        # configuration reverted: definition, registration and key mode all look fine again
        events.clear()
        assessment = await make_bootstrap().converge()

        assert not assessment.converged
        assert keygen_count(events) == 2
        assert events[-1] == ("create", VM_NAME)
        assert HostStateRecord.read(working_dir / "state.json").state is (
            ConvergenceState.CONVERGED
        )

    async def test_crash_with_provisioning_record(self, make_bootstrap, working_dir, events):
        bootstrap = make_bootstrap()
        await bootstrap.converge()
        record = HostStateRecord.read(working_dir / "state.json")
        record.state = ConvergenceState.PROVISIONING
        record.write(working_dir / "state.json")
        events.clear()

        assert not (await make_bootstrap().converge()).converged
        assert keygen_count(events) == 2


class TestKeyPolicy:
    async def test_owner_only_by_default(self, make_bootstrap, working_dir):
        await make_bootstrap().converge()
        assert file_mode(working_dir / "ssh_user_ed25519_key") == 0o600

    async def test_permit_widens_without_rotation(self, make_bootstrap, working_dir, events):
        await make_bootstrap().converge()
        private_before = (working_dir / "ssh_user_ed25519_key").read_text()
        events.clear()

        bootstrap = make_bootstrap(**{"permit-non-root-ssh-access": True})
        assessment = await bootstrap.converge()

        assert assessment.converged
        assert events == []
        assert file_mode(working_dir / "ssh_user_ed25519_key") == 0o640
        assert (working_dir / "ssh_user_ed25519_key").read_text() == private_before

    async def test_revoking_permit_rotates_keys(self, make_bootstrap, working_dir, events):
        await make_bootstrap(**{"permit-non-root-ssh-access": True}).converge()
        assert file_mode(working_dir / "ssh_user_ed25519_key") == 0o640
        private_before = (working_dir / "ssh_user_ed25519_key").read_text()
        events.clear()

        assessment = await make_bootstrap().converge()

        assert not assessment.converged
        assert keygen_count(events) == 2
        assert file_mode(working_dir / "ssh_user_ed25519_key") == 0o600
        assert (working_dir / "ssh_user_ed25519_key").read_text() != private_before


class TestActivate:
    async def test_runs_vm_until_exit(self, make_bootstrap, lima, events):
        bootstrap = make_bootstrap()

        async def finish_soon():
            while not lima.vms:
                await asyncio.sleep(0)
            lima.vms[0].finish(0)

        waiter = asyncio.create_task(finish_soon())
        assert await bootstrap.activate() == 0
        await waiter
        assert events[-1] == ("start", VM_NAME)
