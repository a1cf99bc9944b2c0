"""Convergence state machine for the host bootstrap.

The decision to skip or regenerate is a pure function of two snapshots, `DesiredState` and
`ObservedState`, so it can be exercised without Lima, ssh-keygen or a VM.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .exceptions import InconsistentStateError
from .keys import exceeds_policy

logger = logging.getLogger(__name__)

STATE_RECORD_VERSION = 1


class ConvergenceState(Enum):
    CONVERGED = "converged"
    NEEDS_PROVISION = "needs-provision"
    PROVISIONING = "provisioning"
    FAILED = "failed"


@dataclass(frozen=True)
class DesiredState:
    definition: bytes
    vm_name: str
    permit_non_root: bool

    @property
    def key_policy(self) -> str:
        return "group-readable" if self.permit_non_root else "owner-only"


@dataclass(frozen=True)
class ObservedState:
    """Everything the predicates look at, observed once."""

    applied_definition: bytes | None
    registered: bool
    user_key_mode: int | None
    recorded_state: ConvergenceState | None = None


@dataclass(frozen=True)
class Assessment:
    state: ConvergenceState
    reasons: tuple[str, ...] = field(default_factory=tuple)

    @property
    def converged(self) -> bool:
        return self.state is ConvergenceState.CONVERGED


def assess(desired: DesiredState, observed: ObservedState) -> Assessment:
    """Evaluate the three convergence predicates.

    A user key that is merely stricter than the policy allows is not a failure: widening is done
    afterwards without rotating anything. A key that is looser than the policy allows may already
    have been read, so it fails the predicate and forces new key material.

    A provisioning run that never reached its last step leaves the old registration in place next
    to new keys; every live predicate can pass in that window, so the recorded state is checked
    as well.
    """
    reasons = []

    if observed.recorded_state in (ConvergenceState.PROVISIONING, ConvergenceState.FAILED):
        reasons.append(f"previous provisioning ended in state {observed.recorded_state.value}")

    if observed.applied_definition != desired.definition:
        reasons.append("VM definition differs from the applied one")

    if not observed.registered:
        reasons.append(f"VM {desired.vm_name} is not registered")

    if observed.user_key_mode is None:
        reasons.append("user private key is missing")
    elif exceeds_policy(observed.user_key_mode, desired.permit_non_root):
        reasons.append(
            f"user private key mode {observed.user_key_mode:o} is wider than the "
            f"{desired.key_policy} policy"
        )

    if reasons:
        return Assessment(ConvergenceState.NEEDS_PROVISION, tuple(reasons))
    return Assessment(ConvergenceState.CONVERGED)


def _transition(
    current: ConvergenceState, allowed: tuple[ConvergenceState, ...], target: ConvergenceState
) -> ConvergenceState:
    if current not in allowed:
        raise InconsistentStateError(
            f"Illegal convergence transition {current.value} -> {target.value}"
        )
    return target


def begin_provision(current: ConvergenceState) -> ConvergenceState:
    return _transition(
        current, (ConvergenceState.NEEDS_PROVISION,), ConvergenceState.PROVISIONING
    )


def complete_provision(current: ConvergenceState) -> ConvergenceState:
    return _transition(current, (ConvergenceState.PROVISIONING,), ConvergenceState.CONVERGED)


def fail(current: ConvergenceState) -> ConvergenceState:
    return ConvergenceState.FAILED


def retry(current: ConvergenceState) -> ConvergenceState:
    return _transition(current, (ConvergenceState.FAILED,), ConvergenceState.NEEDS_PROVISION)


@dataclass
class HostStateRecord:
    """Versioned record of the last convergence pass, kept in ``state.json``.

    The three predicates are always evaluated against live state. The record contributes only
    one fact: whether a provisioning run started and did not finish. It is also what the
    ``status`` command prints.
    """

    state: ConvergenceState
    definition_digest: str
    vm_name: str
    key_policy: str
    updated_at: float = field(default_factory=time.time)
    version: int = STATE_RECORD_VERSION

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "state": self.state.value,
            "definition_digest": self.definition_digest,
            "vm_name": self.vm_name,
            "key_policy": self.key_policy,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HostStateRecord":
        version = data.get("version")
        if version != STATE_RECORD_VERSION:
            raise InconsistentStateError(f"Unsupported state record version: {version}")
        return cls(
            state=ConvergenceState(data["state"]),
            definition_digest=data["definition_digest"],
            vm_name=data["vm_name"],
            key_policy=data["key_policy"],
            updated_at=data["updated_at"],
            version=version,
        )

    def write(self, path: Path) -> None:
        with tempfile.NamedTemporaryFile(
            mode="w", dir=path.parent, prefix=f"{path.name}.tmp.", delete=False
        ) as tmp_file:
            json.dump(self.to_dict(), tmp_file, indent=2, sort_keys=True)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = tmp_file.name

        os.replace(tmp_path, path)
        logger.debug(f"Recorded convergence state {self.state.value} in {path}")

    @classmethod
    def read(cls, path: Path) -> "HostStateRecord | None":
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise InconsistentStateError(f"Corrupt state record {path}: {e}")
        try:
            return cls.from_dict(data)
        except (AttributeError, KeyError, ValueError, TypeError) as e:
            raise InconsistentStateError(f"Corrupt state record {path}: {e}")
