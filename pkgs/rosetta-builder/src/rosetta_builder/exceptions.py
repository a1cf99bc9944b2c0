"""Custom exceptions for rosetta-builder."""


class RosettaBuilderError(Exception):
    """Base exception for all rosetta-builder errors."""

    pass


class ConfigurationError(RosettaBuilderError):
    """Raised when the builder configuration is invalid."""

    pass


class InconsistentStateError(RosettaBuilderError):
    """Raised when external state exists with an identifier we did not expect.

    This is never recovered from automatically: adopting or overwriting foreign state could hand
    credentials to the wrong principal.
    """

    pass


class KeyMaterialError(RosettaBuilderError):
    """Raised when SSH key material cannot be generated or read."""

    pass


class RegistrationError(RosettaBuilderError):
    """Raised when the VM manager rejects a registration operation."""

    pass


class ChannelError(RosettaBuilderError):
    """Raised when the shared secret channel cannot be mounted, read or unmounted."""

    pass


class VMStartupError(RosettaBuilderError):
    """Raised when VM fails to start."""

    pass


class ColdStartTimeoutError(VMStartupError):
    """Raised when an on-demand VM is not reachable within the activation window."""

    pass


class VMRuntimeError(RosettaBuilderError):
    """Raised when VM encounters runtime errors."""

    pass

