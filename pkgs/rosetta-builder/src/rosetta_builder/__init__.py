"""rosetta-builder package."""

from importlib.metadata import version

from .exceptions import (
    ChannelError,
    ColdStartTimeoutError,
    ConfigurationError,
    InconsistentStateError,
    KeyMaterialError,
    RegistrationError,
    RosettaBuilderError,
    VMRuntimeError,
    VMStartupError,
)

__version__ = version("rosetta-builder")


# Lazy imports to avoid dependency issues when importing submodules
def __getattr__(name):
    if name == "BuilderConfig":
        from .config import BuilderConfig

        return BuilderConfig
    elif name == "HostBootstrap":
        from .bootstrap import HostBootstrap

        return HostBootstrap
    elif name == "KeyInstaller":
        from .guest_keys import KeyInstaller

        return KeyInstaller
    elif name == "LifecycleController":
        from .lifecycle import LifecycleController

        return LifecycleController
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    "__version__",
    "BuilderConfig",
    "HostBootstrap",
    "KeyInstaller",
    "LifecycleController",
    "RosettaBuilderError",
    "ConfigurationError",
    "InconsistentStateError",
    "KeyMaterialError",
    "RegistrationError",
    "ChannelError",
    "VMStartupError",
    "ColdStartTimeoutError",
    "VMRuntimeError",
]
