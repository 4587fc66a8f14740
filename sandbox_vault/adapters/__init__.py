"""
Adapters between the engine and the host environment.

This module contains the capability interfaces and their directory,
WSL and paramiko implementations.
"""

from sandbox_vault.adapters.base import (
    CommandResult,
    ConfigIntrospector,
    RemoteExecutor,
    SandboxFile,
    SnapshotAdapter,
)
from sandbox_vault.adapters.directory import DirectorySnapshotAdapter
from sandbox_vault.adapters.introspector import SandboxConfigIntrospector
from sandbox_vault.adapters.ssh import ParamikoRemoteExecutor
from sandbox_vault.adapters.wsl import WslSnapshotAdapter

__all__ = [
    "CommandResult",
    "ConfigIntrospector",
    "RemoteExecutor",
    "SandboxFile",
    "SnapshotAdapter",
    "DirectorySnapshotAdapter",
    "SandboxConfigIntrospector",
    "ParamikoRemoteExecutor",
    "WslSnapshotAdapter",
]
