"""
Core module for Sandbox Vault.

This module contains the exception hierarchy and error handling
shared by every subsystem.
"""

from sandbox_vault.core.exceptions import (
    SandboxVaultError,
    ConfigurationError,
    ValidationError,
    CaptureError,
    CatalogError,
    CatalogCorruptError,
    RecordNotFoundError,
    DependencyError,
    NoParentError,
    ChainIntegrityError,
    RestoreError,
    LivenessError,
    RestoreTimeoutError,
    PackageError,
    NetworkError,
    RemoteCommandError,
)

__all__ = [
    "SandboxVaultError",
    "ConfigurationError",
    "ValidationError",
    "CaptureError",
    "CatalogError",
    "CatalogCorruptError",
    "RecordNotFoundError",
    "DependencyError",
    "NoParentError",
    "ChainIntegrityError",
    "RestoreError",
    "LivenessError",
    "RestoreTimeoutError",
    "PackageError",
    "NetworkError",
    "RemoteCommandError",
]
