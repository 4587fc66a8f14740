"""
Custom exceptions for Sandbox Vault.

This module defines the exception hierarchy used by the catalog, the
backup engines, restore, packaging and deployment. Every error carries
the identifiers needed to retry the failed operation in ``details``.
"""

from typing import Any, Dict, List, Optional


class SandboxVaultError(Exception):
    """Base exception class for Sandbox Vault errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    @property
    def sandbox_id(self) -> Optional[str]:
        return self.details.get("sandbox_id")

    @property
    def record_id(self) -> Optional[str]:
        return self.details.get("record_id")

    @property
    def target_host(self) -> Optional[str]:
        return self.details.get("target_host")


class ConfigurationError(SandboxVaultError):
    """Raised when there's an error in configuration."""
    pass


class ValidationError(SandboxVaultError):
    """Raised when validation fails."""

    def __init__(
        self,
        message: str,
        failed_checks: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.failed_checks = failed_checks or []


class CaptureError(SandboxVaultError):
    """Raised when the snapshot adapter fails to capture or materialize a sandbox."""
    pass


class CatalogError(SandboxVaultError):
    """Base class for backup catalog errors."""
    pass


class CatalogCorruptError(CatalogError):
    """Raised when the persisted catalog cannot be trusted."""
    pass


class RecordNotFoundError(CatalogError):
    """Raised when a backup record id does not resolve."""
    pass


class DependencyError(CatalogError):
    """Raised when deleting a record that other records depend on."""

    def __init__(
        self,
        message: str,
        dependents: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.dependents = dependents or []


class NoParentError(CatalogError):
    """Raised when an incremental backup has no Full record to chain from."""
    pass


class ChainIntegrityError(SandboxVaultError):
    """Raised when an archive in a restore chain fails checksum validation."""

    def __init__(
        self,
        message: str,
        failed_records: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.failed_records = failed_records or []


class RestoreError(SandboxVaultError):
    """Raised when extracting or applying a restore chain fails."""
    pass


class LivenessError(RestoreError):
    """Raised when a restored sandbox does not answer the liveness probe."""
    pass


class RestoreTimeoutError(RestoreError):
    """Raised when a restore exceeds its timeout."""
    pass


class PackageError(SandboxVaultError):
    """Raised when building or reading a migration package fails."""
    pass


class NetworkError(SandboxVaultError):
    """Raised when a remote host cannot be reached or authenticated."""
    pass


class RemoteCommandError(SandboxVaultError):
    """Raised when a remote command exits unsuccessfully."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stderr: str = "",
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.stderr = stderr
