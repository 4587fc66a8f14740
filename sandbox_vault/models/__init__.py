"""
Data models for Sandbox Vault.

This module contains Pydantic models for settings, backup records,
migration manifests and deployment results.
"""

from sandbox_vault.models.config import (
    DeploymentTarget,
    HostKeyPolicy,
    LoggingSettings,
    RemoteCredentials,
    VaultSettings,
    load_settings,
)
from sandbox_vault.models.migration import (
    DeploymentReport,
    DeploymentResult,
    DeploymentStatus,
    FileManifestEntry,
    MigrationManifest,
    MigrationPackage,
    SandboxConfiguration,
    SystemInfo,
)
from sandbox_vault.models.records import (
    BackupOutcome,
    BackupRecord,
    BackupStatus,
    BackupType,
)

__all__ = [
    # Configuration models
    "DeploymentTarget",
    "HostKeyPolicy",
    "LoggingSettings",
    "RemoteCredentials",
    "VaultSettings",
    "load_settings",
    # Backup records
    "BackupOutcome",
    "BackupRecord",
    "BackupStatus",
    "BackupType",
    # Migration and deployment
    "DeploymentReport",
    "DeploymentResult",
    "DeploymentStatus",
    "FileManifestEntry",
    "MigrationManifest",
    "MigrationPackage",
    "SandboxConfiguration",
    "SystemInfo",
]
