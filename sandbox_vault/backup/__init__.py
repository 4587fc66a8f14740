"""
Backup and restore for Sandbox Vault.

This module contains the backup catalog, the Full and Incremental
engines, the integrity validator, storage management and the restore
orchestrator.
"""

from sandbox_vault.backup.catalog import (
    BackupCatalog,
    CatalogStore,
    JsonCatalogStore,
    MemoryCatalogStore,
)
from sandbox_vault.backup.full import FullBackupEngine
from sandbox_vault.backup.incremental import IncrementalBackupEngine
from sandbox_vault.backup.locks import SandboxLock, SandboxLockRegistry
from sandbox_vault.backup.restore import (
    RestoreOrchestrator,
    RestoreResult,
    RestoreState,
)
from sandbox_vault.backup.storage import BackupStorage, RetentionPolicy
from sandbox_vault.backup.validator import (
    IntegrityValidator,
    ValidationOutcome,
    ValidationReason,
)

__all__ = [
    "BackupCatalog",
    "CatalogStore",
    "JsonCatalogStore",
    "MemoryCatalogStore",
    "FullBackupEngine",
    "IncrementalBackupEngine",
    "SandboxLock",
    "SandboxLockRegistry",
    "RestoreOrchestrator",
    "RestoreResult",
    "RestoreState",
    "BackupStorage",
    "RetentionPolicy",
    "IntegrityValidator",
    "ValidationOutcome",
    "ValidationReason",
]
