"""
Sandbox Vault

Backup, integrity-verified restore and cross-machine migration of
isolated Linux sandbox environments.
"""

__version__ = "0.1.0"
__author__ = "Sandbox Vault Team"

from sandbox_vault.models.config import VaultSettings, load_settings
from sandbox_vault.models.records import BackupRecord, BackupType
from sandbox_vault.vault import SandboxVault

__all__ = [
    "SandboxVault",
    "VaultSettings",
    "load_settings",
    "BackupRecord",
    "BackupType",
]
