"""
Migration packaging and installation for Sandbox Vault.
"""

from sandbox_vault.migration.installer import (
    CheckResult,
    ConfigurationApplier,
    InstallResult,
    PackageInstaller,
    load_package,
    open_package,
)
from sandbox_vault.migration.packager import MigrationPackager

__all__ = [
    "CheckResult",
    "ConfigurationApplier",
    "InstallResult",
    "PackageInstaller",
    "load_package",
    "open_package",
    "MigrationPackager",
]
