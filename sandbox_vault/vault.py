"""
Sandbox Vault facade.

Wires the catalog, engines, validator, restore orchestrator, packager and
deployment coordinator from ``VaultSettings`` and the three capability
adapters.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from sandbox_vault.adapters.base import ConfigIntrospector, RemoteExecutor, SnapshotAdapter
from sandbox_vault.adapters.introspector import SandboxConfigIntrospector
from sandbox_vault.adapters.ssh import ParamikoRemoteExecutor
from sandbox_vault.backup.base import Clock
from sandbox_vault.backup.catalog import BackupCatalog, CatalogStore, JsonCatalogStore
from sandbox_vault.backup.full import FullBackupEngine
from sandbox_vault.backup.incremental import IncrementalBackupEngine
from sandbox_vault.backup.locks import SandboxLockRegistry
from sandbox_vault.backup.restore import RestoreOrchestrator, RestoreResult
from sandbox_vault.backup.storage import BackupStorage, RetentionPolicy
from sandbox_vault.backup.validator import IntegrityValidator, ValidationOutcome
from sandbox_vault.deployment.coordinator import (
    BatchDeploymentCoordinator,
    CredentialSpec,
    TargetSpec,
)
from sandbox_vault.migration.packager import MigrationPackager
from sandbox_vault.models.config import VaultSettings
from sandbox_vault.models.migration import DeploymentReport, MigrationPackage
from sandbox_vault.models.records import BackupOutcome, BackupRecord
from sandbox_vault.utils.logging import get_logger

logger = get_logger("vault")


class SandboxVault:
    """Entry point to backup, restore, packaging and deployment."""

    def __init__(
        self,
        settings: VaultSettings,
        adapter: SnapshotAdapter,
        introspector: Optional[ConfigIntrospector] = None,
        executor: Optional[RemoteExecutor] = None,
        store: Optional[CatalogStore] = None,
        clock: Optional[Clock] = None
    ):
        self.settings = settings
        settings.home_dir.mkdir(parents=True, exist_ok=True)
        self.adapter = adapter
        self.introspector = introspector or SandboxConfigIntrospector(adapter)
        self.executor = executor or ParamikoRemoteExecutor()

        self.locks = SandboxLockRegistry()
        self.catalog = BackupCatalog(store or JsonCatalogStore(settings.catalog_path), self.locks)
        self.storage = BackupStorage(settings.backup_dir, self.catalog)
        self.validator = IntegrityValidator(settings.checksum_algorithm)

        engine_options = {
            "checksum_algorithm": settings.checksum_algorithm,
            "compress": settings.compress_backups,
            "clock": clock,
        }
        self.full_engine = FullBackupEngine(adapter, self.catalog, self.storage, **engine_options)
        self.incremental_engine = IncrementalBackupEngine(adapter, self.catalog, self.storage, **engine_options)

        self.restorer = RestoreOrchestrator(
            adapter,
            self.catalog,
            self.validator,
            staging_dir=settings.home_dir,
            liveness_command=settings.liveness_command,
            liveness_timeout=settings.liveness_timeout_seconds,
            default_timeout_minutes=settings.restore_timeout_minutes,
            locks=self.locks,
        )

        self.packager = MigrationPackager(
            self.catalog,
            self.full_engine,
            self.introspector,
            settings.package_dir,
            checksum_algorithm=settings.checksum_algorithm,
            probe_command=settings.liveness_command,
        )
        self.coordinator = BatchDeploymentCoordinator(
            self.executor,
            remote_package_dir=settings.remote_package_dir,
            install_command=settings.remote_install_command,
            command_timeout=settings.remote_command_timeout,
            copy_retry_attempts=settings.copy_retry_attempts,
            max_concurrent=settings.max_concurrent_deployments,
        )
        logger.debug(f"Sandbox vault initialized at {settings.home_dir}")

    async def create_full_backup(self, sandbox_id: str, compress: Optional[bool] = None) -> BackupRecord:
        return await self.full_engine.create_full_backup(sandbox_id, compress=compress)

    async def create_incremental_backup(self, sandbox_id: str, parent_id: Optional[str] = None) -> BackupOutcome:
        return await self.incremental_engine.create_incremental_backup(sandbox_id, parent_id)

    async def validate(self, record_id: str) -> ValidationOutcome:
        return await self.validator.validate_record(self.catalog.get_record(record_id))

    async def audit(self, sandbox_id: Optional[str] = None) -> Dict[str, ValidationOutcome]:
        return await self.validator.audit(self.catalog, sandbox_id)

    async def restore(
        self,
        record_id: str,
        new_sandbox_id: str,
        timeout_minutes: Optional[float] = None,
        force: bool = False
    ) -> RestoreResult:
        return await self.restorer.restore(record_id, new_sandbox_id, timeout_minutes, force)

    async def delete_record(self, record_id: str, cascade: bool = False) -> List[str]:
        return await self.catalog.delete_record(record_id, cascade=cascade)

    async def prune(self, sandbox_id: str, policy: RetentionPolicy) -> List[str]:
        return await self.storage.prune(sandbox_id, policy)

    async def create_package(self, sandbox_id: str, **options) -> MigrationPackage:
        return await self.packager.create_package(sandbox_id, **options)

    async def deploy_batch(
        self,
        package_path: Union[str, Path],
        targets: Sequence[TargetSpec],
        credentials: CredentialSpec,
        max_concurrent: Optional[int] = None
    ) -> DeploymentReport:
        return await self.coordinator.deploy_batch(package_path, targets, credentials, max_concurrent)
