"""
Migration and deployment models for Sandbox Vault.

This module defines the migration manifest written into every package
and the per-host results aggregated by batch deployment.
"""

from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from sandbox_vault.utils.helpers import safe_filename

MANIFEST_FILENAME = "manifest.json"
INSTALL_SCRIPT_FILENAME = "install.script"
VALIDATE_SCRIPT_FILENAME = "validate.script"
README_FILENAME = "README"
ARCHIVE_SUFFIX = ".archive"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class SandboxConfiguration(_CamelModel):
    """Configuration read from a sandbox by the introspector."""
    default_user: Optional[str] = None
    users: List[str] = Field(default_factory=list)
    packages: List[str] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    services: List[str] = Field(default_factory=list)
    network: Dict[str, Any] = Field(default_factory=dict)
    systemd_enabled: bool = False


class SystemInfo(_CamelModel):
    """Facts about the sandbox kernel and the originating host."""
    kernel: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    host_platform: Optional[str] = None
    host_cpu_count: Optional[int] = None
    host_memory_bytes: Optional[int] = None


class FileManifestEntry(_CamelModel):
    """A file shipped inside a migration package."""
    name: str
    size_bytes: int
    checksum: str


class MigrationManifest(_CamelModel):
    """Immutable description of a migration package.

    Always anchored to a Full backup record so the package is
    self-contained.
    """
    migration_id: str
    source_sandbox_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    creator_principal: str
    origin_host: str
    backup_record_ref: str
    sandbox_configuration: SandboxConfiguration
    system_info: Optional[SystemInfo] = None
    file_manifest: List[FileManifestEntry] = Field(default_factory=list)

    @property
    def archive_name(self) -> str:
        return f"{safe_filename(self.source_sandbox_id)}{ARCHIVE_SUFFIX}"

    def file_entry(self, name: str) -> Optional[FileManifestEntry]:
        for entry in self.file_manifest:
            if entry.name == name:
                return entry
        return None

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class MigrationPackage(BaseModel):
    """A built migration package on local disk."""
    path: Path
    manifest: MigrationManifest
    compressed: bool = False


class DeploymentStatus(str, Enum):
    """Per-target deployment status."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class DeploymentResult(BaseModel):
    """Outcome of deploying a package to a single host."""
    target_host: str
    success: bool
    status: DeploymentStatus
    error: Optional[str] = None
    error_code: Optional[str] = None
    installed_sandbox_id: Optional[str] = None
    attempts: int = 0
    duration_seconds: Optional[float] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DeploymentReport(BaseModel):
    """Aggregated outcome of a batch deployment."""
    total: int
    succeeded: int
    failed: int
    skipped: int = 0
    cancelled: bool = False
    results: List[DeploymentResult] = Field(default_factory=list)

    @classmethod
    def from_results(cls, results: List[DeploymentResult], cancelled: bool = False) -> "DeploymentReport":
        return cls(
            total=len(results),
            succeeded=sum(1 for r in results if r.status == DeploymentStatus.SUCCEEDED),
            failed=sum(1 for r in results if r.status == DeploymentStatus.FAILED),
            skipped=sum(1 for r in results if r.status == DeploymentStatus.SKIPPED),
            cancelled=cancelled,
            results=results,
        )

    def result_for(self, host: str) -> Optional[DeploymentResult]:
        for result in self.results:
            if result.target_host == host:
                return result
        return None
