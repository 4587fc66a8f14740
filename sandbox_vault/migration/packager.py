"""
Migration packager.

Bundles a Full backup record with the sandbox's introspected
configuration into a self-contained package directory:

    manifest.json
    <sandboxId>.archive
    install.script
    validate.script
    README

and optionally compresses the directory into a single ``.tar.gz``.
"""

import asyncio
import getpass
import json
import shutil
import socket
import tarfile
from pathlib import Path
from typing import List, Optional, Sequence, Union

from sandbox_vault.adapters.base import ConfigIntrospector
from sandbox_vault.backup.catalog import BackupCatalog
from sandbox_vault.backup.full import FullBackupEngine
from sandbox_vault.core.exceptions import PackageError
from sandbox_vault.migration.scripts import (
    build_install_script,
    build_validate_script,
    render_readme,
)
from sandbox_vault.models.migration import (
    INSTALL_SCRIPT_FILENAME,
    MANIFEST_FILENAME,
    README_FILENAME,
    VALIDATE_SCRIPT_FILENAME,
    FileManifestEntry,
    MigrationManifest,
    MigrationPackage,
)
from sandbox_vault.models.records import BackupRecord
from sandbox_vault.utils.helpers import (
    CHUNK_SIZE,
    HashingWriter,
    calculate_file_checksum,
    generate_migration_id,
    save_config_file,
)
from sandbox_vault.utils.logging import get_logger

logger = get_logger("migration.packager")

PACKAGE_SUFFIX = ".tar.gz"


def copy_with_checksum(source: Path, destination: Path, algorithm: str = "sha256") -> tuple:
    """Copy a file and hash it in the same pass. Returns (checksum, size)."""
    with open(source, "rb") as src, open(destination, "wb") as dst:
        hasher = HashingWriter(dst, algorithm)
        shutil.copyfileobj(src, hasher, CHUNK_SIZE)
    return hasher.hexdigest(), hasher.bytes_written


def current_principal() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


class MigrationPackager:
    """Builds migration packages anchored to a Full backup record."""

    def __init__(
        self,
        catalog: BackupCatalog,
        full_engine: FullBackupEngine,
        introspector: ConfigIntrospector,
        package_dir: Union[str, Path],
        checksum_algorithm: str = "sha256",
        probe_command: Sequence[str] = ("echo", "ok"),
        origin_host: Optional[str] = None
    ):
        self.catalog = catalog
        self.full_engine = full_engine
        self.introspector = introspector
        self.package_dir = Path(package_dir)
        self.checksum_algorithm = checksum_algorithm
        self.probe_command = list(probe_command)
        self.origin_host = origin_host or socket.gethostname()

    async def _ensure_full_backup(self, sandbox_id: str, fresh_snapshot: bool) -> BackupRecord:
        if not fresh_snapshot:
            record = self.catalog.latest_full(sandbox_id)
            if record is not None and Path(record.archive_path).is_file():
                logger.info(f"Packaging existing full backup {record.id} of {sandbox_id}")
                return record
            if record is not None:
                logger.warning(f"Archive of {record.id} is missing, taking a fresh full backup")

        return await self.full_engine.create_full_backup(sandbox_id)

    async def create_package(
        self,
        sandbox_id: str,
        include_system_info: bool = True,
        compress: bool = False,
        fresh_snapshot: bool = False,
        output_dir: Optional[Union[str, Path]] = None,
        creator: Optional[str] = None
    ) -> MigrationPackage:
        """
        Build a migration package for *sandbox_id*.

        Args:
            sandbox_id: Sandbox to package
            include_system_info: Record kernel, OS and host facts in the manifest
            compress: Produce a single ``.tar.gz`` instead of a directory
            fresh_snapshot: Take a new Full backup even if one exists
            output_dir: Parent directory for the package; defaults to the package dir
            creator: Principal recorded in the manifest; defaults to the current user

        Returns:
            MigrationPackage pointing at the package directory or archive

        Raises:
            CaptureError: If a Full backup had to be taken and failed
            PackageError: If any packaging step fails; partial output is removed
        """
        record = await self._ensure_full_backup(sandbox_id, fresh_snapshot)

        migration_id = generate_migration_id(sandbox_id)
        parent_dir = Path(output_dir) if output_dir else self.package_dir
        package_path = parent_dir / migration_id
        archive_file = parent_dir / f"{migration_id}{PACKAGE_SUFFIX}"

        logger.info(f"Building migration package {migration_id} for {sandbox_id}")

        if package_path.exists() or archive_file.exists():
            raise PackageError(
                f"Package output already exists: {package_path}",
                details={"sandbox_id": sandbox_id, "record_id": record.id}
            )

        try:
            parent_dir.mkdir(parents=True, exist_ok=True)
            package_path.mkdir()
            manifest = await self._build(
                package_path,
                migration_id,
                sandbox_id,
                record,
                include_system_info,
                creator
            )
            if compress:
                await asyncio.to_thread(self._compress, package_path, archive_file)
                shutil.rmtree(package_path)
        except OSError as e:
            self._remove_partial(package_path, archive_file)
            raise PackageError(
                f"Failed to build migration package for {sandbox_id}: {e}",
                details={"sandbox_id": sandbox_id, "record_id": record.id}
            ) from e
        except BaseException:
            self._remove_partial(package_path, archive_file)
            raise

        result_path = archive_file if compress else package_path
        logger.info(f"Migration package written to {result_path}")
        return MigrationPackage(path=result_path, manifest=manifest, compressed=compress)

    async def _build(
        self,
        package_path: Path,
        migration_id: str,
        sandbox_id: str,
        record: BackupRecord,
        include_system_info: bool,
        creator: Optional[str]
    ) -> MigrationManifest:
        configuration = await self.introspector.read_configuration(sandbox_id)
        system_info = await self.introspector.system_info(sandbox_id) if include_system_info else None

        manifest = MigrationManifest(
            migration_id=migration_id,
            source_sandbox_id=sandbox_id,
            creator_principal=creator or current_principal(),
            origin_host=self.origin_host,
            backup_record_ref=record.id,
            sandbox_configuration=configuration,
            system_info=system_info,
        )

        archive_path = package_path / manifest.archive_name
        checksum, size = await asyncio.to_thread(
            copy_with_checksum,
            Path(record.archive_path),
            archive_path,
            self.checksum_algorithm
        )
        if checksum != record.checksum:
            raise PackageError(
                f"Archive of {record.id} does not match its recorded checksum",
                details={"sandbox_id": sandbox_id, "record_id": record.id}
            )

        save_config_file(build_install_script(manifest), package_path / INSTALL_SCRIPT_FILENAME)
        save_config_file(
            build_validate_script(manifest, self.probe_command),
            package_path / VALIDATE_SCRIPT_FILENAME
        )
        (package_path / README_FILENAME).write_text(render_readme(manifest, size), encoding="utf-8")

        entries: List[FileManifestEntry] = [
            FileManifestEntry(name=manifest.archive_name, size_bytes=size, checksum=checksum)
        ]
        for name in (INSTALL_SCRIPT_FILENAME, VALIDATE_SCRIPT_FILENAME, README_FILENAME):
            path = package_path / name
            entries.append(FileManifestEntry(
                name=name,
                size_bytes=path.stat().st_size,
                checksum=calculate_file_checksum(path, self.checksum_algorithm),
            ))

        manifest = manifest.model_copy(update={"file_manifest": entries})
        (package_path / MANIFEST_FILENAME).write_text(
            json.dumps(manifest.to_json_dict(), indent=2),
            encoding="utf-8"
        )
        return manifest

    @staticmethod
    def _remove_partial(package_path: Path, archive_file: Path) -> None:
        shutil.rmtree(package_path, ignore_errors=True)
        archive_file.unlink(missing_ok=True)

    @staticmethod
    def _compress(package_path: Path, archive_file: Path) -> None:
        with tarfile.open(archive_file, "w:gz") as tar:
            tar.add(str(package_path), arcname=package_path.name)
