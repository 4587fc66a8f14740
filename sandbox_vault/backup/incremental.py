"""
Incremental backup engine.

Detects files modified after a parent record was created and archives
only those files, registering a record chained to the parent.

Change detection compares file modification times against the parent's
``created_at``; it does not hash contents. Clock skew between the
sandbox and the host, or a ``touch`` without a content change, can make
it miss or over-report files.
"""

import io
import tarfile
from typing import List, Optional

from sandbox_vault.adapters.base import SandboxFile
from sandbox_vault.backup.base import BackupEngine
from sandbox_vault.core.exceptions import CaptureError, CatalogError, NoParentError
from sandbox_vault.models.records import BackupOutcome, BackupRecord, BackupStatus, BackupType
from sandbox_vault.utils.logging import get_logger

logger = get_logger("backup.incremental")


def changed_since(files: List[SandboxFile], parent: BackupRecord) -> List[SandboxFile]:
    """Files whose mtime is strictly newer than the parent's creation time."""
    threshold = parent.created_at.timestamp()
    return [f for f in files if f.mtime > threshold]


class _NothingPackaged(Exception):
    pass


def member_name(path: str) -> str:
    return path.lstrip("/")


class IncrementalBackupEngine(BackupEngine):
    """Creates Incremental backups chained to an existing record."""

    def _select_parent(self, sandbox_id: str, parent_id: Optional[str]) -> BackupRecord:
        if parent_id is None:
            parent = self.catalog.latest_record(sandbox_id)
            if parent is None:
                raise NoParentError(
                    f"No full backup exists for {sandbox_id}",
                    details={"sandbox_id": sandbox_id}
                )
            return parent

        parent = self.catalog.get_record(parent_id)
        if parent.sandbox_id != sandbox_id:
            raise CatalogError(
                f"Record {parent_id} belongs to sandbox {parent.sandbox_id}, not {sandbox_id}",
                details={"sandbox_id": sandbox_id, "record_id": parent_id}
            )
        return parent

    async def create_incremental_backup(
        self,
        sandbox_id: str,
        parent_id: Optional[str] = None,
        compress: Optional[bool] = None
    ) -> BackupOutcome:
        """
        Archive files changed since a parent record.

        Args:
            sandbox_id: Sandbox to back up
            parent_id: Parent record; defaults to the sandbox's most recent record
            compress: Gzip the archive; defaults to the engine setting

        Returns:
            BackupOutcome with status CREATED and the new record, or status
            SKIPPED when nothing changed (no record is created)

        Raises:
            NoParentError: If the sandbox has no backup to chain from
            RecordNotFoundError: If *parent_id* is unknown
            CaptureError: If scanning or reading the sandbox fails
        """
        compress = self.compress if compress is None else compress

        async with self.locks.lock_for(sandbox_id):
            parent = self._select_parent(sandbox_id, parent_id)

            if not await self.adapter.exists(sandbox_id):
                raise CaptureError(
                    f"Sandbox not found: {sandbox_id}",
                    details={"sandbox_id": sandbox_id, "record_id": parent.id}
                )

            created_at = self.clock()
            files = await self.adapter.scan_files(sandbox_id)
            changed = changed_since(files, parent)

            if not changed:
                logger.info(f"No changes in {sandbox_id} since {parent.id}, skipping")
                return BackupOutcome(
                    status=BackupStatus.SKIPPED,
                    sandbox_id=sandbox_id,
                    parent_id=parent.id,
                    reason="no files changed since parent",
                )

            logger.info(f"Backing up {len(changed)} changed files of {sandbox_id} on top of {parent.id}")
            packaged: List[str] = []

            async def produce(sink):
                with tarfile.open(fileobj=sink, mode="w|") as tar:
                    for entry in changed:
                        try:
                            data = await self.adapter.read_file(sandbox_id, entry.path)
                        except FileNotFoundError:
                            logger.debug(f"{entry.path} vanished before it could be archived")
                            continue
                        info = tarfile.TarInfo(name=member_name(entry.path))
                        info.size = len(data)
                        info.mode = entry.mode
                        info.mtime = entry.mtime
                        tar.addfile(info, io.BytesIO(data))
                        packaged.append(entry.path)
                if not packaged:
                    raise _NothingPackaged()

            try:
                record = await self._store(
                    sandbox_id,
                    BackupType.INCREMENTAL,
                    produce,
                    created_at=created_at,
                    compress=compress,
                    parent_id=parent.id,
                    changed_files=packaged,
                )
            except _NothingPackaged:
                logger.info(f"Every changed file of {sandbox_id} vanished, skipping")
                return BackupOutcome(
                    status=BackupStatus.SKIPPED,
                    sandbox_id=sandbox_id,
                    parent_id=parent.id,
                    reason="changed files vanished before they could be archived",
                )
            except OSError as e:
                raise CaptureError(
                    f"Failed to write incremental backup of {sandbox_id}: {e}",
                    details={"sandbox_id": sandbox_id, "record_id": parent.id}
                ) from e

        logger.info(f"Incremental backup {record.id} of {sandbox_id} complete")
        return BackupOutcome(
            status=BackupStatus.CREATED,
            sandbox_id=sandbox_id,
            parent_id=parent.id,
            record=record,
            changed_file_count=record.changed_file_count,
        )
