"""
Shared machinery for the Full and Incremental backup engines.
"""

from abc import ABC
from datetime import datetime, UTC
from typing import Callable, List, Optional

from sandbox_vault.adapters.base import SnapshotAdapter
from sandbox_vault.backup.archive import ArchiveProducer, write_archive
from sandbox_vault.backup.catalog import BackupCatalog
from sandbox_vault.backup.storage import PARTIAL_SUFFIX, BackupStorage
from sandbox_vault.models.records import BackupRecord, BackupType
from sandbox_vault.utils.helpers import generate_record_id

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class BackupEngine(ABC):
    """Base class for engines that write one archive and register one record."""

    def __init__(
        self,
        adapter: SnapshotAdapter,
        catalog: BackupCatalog,
        storage: BackupStorage,
        checksum_algorithm: str = "sha256",
        compress: bool = False,
        clock: Optional[Clock] = None
    ):
        self.adapter = adapter
        self.catalog = catalog
        self.storage = storage
        self.checksum_algorithm = checksum_algorithm
        self.compress = compress
        self.clock = clock or utc_now

    @property
    def locks(self):
        return self.catalog.locks

    async def _store(
        self,
        sandbox_id: str,
        backup_type: BackupType,
        producer: ArchiveProducer,
        created_at: datetime,
        compress: bool,
        parent_id: Optional[str] = None,
        changed_files: Optional[List[str]] = None
    ) -> BackupRecord:
        """
        Write an archive and register its record, all or nothing.

        The archive is streamed to a ``.partial`` file and renamed once
        complete. *changed_files* is read after the producer finishes, so a
        producer may fill it while it streams. Any failure removes the
        archive and leaves the catalog untouched.
        """
        record_id = generate_record_id()
        final_path = self.storage.archive_path(sandbox_id, record_id, backup_type, compress)
        partial_path = final_path.with_name(final_path.name + PARTIAL_SUFFIX)

        try:
            checksum, size = await write_archive(
                partial_path,
                producer,
                compress=compress,
                algorithm=self.checksum_algorithm
            )
            partial_path.replace(final_path)

            record = BackupRecord(
                id=record_id,
                sandbox_id=sandbox_id,
                type=backup_type,
                parent_id=parent_id,
                created_at=created_at,
                size_bytes=size,
                checksum=checksum,
                archive_path=str(final_path),
                changed_file_count=len(changed_files) if changed_files is not None else None,
                compressed=compress,
            )
            await self.catalog.add_record(record)
        except BaseException:
            partial_path.unlink(missing_ok=True)
            final_path.unlink(missing_ok=True)
            raise

        return record
