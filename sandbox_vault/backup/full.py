"""
Full backup engine.

Captures a whole sandbox through the snapshot adapter and registers a
root (Full) catalog record.
"""

from typing import Optional

from sandbox_vault.backup.base import BackupEngine
from sandbox_vault.core.exceptions import CaptureError
from sandbox_vault.models.records import BackupRecord, BackupType
from sandbox_vault.utils.helpers import format_bytes
from sandbox_vault.utils.logging import get_logger

logger = get_logger("backup.full")


class FullBackupEngine(BackupEngine):
    """Creates Full backups."""

    async def create_full_backup(self, sandbox_id: str, compress: Optional[bool] = None) -> BackupRecord:
        """
        Capture *sandbox_id* and register a Full record.

        Args:
            sandbox_id: Sandbox to capture
            compress: Gzip the archive; defaults to the engine setting

        Returns:
            The registered BackupRecord

        Raises:
            CaptureError: If the sandbox does not exist or capture fails.
                No record is created and no archive is left behind.
        """
        compress = self.compress if compress is None else compress

        async with self.locks.lock_for(sandbox_id):
            if not await self.adapter.exists(sandbox_id):
                raise CaptureError(
                    f"Sandbox not found: {sandbox_id}",
                    details={"sandbox_id": sandbox_id}
                )

            logger.info(f"Starting full backup of {sandbox_id}")
            created_at = self.clock()

            async def produce(sink):
                await self.adapter.capture(sandbox_id, sink)

            try:
                record = await self._store(
                    sandbox_id,
                    BackupType.FULL,
                    produce,
                    created_at=created_at,
                    compress=compress,
                )
            except CaptureError:
                logger.error(f"Full backup of {sandbox_id} failed during capture")
                raise
            except OSError as e:
                raise CaptureError(
                    f"Failed to write full backup of {sandbox_id}: {e}",
                    details={"sandbox_id": sandbox_id}
                ) from e

        logger.info(
            f"Full backup {record.id} of {sandbox_id} complete ({format_bytes(record.size_bytes)})"
        )
        return record
