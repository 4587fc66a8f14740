"""
Backup storage management with retention policies.

This module maps records to archive locations under the backup
directory, prunes old chains and reports storage statistics.
"""

from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sandbox_vault.backup.catalog import BackupCatalog
from sandbox_vault.models.records import BackupRecord, BackupType
from sandbox_vault.utils.helpers import safe_filename
from sandbox_vault.utils.logging import get_logger

logger = get_logger("backup.storage")

PARTIAL_SUFFIX = ".partial"


class RetentionPolicy:
    """Defines which backup chains to keep.

    A chain is judged by its newest record. The most recent chain of a
    sandbox is always retained.
    """

    def __init__(
        self,
        keep_chains: Optional[int] = None,
        max_age_days: Optional[int] = None
    ):
        if keep_chains is not None and keep_chains < 1:
            raise ValueError("keep_chains must be at least 1")
        self.keep_chains = keep_chains
        self.max_age_days = max_age_days

    def chains_to_remove(
        self,
        chains: List[List[BackupRecord]],
        now: Optional[datetime] = None
    ) -> List[List[BackupRecord]]:
        """Select chains to remove from a most-recent-first list."""
        now = now or datetime.now(UTC)
        doomed = []

        for index, chain in enumerate(chains):
            if index == 0:
                continue

            if self.keep_chains and index >= self.keep_chains:
                doomed.append(chain)
                continue

            newest = max(record.created_at for record in chain)
            if self.max_age_days is not None and now - newest > timedelta(days=self.max_age_days):
                doomed.append(chain)

        return doomed


class BackupStorage:
    """Archive locations, pruning and statistics for one backup directory."""

    def __init__(self, backup_dir: Union[str, Path], catalog: BackupCatalog):
        self.backup_dir = Path(backup_dir)
        self.catalog = catalog

    def sandbox_dir(self, sandbox_id: str) -> Path:
        return self.backup_dir / safe_filename(sandbox_id)

    def archive_path(
        self,
        sandbox_id: str,
        record_id: str,
        backup_type: BackupType,
        compressed: bool = False
    ) -> Path:
        """Return the archive location for a new record, creating its directory."""
        directory = self.sandbox_dir(sandbox_id)
        directory.mkdir(parents=True, exist_ok=True)
        suffix = ".tar.gz" if compressed else ".tar"
        return directory / f"{record_id}.{backup_type.value}{suffix}"

    async def prune(
        self,
        sandbox_id: str,
        policy: RetentionPolicy,
        now: Optional[datetime] = None
    ) -> List[str]:
        """
        Delete whole chains that the policy no longer retains.

        Returns:
            Ids of deleted records
        """
        removed: List[str] = []
        for chain in policy.chains_to_remove(self.catalog.chains(sandbox_id), now):
            removed.extend(await self.catalog.delete_record(chain[0].id, cascade=True))

        if removed:
            logger.info(f"Pruned {len(removed)} records of {sandbox_id}")
        return removed

    def stats(self) -> Dict[str, Any]:
        """Record counts and archive bytes per sandbox and per type."""
        stats: Dict[str, Any] = {
            "total_records": 0,
            "total_bytes": 0,
            "by_type": {t.value: {"count": 0, "bytes": 0} for t in BackupType},
            "sandboxes": {},
        }

        for record in self.catalog.list_records():
            stats["total_records"] += 1
            stats["total_bytes"] += record.size_bytes
            stats["by_type"][record.type.value]["count"] += 1
            stats["by_type"][record.type.value]["bytes"] += record.size_bytes

            sandbox = stats["sandboxes"].setdefault(record.sandbox_id, {
                "records": 0,
                "bytes": 0,
                "chains": 0,
                "latest": None,
            })
            sandbox["records"] += 1
            sandbox["bytes"] += record.size_bytes
            if record.type == BackupType.FULL:
                sandbox["chains"] += 1
            if sandbox["latest"] is None:
                sandbox["latest"] = record.created_at.isoformat()

        return stats

    def find_orphans(self) -> List[Path]:
        """Archive files under the backup directory with no catalog record."""
        if not self.backup_dir.exists():
            return []

        known = {Path(record.archive_path).resolve() for record in self.catalog.list_records()}
        orphans = []
        for path in sorted(self.backup_dir.rglob("*")):
            if path.is_file() and path.resolve() not in known:
                orphans.append(path)
        return orphans
