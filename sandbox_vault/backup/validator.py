"""
Integrity validator for backup archives.

Recomputes archive checksums and compares them with the values recorded
in the catalog. Validation is read-only: it never mutates the catalog
and never raises for a bad archive, so audits run to completion.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from sandbox_vault.backup.catalog import BackupCatalog
from sandbox_vault.models.records import BackupRecord
from sandbox_vault.utils.helpers import calculate_file_checksum
from sandbox_vault.utils.logging import get_logger

logger = get_logger("integrity.validator")


class ValidationReason(str, Enum):
    """Why an archive passed or failed validation."""
    OK = "ok"
    MISSING_FILE = "missing_file"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    UNREADABLE = "unreadable"


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating one archive. Truthy only when valid."""
    archive_path: str
    reason: ValidationReason
    expected_checksum: str
    actual_checksum: Optional[str] = None
    record_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.reason == ValidationReason.OK

    def __bool__(self) -> bool:
        return self.valid


class IntegrityValidator:
    """Validates archives against their recorded checksums."""

    def __init__(self, algorithm: str = "sha256"):
        self.algorithm = algorithm

    async def validate(
        self,
        archive_path: Union[str, Path],
        expected_checksum: str,
        record_id: Optional[str] = None
    ) -> ValidationOutcome:
        """
        Recompute an archive's checksum and compare it.

        Args:
            archive_path: Archive file to check
            expected_checksum: Checksum recorded when the archive was written
            record_id: Optional record id carried into the outcome

        Returns:
            ValidationOutcome; a missing file yields reason MISSING_FILE
        """
        archive_path = Path(archive_path)
        base = {
            "archive_path": str(archive_path),
            "expected_checksum": expected_checksum,
            "record_id": record_id,
        }

        if not archive_path.is_file():
            logger.warning(f"Archive missing: {archive_path}")
            return ValidationOutcome(reason=ValidationReason.MISSING_FILE, **base)

        try:
            actual = await asyncio.to_thread(calculate_file_checksum, archive_path, self.algorithm)
        except OSError as e:
            logger.warning(f"Archive unreadable: {archive_path}: {e}")
            return ValidationOutcome(reason=ValidationReason.UNREADABLE, error=str(e), **base)

        if actual != expected_checksum:
            logger.warning(f"Checksum mismatch for {archive_path}")
            return ValidationOutcome(
                reason=ValidationReason.CHECKSUM_MISMATCH,
                actual_checksum=actual,
                **base
            )

        return ValidationOutcome(reason=ValidationReason.OK, actual_checksum=actual, **base)

    async def validate_record(self, record: BackupRecord) -> ValidationOutcome:
        return await self.validate(record.archive_path, record.checksum, record_id=record.id)

    async def validate_chain(self, records: List[BackupRecord]) -> List[ValidationOutcome]:
        """Validate every archive of a chain, in chain order."""
        return [await self.validate_record(record) for record in records]

    async def audit(
        self,
        catalog: BackupCatalog,
        sandbox_id: Optional[str] = None
    ) -> Dict[str, ValidationOutcome]:
        """Validate every record in the catalog, continuing past failures."""
        outcomes = {}
        for record in list(catalog.list_records(sandbox_id)):
            outcomes[record.id] = await self.validate_record(record)

        failed = sum(1 for outcome in outcomes.values() if not outcome)
        logger.info(f"Audited {len(outcomes)} records, {failed} failed")
        return outcomes
