"""
Backup catalog: the durable registry of backup records.

Records form parent/child chains rooted at Full records. The catalog
verifies chain invariants when it loads, serializes every mutation per
sandbox, and persists through an injected ``CatalogStore`` with an
atomic write.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from sandbox_vault.backup.locks import SandboxLockRegistry
from sandbox_vault.core.exceptions import (
    CatalogCorruptError,
    CatalogError,
    DependencyError,
    RecordNotFoundError,
)
from sandbox_vault.models.records import BackupRecord, BackupType
from sandbox_vault.utils.helpers import atomic_write_bytes
from sandbox_vault.utils.logging import get_logger

CATALOG_FORMAT_VERSION = 1

logger = get_logger("backup.catalog")


class CatalogStore(ABC):
    """Persistence backend for the catalog's record list."""

    @abstractmethod
    def load(self) -> List[BackupRecord]:
        """Return every persisted record in insertion order."""
        pass

    @abstractmethod
    def save(self, records: List[BackupRecord]) -> None:
        """Replace the persisted record list atomically."""
        pass


class MemoryCatalogStore(CatalogStore):
    """In-process store, used by tests and throwaway catalogs."""

    def __init__(self, records: Optional[List[BackupRecord]] = None):
        self._records = list(records or [])
        self.save_count = 0

    def load(self) -> List[BackupRecord]:
        return list(self._records)

    def save(self, records: List[BackupRecord]) -> None:
        self._records = list(records)
        self.save_count += 1


class JsonCatalogStore(CatalogStore):
    """Store the catalog as a JSON document on local disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> List[BackupRecord]:
        if not self.path.exists():
            return []

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            raise CatalogCorruptError(
                f"Catalog file {self.path} is unreadable: {e}",
                details={"catalog_path": str(self.path)}
            ) from e

        if not isinstance(document, dict) or not isinstance(document.get("records"), list):
            raise CatalogCorruptError(
                f"Catalog file {self.path} has no record list",
                details={"catalog_path": str(self.path)}
            )

        version = document.get("version")
        if version != CATALOG_FORMAT_VERSION:
            raise CatalogCorruptError(
                f"Unsupported catalog version {version!r} in {self.path}",
                details={"catalog_path": str(self.path)}
            )

        records = []
        for index, raw in enumerate(document["records"]):
            try:
                records.append(BackupRecord.model_validate(raw))
            except PydanticValidationError as e:
                raise CatalogCorruptError(
                    f"Catalog entry {index} in {self.path} is invalid: {e}",
                    details={"catalog_path": str(self.path), "index": index}
                ) from e
        return records

    def save(self, records: List[BackupRecord]) -> None:
        document = {
            "version": CATALOG_FORMAT_VERSION,
            "records": [record.to_json_dict() for record in records],
        }
        atomic_write_bytes(self.path, json.dumps(document, indent=2).encode("utf-8"))


def verify_records(records: List[BackupRecord]) -> None:
    """
    Check chain invariants over a full record list.

    Raises:
        CatalogCorruptError: On duplicate ids, dangling or cross-sandbox
            parents, Incrementals whose parent chain does not end at a
            Full record, or cycles.
    """
    by_id: Dict[str, BackupRecord] = {}
    for record in records:
        if record.id in by_id:
            raise CatalogCorruptError(
                f"Duplicate record id {record.id}",
                details={"record_id": record.id}
            )
        by_id[record.id] = record

    for record in records:
        seen = {record.id}
        current = record
        while current.type == BackupType.INCREMENTAL:
            parent = by_id.get(current.parent_id)
            if parent is None:
                raise CatalogCorruptError(
                    f"Record {current.id} references missing parent {current.parent_id}",
                    details={"record_id": current.id, "sandbox_id": current.sandbox_id}
                )
            if parent.sandbox_id != current.sandbox_id:
                raise CatalogCorruptError(
                    f"Record {current.id} has a parent from sandbox {parent.sandbox_id}",
                    details={"record_id": current.id, "sandbox_id": current.sandbox_id}
                )
            if parent.id in seen:
                raise CatalogCorruptError(
                    f"Parent cycle detected at record {parent.id}",
                    details={"record_id": parent.id, "sandbox_id": parent.sandbox_id}
                )
            seen.add(parent.id)
            current = parent


class BackupCatalog:
    """
    Registry of backup records and their chains.

    The catalog is the single source of truth for which archives exist.
    Reads are served from memory; every mutation is persisted before it
    becomes visible.
    """

    def __init__(self, store: CatalogStore, locks: Optional[SandboxLockRegistry] = None):
        self.store = store
        self.locks = locks or SandboxLockRegistry()
        records = store.load()
        verify_records(records)
        self._records: Dict[str, BackupRecord] = {record.id: record for record in records}
        logger.debug(f"Loaded catalog with {len(self._records)} records")

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def _most_recent_first(self) -> List[BackupRecord]:
        # Stable on ties: the later-inserted record sorts first.
        indexed = list(enumerate(self._records.values()))
        indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [record for _, record in indexed]

    async def _persist(self, records: Dict[str, BackupRecord]) -> None:
        await asyncio.to_thread(self.store.save, list(records.values()))

    async def add_record(self, record: BackupRecord) -> str:
        """
        Register a new record.

        Args:
            record: Record to append

        Returns:
            The record id

        Raises:
            CatalogError: If the id is taken or the parent is from another sandbox
            RecordNotFoundError: If an Incremental's parent does not exist
        """
        async with self.locks.lock_for(record.sandbox_id):
            if record.id in self._records:
                raise CatalogError(
                    f"Record {record.id} already exists",
                    details={"record_id": record.id, "sandbox_id": record.sandbox_id}
                )

            if record.type == BackupType.INCREMENTAL:
                parent = self._records.get(record.parent_id)
                if parent is None:
                    raise RecordNotFoundError(
                        f"Parent record {record.parent_id} not found",
                        details={"record_id": record.parent_id, "sandbox_id": record.sandbox_id}
                    )
                if parent.sandbox_id != record.sandbox_id:
                    raise CatalogError(
                        f"Parent record {parent.id} belongs to sandbox {parent.sandbox_id}",
                        details={"record_id": record.id, "sandbox_id": record.sandbox_id}
                    )

            updated = dict(self._records)
            updated[record.id] = record
            await self._persist(updated)
            self._records = updated

        logger.info(f"Registered {record.type.value} record {record.id} for {record.sandbox_id}")
        return record.id

    def list_records(
        self,
        sandbox_id: Optional[str] = None,
        type: Optional[BackupType] = None
    ) -> Iterator[BackupRecord]:
        """Yield matching records, most recent first."""
        for record in self._most_recent_first():
            if sandbox_id is not None and record.sandbox_id != sandbox_id:
                continue
            if type is not None and record.type != type:
                continue
            yield record

    def get_record(self, record_id: str) -> BackupRecord:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(
                f"Backup record {record_id} not found",
                details={"record_id": record_id}
            )
        return record

    def latest_record(self, sandbox_id: str) -> Optional[BackupRecord]:
        return next(self.list_records(sandbox_id), None)

    def latest_full(self, sandbox_id: str) -> Optional[BackupRecord]:
        return next(self.list_records(sandbox_id, BackupType.FULL), None)

    def children(self, record_id: str) -> List[BackupRecord]:
        return [record for record in self._records.values() if record.parent_id == record_id]

    def descendants(self, record_id: str) -> List[BackupRecord]:
        """All records depending on *record_id*, deepest first."""
        result = []
        for child in self.children(record_id):
            result.extend(self.descendants(child.id))
            result.append(child)
        return result

    def resolve_chain(self, record_id: str) -> List[BackupRecord]:
        """
        Return the lineage of a record ordered from its Full root to itself.

        Raises:
            RecordNotFoundError: If *record_id* is unknown
            CatalogCorruptError: If the parent walk does not end at a Full record
        """
        record = self.get_record(record_id)
        chain = [record]
        seen = {record.id}

        while chain[-1].type == BackupType.INCREMENTAL:
            parent = self._records.get(chain[-1].parent_id)
            if parent is None or parent.id in seen:
                raise CatalogCorruptError(
                    f"Chain of record {record_id} is broken at {chain[-1].id}",
                    details={"record_id": record_id, "sandbox_id": record.sandbox_id}
                )
            seen.add(parent.id)
            chain.append(parent)

        chain.reverse()
        return chain

    def chains(self, sandbox_id: str) -> List[List[BackupRecord]]:
        """
        Group a sandbox's records into chains.

        Each chain is a Full record followed by its descendants in creation
        order. Chains are ordered by their newest record, most recent first.
        """
        chains = []
        for full in self.list_records(sandbox_id, BackupType.FULL):
            members = [full] + sorted(self.descendants(full.id), key=lambda r: r.created_at)
            chains.append(members)

        chains.sort(key=lambda members: max(r.created_at for r in members), reverse=True)
        return chains

    async def delete_record(self, record_id: str, cascade: bool = False) -> List[str]:
        """
        Delete a record and its archive file.

        Args:
            record_id: Record to delete
            cascade: Also delete every record that depends on it

        Returns:
            Ids of deleted records, dependents first

        Raises:
            RecordNotFoundError: If *record_id* is unknown
            DependencyError: If dependents exist and *cascade* is False
        """
        record = self.get_record(record_id)

        async with self.locks.lock_for(record.sandbox_id):
            record = self.get_record(record_id)
            dependents = self.descendants(record_id)

            if dependents and not cascade:
                raise DependencyError(
                    f"Record {record_id} has {len(dependents)} dependent record(s)",
                    dependents=[d.id for d in dependents],
                    details={"record_id": record_id, "sandbox_id": record.sandbox_id}
                )

            doomed = dependents + [record]
            updated = {rid: r for rid, r in self._records.items() if rid not in {d.id for d in doomed}}
            await self._persist(updated)
            self._records = updated

            for removed in doomed:
                Path(removed.archive_path).unlink(missing_ok=True)
                logger.info(f"Deleted record {removed.id} of {removed.sandbox_id}")

        return [removed.id for removed in doomed]
