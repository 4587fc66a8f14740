"""
Backup record models for Sandbox Vault.

This module defines the Pydantic models stored in the backup catalog
and the outcome returned by the backup engines.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class BackupType(str, Enum):
    """Backup record types."""
    FULL = "full"
    INCREMENTAL = "incremental"


class BackupStatus(str, Enum):
    """Outcome of a backup request."""
    CREATED = "created"
    SKIPPED = "skipped"


class BackupRecord(BaseModel):
    """A single archive registered in the catalog.

    Records are immutable once created. Incremental records point at
    their parent; following parents always ends at a Full record of the
    same sandbox.
    """
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    sandbox_id: str = Field(..., min_length=1)
    type: BackupType
    parent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    size_bytes: int = Field(default=0, ge=0)
    checksum: str
    archive_path: str
    changed_file_count: Optional[int] = Field(default=None, ge=0)
    compressed: bool = False

    @field_validator('created_at')
    @classmethod
    def created_at_is_aware(cls, v):
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @model_validator(mode='after')
    def parent_matches_type(self):
        if self.type == BackupType.INCREMENTAL:
            if not self.parent_id:
                raise ValueError("Incremental records require a parent_id")
            if self.changed_file_count is None:
                raise ValueError("Incremental records require a changed_file_count")
        else:
            if self.parent_id is not None:
                raise ValueError("Full records cannot have a parent_id")
            if self.changed_file_count is not None:
                raise ValueError("Full records do not carry a changed_file_count")
        return self

    @property
    def is_full(self) -> bool:
        return self.type == BackupType.FULL

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class BackupOutcome(BaseModel):
    """Result of an incremental backup request."""
    status: BackupStatus
    sandbox_id: str
    parent_id: Optional[str] = None
    record: Optional[BackupRecord] = None
    changed_file_count: int = 0
    reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.status == BackupStatus.SKIPPED
