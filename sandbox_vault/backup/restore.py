"""
Restore orchestrator.

Replays a record's chain (one Full archive followed by its Incrementals)
into a new sandbox. The restore is a state machine:

    pending -> validating_chain -> extracting -> applying -> verifying
            -> completed | failed | timed_out

A failed chain validation aborts before any sandbox is created. Failures
after extraction starts leave the partially restored sandbox in place for
inspection; cleanup is the caller's decision.
"""

import asyncio
import tarfile
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import List, Optional, Sequence, Union

from sandbox_vault.adapters.base import SnapshotAdapter
from sandbox_vault.backup.archive import decompress_to
from sandbox_vault.backup.catalog import BackupCatalog
from sandbox_vault.backup.locks import SandboxLockRegistry
from sandbox_vault.backup.validator import IntegrityValidator
from sandbox_vault.core.exceptions import (
    CaptureError,
    ChainIntegrityError,
    LivenessError,
    RestoreError,
    RestoreTimeoutError,
    SandboxVaultError,
)
from sandbox_vault.models.records import BackupRecord
from sandbox_vault.utils.helpers import format_duration
from sandbox_vault.utils.logging import get_logger

logger = get_logger("restore.orchestrator")


class RestoreState(str, Enum):
    """States of a restore."""
    PENDING = "pending"
    VALIDATING_CHAIN = "validating_chain"
    EXTRACTING = "extracting"
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset({RestoreState.COMPLETED, RestoreState.FAILED, RestoreState.TIMED_OUT})


@dataclass
class StateTransition:
    """A state entered during a restore."""
    state: RestoreState
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class RestoreResult:
    """Outcome and history of a restore."""
    target_record_id: str
    new_sandbox_id: str
    chain: List[str] = field(default_factory=list)
    state: RestoreState = RestoreState.PENDING
    history: List[StateTransition] = field(default_factory=list)
    files_applied: int = 0
    integrity_failures: List[str] = field(default_factory=list)
    error: Optional[SandboxVaultError] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.history:
            self.history.append(StateTransition(self.state, self.started_at))

    @property
    def success(self) -> bool:
        return self.state == RestoreState.COMPLETED

    @property
    def sandbox_created(self) -> bool:
        """Whether the restore got far enough to create the new sandbox."""
        return any(t.state == RestoreState.APPLYING for t in self.history)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def states(self) -> List[RestoreState]:
        return [t.state for t in self.history]

    def transition(self, state: RestoreState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Restore already finished in state {self.state.value}")
        self.state = state
        self.history.append(StateTransition(state))
        if state in TERMINAL_STATES:
            self.finished_at = self.history[-1].timestamp

    def raise_for_state(self) -> None:
        """Re-raise the recorded error unless the restore completed."""
        if self.error is not None and not self.success:
            raise self.error


def restored_path(member_name: str) -> str:
    """Map a tar member name to an absolute sandbox path, rejecting traversal."""
    name = member_name[2:] if member_name.startswith("./") else member_name
    path = PurePosixPath("/") / name.lstrip("/")
    if ".." in path.parts:
        raise RestoreError(f"Archive member escapes the sandbox root: {member_name}")
    return str(path)


class RestoreOrchestrator:
    """Restores backup chains into new sandboxes."""

    def __init__(
        self,
        adapter: SnapshotAdapter,
        catalog: BackupCatalog,
        validator: IntegrityValidator,
        staging_dir: Optional[Union[str, Path]] = None,
        liveness_command: Sequence[str] = ("echo", "ok"),
        liveness_timeout: float = 60.0,
        default_timeout_minutes: float = 30.0,
        locks: Optional[SandboxLockRegistry] = None
    ):
        self.adapter = adapter
        self.catalog = catalog
        self.validator = validator
        self.staging_dir = Path(staging_dir) if staging_dir else None
        self.liveness_command = list(liveness_command)
        self.liveness_timeout = liveness_timeout
        self.default_timeout_minutes = default_timeout_minutes
        self.locks = locks or catalog.locks

    async def restore(
        self,
        target_record_id: str,
        new_sandbox_id: str,
        timeout_minutes: Optional[float] = None,
        force: bool = False
    ) -> RestoreResult:
        """
        Restore *target_record_id* into a new sandbox named *new_sandbox_id*.

        Args:
            target_record_id: Record whose point in time is restored
            new_sandbox_id: Name of the sandbox to create
            timeout_minutes: Overall timeout; defaults to the orchestrator setting
            force: Continue past chain integrity failures

        Returns:
            RestoreResult in state COMPLETED, FAILED or TIMED_OUT

        Raises:
            RecordNotFoundError: If *target_record_id* is unknown
        """
        chain = self.catalog.resolve_chain(target_record_id)
        result = RestoreResult(
            target_record_id=target_record_id,
            new_sandbox_id=new_sandbox_id,
            chain=[record.id for record in chain],
        )
        timeout = (timeout_minutes or self.default_timeout_minutes) * 60

        logger.info(
            f"Restoring {target_record_id} ({len(chain)} archives) into {new_sandbox_id}"
        )

        async with self.locks.lock_for(new_sandbox_id):
            deadline = asyncio.timeout(timeout)
            try:
                async with deadline:
                    await self._run(chain, result, force)
            except TimeoutError:
                if not deadline.expired():
                    raise
                result.error = RestoreTimeoutError(
                    f"Restore of {target_record_id} into {new_sandbox_id} timed out "
                    f"after {format_duration(timeout)} in state {result.state.value}",
                    details={"record_id": target_record_id, "sandbox_id": new_sandbox_id}
                )
                result.transition(RestoreState.TIMED_OUT)
                logger.error(str(result.error))
            except SandboxVaultError as e:
                e.details.setdefault("record_id", target_record_id)
                e.details.setdefault("sandbox_id", new_sandbox_id)
                result.error = e
                result.transition(RestoreState.FAILED)
                logger.error(f"Restore into {new_sandbox_id} failed: {e}")

        if result.success:
            logger.info(
                f"Restore into {new_sandbox_id} completed in {format_duration(result.duration_seconds)}"
            )
        return result

    async def _run(self, chain: List[BackupRecord], result: RestoreResult, force: bool) -> None:
        new_sandbox_id = result.new_sandbox_id

        if await self.adapter.exists(new_sandbox_id):
            raise RestoreError(
                f"Sandbox {new_sandbox_id} already exists",
                details={"sandbox_id": new_sandbox_id}
            )

        result.transition(RestoreState.VALIDATING_CHAIN)
        outcomes = await self.validator.validate_chain(chain)
        failures = [outcome.record_id for outcome in outcomes if not outcome]
        if failures:
            if not force:
                raise ChainIntegrityError(
                    f"{len(failures)} archive(s) in the chain failed validation",
                    failed_records=failures,
                    details={"record_id": result.target_record_id}
                )
            result.integrity_failures = failures
            logger.warning(f"Forcing restore past integrity failures: {', '.join(failures)}")

        full, increments = chain[0], chain[1:]

        result.transition(RestoreState.EXTRACTING)
        with tempfile.TemporaryDirectory(prefix="restore-", dir=self.staging_dir) as staging:
            try:
                plain_archive = await asyncio.to_thread(
                    decompress_to,
                    full.archive_path,
                    Path(staging) / "full.tar"
                )
                await self.adapter.materialize(new_sandbox_id, plain_archive)
            except (OSError, CaptureError) as e:
                raise RestoreError(
                    f"Failed to materialize {new_sandbox_id} from {full.id}: {e}",
                    details={"record_id": full.id, "sandbox_id": new_sandbox_id}
                ) from e

        result.transition(RestoreState.APPLYING)
        for record in increments:
            result.files_applied += await self._apply_increment(record, new_sandbox_id)

        result.transition(RestoreState.VERIFYING)
        await self._probe_liveness(new_sandbox_id)

        result.transition(RestoreState.COMPLETED)

    async def _apply_increment(self, record: BackupRecord, sandbox_id: str) -> int:
        """Write every file of an incremental archive into the sandbox, overwriting."""
        applied = 0
        try:
            with tarfile.open(record.archive_path, mode="r|*") as tar:
                for member in tar:
                    if not member.isfile():
                        continue
                    data = tar.extractfile(member).read()
                    await self.adapter.write_file(
                        sandbox_id,
                        restored_path(member.name),
                        data,
                        mode=member.mode,
                        mtime=member.mtime,
                    )
                    applied += 1
        except (OSError, tarfile.TarError, CaptureError) as e:
            raise RestoreError(
                f"Failed to apply {record.id} to {sandbox_id}: {e}",
                details={"record_id": record.id, "sandbox_id": sandbox_id}
            ) from e

        logger.debug(f"Applied {applied} files from {record.id} to {sandbox_id}")
        return applied

    async def _probe_liveness(self, sandbox_id: str) -> None:
        try:
            probe = await self.adapter.run_command(
                sandbox_id,
                self.liveness_command,
                timeout=self.liveness_timeout
            )
        except TimeoutError as e:
            raise LivenessError(
                f"Liveness probe timed out in {sandbox_id}",
                details={"sandbox_id": sandbox_id}
            ) from e
        except CaptureError as e:
            raise LivenessError(
                f"Liveness probe could not run in {sandbox_id}: {e.message}",
                details={"sandbox_id": sandbox_id}
            ) from e

        if not probe.ok:
            raise LivenessError(
                f"Liveness probe exited with {probe.exit_code} in {sandbox_id}: {probe.stderr.strip()}",
                details={"sandbox_id": sandbox_id, "exit_code": probe.exit_code}
            )
