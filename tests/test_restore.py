"""
Unit tests for the restore orchestrator.

Tests chain replay, integrity gating, liveness verification and
timeouts.
"""

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from sandbox_vault.adapters.directory import DirectorySnapshotAdapter
from sandbox_vault.backup.restore import (
    RestoreOrchestrator,
    RestoreResult,
    RestoreState,
    restored_path,
)
from sandbox_vault.core.exceptions import (
    ChainIntegrityError,
    LivenessError,
    RecordNotFoundError,
    RestoreError,
    RestoreTimeoutError,
)

from conftest import BASE_TIME, modify_file

HAPPY_PATH = [
    RestoreState.PENDING,
    RestoreState.VALIDATING_CHAIN,
    RestoreState.EXTRACTING,
    RestoreState.APPLYING,
    RestoreState.VERIFYING,
    RestoreState.COMPLETED,
]


class SlowMaterializeAdapter(DirectorySnapshotAdapter):
    async def materialize(self, sandbox_id, archive_path, install_dir=None):
        await asyncio.sleep(5)
        await super().materialize(sandbox_id, archive_path, install_dir)


async def build_chain(full_engine, incremental_engine, adapter, sandbox):
    """Full backup, then two incrementals each changing one file."""
    root = adapter.root / sandbox
    full = await full_engine.create_full_backup(sandbox)
    modify_file(root, "home/alice/notes.txt", b"second draft\n", BASE_TIME + timedelta(minutes=30))
    first = (await incremental_engine.create_incremental_backup(sandbox)).record
    modify_file(root, "home/alice/todo.txt", b"- release\n", BASE_TIME + timedelta(minutes=90))
    second = (await incremental_engine.create_incremental_backup(sandbox)).record
    return full, first, second


def corrupt(record) -> None:
    with open(record.archive_path, "ab") as f:
        f.write(b"\0" * 512)


class TestRestoredPath:
    """Test cases for archive member path mapping."""

    def test_maps_to_absolute_path(self):
        assert restored_path("etc/hostname") == "/etc/hostname"
        assert restored_path("./etc/hostname") == "/etc/hostname"

    def test_rejects_traversal(self):
        with pytest.raises(RestoreError):
            restored_path("../outside")


class TestRestoreResult:
    """Test cases for the restore state machine bookkeeping."""

    def test_terminal_state_is_final(self):
        result = RestoreResult(target_record_id="r1", new_sandbox_id="new")
        result.transition(RestoreState.FAILED)

        with pytest.raises(RuntimeError):
            result.transition(RestoreState.EXTRACTING)

        assert result.finished_at is not None
        assert result.duration_seconds >= 0


class TestRestoreOrchestrator:
    """Test cases for RestoreOrchestrator."""

    @pytest.mark.asyncio
    async def test_restore_full_chain(self, full_engine, incremental_engine, restorer, adapter, sandbox):
        full, first, second = await build_chain(full_engine, incremental_engine, adapter, sandbox)

        result = await restorer.restore(second.id, "dev-restored")

        assert result.success is True
        assert result.states == HAPPY_PATH
        assert result.chain == [full.id, first.id, second.id]
        assert result.files_applied == 2
        assert result.error is None
        restored = adapter.root / "dev-restored"
        assert (restored / "home/alice/notes.txt").read_bytes() == b"second draft\n"
        assert (restored / "home/alice/todo.txt").read_bytes() == b"- release\n"
        assert (restored / "etc/hostname").read_bytes() == b"dev\n"

    @pytest.mark.asyncio
    async def test_restore_intermediate_point(self, full_engine, incremental_engine, restorer, adapter, sandbox):
        _, first, _ = await build_chain(full_engine, incremental_engine, adapter, sandbox)

        result = await restorer.restore(first.id, "dev-restored")

        restored = adapter.root / "dev-restored"
        assert result.success is True
        assert (restored / "home/alice/notes.txt").read_bytes() == b"second draft\n"
        assert (restored / "home/alice/todo.txt").read_bytes() == b"- write tests\n"

    @pytest.mark.asyncio
    async def test_restore_preserves_mtimes(self, full_engine, incremental_engine, restorer, adapter, sandbox):
        _, _, second = await build_chain(full_engine, incremental_engine, adapter, sandbox)

        await restorer.restore(second.id, "dev-restored")

        restored = adapter.root / "dev-restored" / "home/alice/todo.txt"
        expected = (BASE_TIME + timedelta(minutes=90)).timestamp()
        assert restored.stat().st_mtime == pytest.approx(expected, abs=1)

    @pytest.mark.asyncio
    async def test_restore_compressed_full(self, full_engine, restorer, adapter, sandbox):
        full = await full_engine.create_full_backup(sandbox, compress=True)

        result = await restorer.restore(full.id, "dev-restored")

        assert result.success is True
        assert result.files_applied == 0
        assert (adapter.root / "dev-restored" / "etc/hostname").exists()

    @pytest.mark.asyncio
    async def test_integrity_failure_aborts_before_extraction(
        self, full_engine, incremental_engine, restorer, adapter, sandbox
    ):
        _, first, second = await build_chain(full_engine, incremental_engine, adapter, sandbox)
        corrupt(first)

        result = await restorer.restore(second.id, "dev-restored")

        assert result.state == RestoreState.FAILED
        assert isinstance(result.error, ChainIntegrityError)
        assert result.error.failed_records == [first.id]
        assert RestoreState.EXTRACTING not in result.states
        assert result.sandbox_created is False
        assert not await adapter.exists("dev-restored")

        with pytest.raises(ChainIntegrityError):
            result.raise_for_state()

    @pytest.mark.asyncio
    async def test_missing_archive_fails_validation(self, full_engine, restorer, adapter, sandbox):
        full = await full_engine.create_full_backup(sandbox)
        Path(full.archive_path).unlink()

        result = await restorer.restore(full.id, "dev-restored")

        assert result.state == RestoreState.FAILED
        assert isinstance(result.error, ChainIntegrityError)
        assert not await adapter.exists("dev-restored")

    @pytest.mark.asyncio
    async def test_force_continues_past_integrity_failures(
        self, full_engine, incremental_engine, restorer, adapter, sandbox
    ):
        _, first, second = await build_chain(full_engine, incremental_engine, adapter, sandbox)
        corrupt(first)

        result = await restorer.restore(second.id, "dev-restored", force=True)

        assert result.success is True
        assert result.integrity_failures == [first.id]

    @pytest.mark.asyncio
    async def test_liveness_failure_keeps_sandbox(self, full_engine, catalog, validator, adapter, sandbox, tmp_path):
        full = await full_engine.create_full_backup(sandbox)
        restorer = RestoreOrchestrator(
            adapter,
            catalog,
            validator,
            staging_dir=tmp_path,
            liveness_command=("false",),
        )

        result = await restorer.restore(full.id, "dev-restored")

        assert result.state == RestoreState.FAILED
        assert isinstance(result.error, LivenessError)
        assert result.error.sandbox_id == "dev-restored"
        assert result.sandbox_created is True
        assert await adapter.exists("dev-restored")

    @pytest.mark.asyncio
    async def test_liveness_command_not_executable(self, full_engine, catalog, validator, adapter, sandbox, tmp_path):
        full = await full_engine.create_full_backup(sandbox)
        restorer = RestoreOrchestrator(
            adapter,
            catalog,
            validator,
            staging_dir=tmp_path,
            liveness_command=("./etc/hostname",),
        )

        result = await restorer.restore(full.id, "dev-restored")

        assert result.state == RestoreState.FAILED
        assert isinstance(result.error, LivenessError)
        assert result.sandbox_created is True

    @pytest.mark.asyncio
    async def test_restore_round_trip(self, full_engine, restorer, validator, sandbox):
        full = await full_engine.create_full_backup(sandbox)

        result = await restorer.restore(full.id, "dev-restored")
        recaptured = await full_engine.create_full_backup("dev-restored")

        assert result.success is True
        assert await validator.validate(recaptured.archive_path, full.checksum)

    @pytest.mark.asyncio
    async def test_existing_target_fails(self, full_engine, restorer, sandbox):
        full = await full_engine.create_full_backup(sandbox)

        result = await restorer.restore(full.id, sandbox)

        assert result.state == RestoreState.FAILED
        assert isinstance(result.error, RestoreError)
        assert result.states == [RestoreState.PENDING, RestoreState.FAILED]

    @pytest.mark.asyncio
    async def test_timeout(self, full_engine, catalog, validator, sandbox, tmp_path):
        full = await full_engine.create_full_backup(sandbox)
        slow_adapter = SlowMaterializeAdapter(tmp_path / "sandboxes")
        restorer = RestoreOrchestrator(slow_adapter, catalog, validator, staging_dir=tmp_path)

        result = await restorer.restore(full.id, "dev-restored", timeout_minutes=0.002)

        assert result.state == RestoreState.TIMED_OUT
        assert isinstance(result.error, RestoreTimeoutError)
        assert RestoreState.EXTRACTING in result.states
        assert result.success is False

    @pytest.mark.asyncio
    async def test_unknown_record(self, restorer):
        with pytest.raises(RecordNotFoundError):
            await restorer.restore("missing", "dev-restored")
