"""
Directory-backed snapshot adapter.

Each sandbox is a directory tree (a chroot-style root filesystem) under a
common root. Capture and materialize are tar create and extract.
"""

import asyncio
import os
import shutil
import tarfile
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Union

from sandbox_vault.adapters.base import CommandResult, SandboxFile, SnapshotAdapter
from sandbox_vault.core.exceptions import CaptureError
from sandbox_vault.utils.logging import get_logger

logger = get_logger("adapters.directory")


class DirectorySnapshotAdapter(SnapshotAdapter):
    """Snapshot adapter for sandboxes stored as plain directories."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def sandbox_path(self, sandbox_id: str) -> Path:
        path = (self.root / sandbox_id).resolve()
        if path.parent != self.root.resolve():
            raise CaptureError(
                f"Invalid sandbox name: {sandbox_id}",
                details={"sandbox_id": sandbox_id}
            )
        return path

    def _file_path(self, sandbox_id: str, path: str) -> Path:
        base = self.sandbox_path(sandbox_id)
        resolved = (base / path.lstrip("/")).resolve()
        if resolved != base and base not in resolved.parents:
            raise CaptureError(
                f"Path escapes sandbox {sandbox_id}: {path}",
                details={"sandbox_id": sandbox_id, "path": path}
            )
        return resolved

    async def exists(self, sandbox_id: str) -> bool:
        return self.sandbox_path(sandbox_id).is_dir()

    async def capture(self, sandbox_id: str, sink: BinaryIO) -> None:
        source = self.sandbox_path(sandbox_id)
        if not source.is_dir():
            raise CaptureError(
                f"Sandbox not found: {sandbox_id}",
                details={"sandbox_id": sandbox_id}
            )

        def _write_tar():
            with tarfile.open(fileobj=sink, mode="w|") as tar:
                for entry in sorted(source.iterdir()):
                    tar.add(str(entry), arcname=entry.name, recursive=True)

        try:
            await asyncio.to_thread(_write_tar)
        except (OSError, tarfile.TarError) as e:
            raise CaptureError(
                f"Failed to capture sandbox {sandbox_id}: {e}",
                details={"sandbox_id": sandbox_id}
            ) from e

        logger.debug(f"Captured directory sandbox {sandbox_id}")

    async def materialize(
        self,
        sandbox_id: str,
        archive_path: Union[str, Path],
        install_dir: Optional[Union[str, Path]] = None
    ) -> None:
        destination = self.sandbox_path(sandbox_id)
        if destination.exists():
            raise CaptureError(
                f"Sandbox already exists: {sandbox_id}",
                details={"sandbox_id": sandbox_id}
            )

        def _extract():
            destination.mkdir(parents=True)
            with tarfile.open(archive_path, "r:*") as tar:
                tar.extractall(path=destination, filter="tar")

        try:
            await asyncio.to_thread(_extract)
        except (OSError, tarfile.TarError) as e:
            raise CaptureError(
                f"Failed to materialize sandbox {sandbox_id}: {e}",
                details={"sandbox_id": sandbox_id, "archive_path": str(archive_path)}
            ) from e

    async def scan_files(self, sandbox_id: str) -> List[SandboxFile]:
        base = self.sandbox_path(sandbox_id)
        if not base.is_dir():
            raise CaptureError(
                f"Sandbox not found: {sandbox_id}",
                details={"sandbox_id": sandbox_id}
            )

        def _walk() -> List[SandboxFile]:
            files = []
            for dirpath, _dirnames, filenames in os.walk(base):
                for filename in filenames:
                    full_path = Path(dirpath) / filename
                    stat = full_path.lstat()
                    if not full_path.is_file() or full_path.is_symlink():
                        continue
                    relative = full_path.relative_to(base).as_posix()
                    files.append(SandboxFile(
                        path=f"/{relative}",
                        mtime=stat.st_mtime,
                        size=stat.st_size,
                        mode=stat.st_mode & 0o7777,
                    ))
            return sorted(files, key=lambda f: f.path)

        return await asyncio.to_thread(_walk)

    async def read_file(self, sandbox_id: str, path: str) -> bytes:
        return await asyncio.to_thread(self._file_path(sandbox_id, path).read_bytes)

    async def write_file(
        self,
        sandbox_id: str,
        path: str,
        data: bytes,
        mode: int = 0o644,
        mtime: Optional[float] = None
    ) -> None:
        if not await self.exists(sandbox_id):
            raise CaptureError(
                f"Sandbox not found: {sandbox_id}",
                details={"sandbox_id": sandbox_id}
            )
        target = self._file_path(sandbox_id, path)

        def _write():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            os.chmod(target, mode)
            if mtime is not None:
                os.utime(target, (mtime, mtime))

        await asyncio.to_thread(_write)

    async def run_command(
        self,
        sandbox_id: str,
        argv: Sequence[str],
        timeout: Optional[float] = None
    ) -> CommandResult:
        cwd = self.sandbox_path(sandbox_id)
        if not cwd.is_dir():
            return CommandResult(exit_code=127, stderr=f"sandbox not found: {sandbox_id}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            return CommandResult(exit_code=127, stderr=str(e))
        except OSError as e:
            return CommandResult(exit_code=126, stderr=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise

        return CommandResult(
            exit_code=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def remove(self, sandbox_id: str) -> None:
        """Delete a sandbox directory."""
        path = self.sandbox_path(sandbox_id)
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path)
