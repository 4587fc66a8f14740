"""
WSL snapshot adapter.

Drives ``wsl.exe`` to export, import and inspect distributions. Exports
are streamed from ``wsl --export <name> -`` so the engine can hash the
archive while it is written.
"""

import asyncio
import shlex
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Union

from sandbox_vault.adapters.base import CommandResult, SandboxFile, SnapshotAdapter
from sandbox_vault.core.exceptions import CaptureError
from sandbox_vault.utils.helpers import CHUNK_SIZE
from sandbox_vault.utils.logging import get_logger

logger = get_logger("adapters.wsl")

_MISSING_FILE_EXIT = 44
_NO_DISTRIBUTIONS = "has no installed distributions"

_WRITE_SCRIPT = (
    'mkdir -p "$(dirname "$1")" && cat > "$1" && chmod "$2" "$1"'
    ' && if [ -n "$3" ]; then touch -d "@$3" "$1"; fi'
)
_READ_SCRIPT = f'test -f "$1" || exit {_MISSING_FILE_EXIT}; cat -- "$1"'


def decode_wsl_output(data: bytes) -> str:
    """Decode wsl.exe output, which is UTF-16LE for its own messages."""
    if b"\x00" in data:
        text = data.decode("utf-16-le", errors="replace")
    else:
        text = data.decode("utf-8", errors="replace")
    return text.lstrip("\ufeff")


def parse_find_output(output: str) -> List[SandboxFile]:
    """Parse ``find -printf '%p\\t%T@\\t%s\\t%m\\n'`` lines."""
    files = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) != 4:
            continue
        path, mtime, size, mode = parts
        try:
            files.append(SandboxFile(
                path=path,
                mtime=float(mtime),
                size=int(size),
                mode=int(mode, 8),
            ))
        except ValueError:
            logger.debug(f"Skipping unparseable find output: {line!r}")
    return files


class WslSnapshotAdapter(SnapshotAdapter):
    """Snapshot adapter for Windows Subsystem for Linux distributions."""

    def __init__(
        self,
        install_root: Union[str, Path],
        wsl_executable: str = "wsl.exe",
        wsl_version: Optional[int] = 2,
        command_timeout: float = 600.0
    ):
        self.install_root = Path(install_root)
        self.wsl_executable = wsl_executable
        self.wsl_version = wsl_version
        self.command_timeout = command_timeout

    async def _run(
        self,
        args: Sequence[str],
        input_data: Optional[bytes] = None,
        timeout: Optional[float] = None
    ) -> tuple:
        try:
            process = await asyncio.create_subprocess_exec(
                self.wsl_executable,
                *args,
                stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise CaptureError(f"WSL executable not found: {self.wsl_executable}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input_data),
                timeout=timeout or self.command_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise

        return process.returncode, stdout, stderr

    def _in_sandbox(self, sandbox_id: str, argv: Sequence[str], user: Optional[str] = "root") -> List[str]:
        args = ["-d", sandbox_id]
        if user:
            args += ["-u", user]
        return args + ["--", *argv]

    async def list_sandboxes(self) -> List[str]:
        exit_code, stdout, stderr = await self._run(["--list", "--quiet"])
        if exit_code != 0:
            message = f"{decode_wsl_output(stdout)} {decode_wsl_output(stderr)}".strip()
            # a host without distributions reports it as an error
            if not message or _NO_DISTRIBUTIONS in message.casefold():
                return []
            raise CaptureError(f"wsl --list failed: {message}")
        return [line.strip() for line in decode_wsl_output(stdout).splitlines() if line.strip()]

    async def exists(self, sandbox_id: str) -> bool:
        names = await self.list_sandboxes()
        return sandbox_id.casefold() in {name.casefold() for name in names}

    async def capture(self, sandbox_id: str, sink: BinaryIO) -> None:
        if not await self.exists(sandbox_id):
            raise CaptureError(
                f"Sandbox not found: {sandbox_id}",
                details={"sandbox_id": sandbox_id}
            )

        process = await asyncio.create_subprocess_exec(
            self.wsl_executable,
            "--export", sandbox_id, "-",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            while True:
                chunk = await process.stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                sink.write(chunk)
            exit_code = await process.wait()
            stderr = await stderr_task
        except OSError as e:
            raise CaptureError(
                f"Failed to write export of {sandbox_id}: {e}",
                details={"sandbox_id": sandbox_id}
            ) from e
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        if exit_code != 0:
            raise CaptureError(
                f"wsl --export {sandbox_id} failed: {decode_wsl_output(stderr).strip()}",
                details={"sandbox_id": sandbox_id, "exit_code": exit_code}
            )

        logger.debug(f"Exported WSL distribution {sandbox_id}")

    async def materialize(
        self,
        sandbox_id: str,
        archive_path: Union[str, Path],
        install_dir: Optional[Union[str, Path]] = None
    ) -> None:
        if await self.exists(sandbox_id):
            raise CaptureError(
                f"Sandbox already exists: {sandbox_id}",
                details={"sandbox_id": sandbox_id}
            )

        install_dir = Path(install_dir) if install_dir else self.install_root / sandbox_id
        install_dir.mkdir(parents=True, exist_ok=True)

        args = ["--import", sandbox_id, str(install_dir), str(archive_path)]
        if self.wsl_version:
            args += ["--version", str(self.wsl_version)]

        exit_code, _stdout, stderr = await self._run(args)
        if exit_code != 0:
            raise CaptureError(
                f"wsl --import {sandbox_id} failed: {decode_wsl_output(stderr).strip()}",
                details={"sandbox_id": sandbox_id, "archive_path": str(archive_path)}
            )

        logger.info(f"Imported WSL distribution {sandbox_id} into {install_dir}")

    async def scan_files(self, sandbox_id: str) -> List[SandboxFile]:
        argv = ["find", "/", "-xdev", "-type", "f", "-printf", "%p\\t%T@\\t%s\\t%m\\n"]
        exit_code, stdout, stderr = await self._run(self._in_sandbox(sandbox_id, argv))
        # find exits 1 on unreadable entries but still lists the rest
        if exit_code not in (0, 1) or (exit_code == 1 and not stdout):
            raise CaptureError(
                f"Failed to scan {sandbox_id}: {stderr.decode(errors='replace').strip()}",
                details={"sandbox_id": sandbox_id}
            )
        return parse_find_output(stdout.decode(errors="replace"))

    async def read_file(self, sandbox_id: str, path: str) -> bytes:
        argv = ["sh", "-c", _READ_SCRIPT, "sh", path]
        exit_code, stdout, stderr = await self._run(self._in_sandbox(sandbox_id, argv))
        if exit_code == _MISSING_FILE_EXIT:
            raise FileNotFoundError(path)
        if exit_code != 0:
            raise CaptureError(
                f"Failed to read {path} from {sandbox_id}: {stderr.decode(errors='replace').strip()}",
                details={"sandbox_id": sandbox_id, "path": path}
            )
        return stdout

    async def write_file(
        self,
        sandbox_id: str,
        path: str,
        data: bytes,
        mode: int = 0o644,
        mtime: Optional[float] = None
    ) -> None:
        argv = [
            "sh", "-c", _WRITE_SCRIPT, "sh",
            path, format(mode, "o"), "" if mtime is None else str(mtime),
        ]
        exit_code, _stdout, stderr = await self._run(
            self._in_sandbox(sandbox_id, argv),
            input_data=data
        )
        if exit_code != 0:
            raise CaptureError(
                f"Failed to write {path} in {sandbox_id}: {stderr.decode(errors='replace').strip()}",
                details={"sandbox_id": sandbox_id, "path": path}
            )

    async def run_command(
        self,
        sandbox_id: str,
        argv: Sequence[str],
        timeout: Optional[float] = None
    ) -> CommandResult:
        logger.debug(f"Running in {sandbox_id}: {shlex.join(argv)}")
        exit_code, stdout, stderr = await self._run(
            self._in_sandbox(sandbox_id, argv, user=None),
            timeout=timeout
        )
        return CommandResult(
            exit_code=exit_code,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def terminate(self, sandbox_id: str) -> None:
        """Stop a running distribution."""
        await self._run(["--terminate", sandbox_id])

    async def unregister(self, sandbox_id: str) -> None:
        """Unregister a distribution and delete its virtual disk."""
        exit_code, _stdout, stderr = await self._run(["--unregister", sandbox_id])
        if exit_code != 0:
            raise CaptureError(
                f"wsl --unregister {sandbox_id} failed: {decode_wsl_output(stderr).strip()}",
                details={"sandbox_id": sandbox_id}
            )
