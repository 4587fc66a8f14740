"""
Capability interfaces consumed by the backup and migration engine.

The engine never talks to an OS tool directly. Snapshot capture and
materialization, configuration introspection and remote execution are
reached through the abstract classes defined here.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Union

from sandbox_vault.models.config import RemoteCredentials
from sandbox_vault.models.migration import SandboxConfiguration, SystemInfo


@dataclass(frozen=True)
class SandboxFile:
    """A regular file inside a sandbox, addressed by its absolute POSIX path."""
    path: str
    mtime: float
    size: int
    mode: int = 0o644


@dataclass
class CommandResult:
    """Result of running a command inside a sandbox or on a remote host."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SnapshotAdapter(ABC):
    """
    Capture and materialize whole-sandbox snapshots.

    Archives are tar streams. Implementations must raise
    ``CaptureError`` for any failure of the underlying tool.
    """

    @abstractmethod
    async def exists(self, sandbox_id: str) -> bool:
        """Return True if a sandbox with this name is registered."""
        pass

    @abstractmethod
    async def capture(self, sandbox_id: str, sink: BinaryIO) -> None:
        """Stream a tar archive of the sandbox's entire filesystem into *sink*."""
        pass

    @abstractmethod
    async def materialize(
        self,
        sandbox_id: str,
        archive_path: Union[str, Path],
        install_dir: Optional[Union[str, Path]] = None
    ) -> None:
        """Create a new sandbox named *sandbox_id* from an uncompressed tar archive."""
        pass

    @abstractmethod
    async def scan_files(self, sandbox_id: str) -> List[SandboxFile]:
        """List every regular file in the sandbox."""
        pass

    @abstractmethod
    async def read_file(self, sandbox_id: str, path: str) -> bytes:
        """Read a file's contents."""
        pass

    @abstractmethod
    async def write_file(
        self,
        sandbox_id: str,
        path: str,
        data: bytes,
        mode: int = 0o644,
        mtime: Optional[float] = None
    ) -> None:
        """Create or overwrite a file, creating parent directories."""
        pass

    @abstractmethod
    async def run_command(
        self,
        sandbox_id: str,
        argv: Sequence[str],
        timeout: Optional[float] = None
    ) -> CommandResult:
        """Run a command inside the sandbox."""
        pass


class ConfigIntrospector(ABC):
    """Read a sandbox's configuration for migration manifests."""

    @abstractmethod
    async def read_configuration(self, sandbox_id: str) -> SandboxConfiguration:
        pass

    @abstractmethod
    async def system_info(self, sandbox_id: str) -> SystemInfo:
        pass


class RemoteExecutor(ABC):
    """Copy files to remote hosts and run commands there.

    Connection and authentication failures must surface as
    ``NetworkError``.
    """

    @abstractmethod
    async def copy_file(
        self,
        host: str,
        credentials: RemoteCredentials,
        local_path: Union[str, Path],
        remote_path: str
    ) -> None:
        pass

    @abstractmethod
    async def run_command(
        self,
        host: str,
        credentials: RemoteCredentials,
        command: str,
        timeout: Optional[float] = None
    ) -> CommandResult:
        pass
