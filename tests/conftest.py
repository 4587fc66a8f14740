"""
Pytest configuration and fixtures for the Sandbox Vault tests.

Sandboxes are plain directory trees under ``tmp_path`` driven through
``DirectorySnapshotAdapter``; time is controlled with ``FakeClock`` so
change detection is deterministic.
"""

import asyncio
import os
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from sandbox_vault.adapters.base import CommandResult, ConfigIntrospector, RemoteExecutor
from sandbox_vault.adapters.directory import DirectorySnapshotAdapter
from sandbox_vault.backup.catalog import BackupCatalog, MemoryCatalogStore
from sandbox_vault.backup.full import FullBackupEngine
from sandbox_vault.backup.incremental import IncrementalBackupEngine
from sandbox_vault.backup.restore import RestoreOrchestrator
from sandbox_vault.backup.storage import BackupStorage
from sandbox_vault.backup.validator import IntegrityValidator
from sandbox_vault.core.exceptions import NetworkError
from sandbox_vault.migration.packager import MigrationPackager
from sandbox_vault.models.config import RemoteCredentials
from sandbox_vault.models.migration import SandboxConfiguration, SystemInfo

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)
OLD_MTIME = (BASE_TIME - timedelta(days=30)).timestamp()

PASSWD = (
    "root:x:0:0:root:/root:/bin/bash\n"
    "daemon:x:1:1:daemon:/usr/sbin:/usr/sbin/nologin\n"
    "alice:x:1000:1000:Alice,,,:/home/alice:/bin/bash\n"
    "nobody:x:65534:65534:nobody:/nonexistent:/usr/sbin/nologin\n"
)

DPKG_STATUS = (
    "Package: bash\n"
    "Status: install ok installed\n"
    "Version: 5.1-6\n"
    "\n"
    "Package: coreutils\n"
    "Status: install ok installed\n"
    "Version: 8.32-4\n"
    "\n"
    "Package: vim\n"
    "Status: deinstall ok config-files\n"
)

SANDBOX_FILES = {
    "etc/hostname": b"dev\n",
    "etc/passwd": PASSWD.encode(),
    "var/lib/dpkg/status": DPKG_STATUS.encode(),
    "home/alice/notes.txt": b"first draft\n",
    "home/alice/todo.txt": b"- write tests\n",
}


class FakeClock:
    """Clock that advances one hour every time it is read."""

    def __init__(self, start: datetime = BASE_TIME, step: timedelta = timedelta(hours=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current


def set_mtime(path: Path, when: datetime) -> None:
    os.utime(path, (when.timestamp(), when.timestamp()))


def make_sandbox(adapter: DirectorySnapshotAdapter, sandbox_id: str, files: Optional[Dict[str, bytes]] = None) -> Path:
    """Create a sandbox directory whose files all carry an old mtime."""
    root = adapter.root / sandbox_id
    for relative, content in (files or SANDBOX_FILES).items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        os.utime(path, (OLD_MTIME, OLD_MTIME))
    return root


def modify_file(root: Path, relative: str, content: bytes, when: datetime) -> None:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    set_mtime(path, when)


class StaticIntrospector(ConfigIntrospector):
    """Introspector returning a fixed configuration."""

    def __init__(self, configuration: Optional[SandboxConfiguration] = None):
        self.configuration = configuration or SandboxConfiguration(
            default_user="alice",
            users=["alice"],
            packages=["bash", "coreutils"],
            environment={"LANG": "C.UTF-8"},
            services=["ssh"],
            network={"hostname": "dev"},
            systemd_enabled=False,
        )

    async def read_configuration(self, sandbox_id: str) -> SandboxConfiguration:
        return self.configuration

    async def system_info(self, sandbox_id: str) -> SystemInfo:
        return SystemInfo(kernel="5.15.90.1-microsoft-standard-WSL2", os_name="Ubuntu", os_version="22.04")


class FakeRemoteExecutor(RemoteExecutor):
    """Records copies and commands; fails copies for configured hosts."""

    def __init__(
        self,
        copy_failures: Optional[Dict[str, int]] = None,
        exit_codes: Optional[Dict[str, int]] = None,
        delay: float = 0.0
    ):
        self.copy_failures = dict(copy_failures or {})
        self.exit_codes = dict(exit_codes or {})
        self.delay = delay
        self.copies: List[tuple] = []
        self.commands: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def copy_file(self, host, credentials, local_path, remote_path):
        self.copies.append((host, credentials, Path(local_path), remote_path))
        remaining = self.copy_failures.get(host, 0)
        if remaining:
            self.copy_failures[host] = remaining - 1
            raise NetworkError(f"Connection refused by {host}", details={"target_host": host})

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

    async def run_command(self, host, credentials, command, timeout=None):
        self.commands.append((host, command))
        exit_code = self.exit_codes.get(host, 0)
        return CommandResult(exit_code=exit_code, stderr="" if exit_code == 0 else "install failed")

    def commands_for(self, host: str) -> List[str]:
        return [command for h, command in self.commands if h == host]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def adapter(tmp_path) -> DirectorySnapshotAdapter:
    return DirectorySnapshotAdapter(tmp_path / "sandboxes")


@pytest.fixture
def sandbox(adapter) -> str:
    make_sandbox(adapter, "dev")
    return "dev"


@pytest.fixture
def catalog_store() -> MemoryCatalogStore:
    return MemoryCatalogStore()


@pytest.fixture
def catalog(catalog_store) -> BackupCatalog:
    return BackupCatalog(catalog_store)


@pytest.fixture
def storage(tmp_path, catalog) -> BackupStorage:
    return BackupStorage(tmp_path / "backups", catalog)


@pytest.fixture
def full_engine(adapter, catalog, storage, clock) -> FullBackupEngine:
    return FullBackupEngine(adapter, catalog, storage, clock=clock)


@pytest.fixture
def incremental_engine(adapter, catalog, storage, clock) -> IncrementalBackupEngine:
    return IncrementalBackupEngine(adapter, catalog, storage, clock=clock)


@pytest.fixture
def validator() -> IntegrityValidator:
    return IntegrityValidator()


@pytest.fixture
def restorer(adapter, catalog, validator, tmp_path) -> RestoreOrchestrator:
    staging = tmp_path / "staging"
    staging.mkdir()
    return RestoreOrchestrator(adapter, catalog, validator, staging_dir=staging)


@pytest.fixture
def introspector() -> StaticIntrospector:
    return StaticIntrospector()


@pytest.fixture
def packager(catalog, full_engine, introspector, tmp_path) -> MigrationPackager:
    return MigrationPackager(
        catalog,
        full_engine,
        introspector,
        tmp_path / "packages",
        origin_host="build-host",
    )


@pytest.fixture
def credentials() -> RemoteCredentials:
    return RemoteCredentials(username="deploy", password="secret")
