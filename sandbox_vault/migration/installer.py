"""
Migration package installer.

This is the install path run on each deployment target. It opens a
package directory (or its ``.tar.gz``), verifies the file manifest,
executes the ``install.script`` steps and runs the ``validate.script``
checks against the installed sandbox.
"""

import asyncio
import json
import sys
import tarfile
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

import click
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console

from sandbox_vault.adapters.base import ConfigIntrospector, SnapshotAdapter
from sandbox_vault.adapters.directory import DirectorySnapshotAdapter
from sandbox_vault.adapters.introspector import SandboxConfigIntrospector
from sandbox_vault.adapters.wsl import WslSnapshotAdapter
from sandbox_vault.backup.archive import decompress_to
from sandbox_vault.core.error_handler import ErrorContext, ErrorHandler, ExitCode
from sandbox_vault.core.exceptions import (
    CaptureError,
    PackageError,
    SandboxVaultError,
    ValidationError,
)
from sandbox_vault.migration import scripts
from sandbox_vault.models.config import load_settings
from sandbox_vault.models.migration import (
    INSTALL_SCRIPT_FILENAME,
    MANIFEST_FILENAME,
    VALIDATE_SCRIPT_FILENAME,
    MigrationManifest,
)
from sandbox_vault.utils.helpers import algorithm_for_checksum, calculate_file_checksum, load_config_file
from sandbox_vault.utils.logging import get_logger, setup_logging

logger = get_logger("migration.installer")

console = Console(stderr=True)


@dataclass
class CheckResult:
    """Outcome of one validate.script check."""
    check: str
    passed: bool
    detail: str = ""


@dataclass
class InstallResult:
    """Outcome of installing a package."""
    migration_id: str
    sandbox_id: str
    steps_completed: List[str] = field(default_factory=list)
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def failed_checks(self) -> List[str]:
        return [c.check for c in self.checks if not c.passed]


def _find_package_root(directory: Path) -> Path:
    if (directory / MANIFEST_FILENAME).is_file():
        return directory
    candidates = [p for p in directory.iterdir() if p.is_dir() and (p / MANIFEST_FILENAME).is_file()]
    if len(candidates) != 1:
        raise PackageError(f"No {MANIFEST_FILENAME} found in package {directory}")
    return candidates[0]


def read_manifest(package_root: Path) -> MigrationManifest:
    manifest_path = package_root / MANIFEST_FILENAME
    try:
        with open(manifest_path, "r", encoding="utf-8") as f:
            return MigrationManifest.model_validate(json.load(f))
    except (OSError, ValueError, PydanticValidationError) as e:
        raise PackageError(
            f"Invalid package manifest {manifest_path}: {e}",
            details={"package_path": str(package_root)}
        ) from e


@contextmanager
def open_package(package_path: Union[str, Path]) -> Iterator[Path]:
    """
    Yield the directory holding a package's files.

    Compressed packages are extracted into a temporary directory that is
    removed when the context exits.
    """
    package_path = Path(package_path)
    if package_path.is_dir():
        yield _find_package_root(package_path)
        return

    if not package_path.is_file() or not tarfile.is_tarfile(package_path):
        raise PackageError(
            f"Not a migration package: {package_path}",
            details={"package_path": str(package_path)}
        )

    with tempfile.TemporaryDirectory(prefix="sandbox-vault-package-") as staging:
        try:
            with tarfile.open(package_path, "r:*") as tar:
                tar.extractall(path=staging, filter="data")
        except (OSError, tarfile.TarError) as e:
            raise PackageError(
                f"Failed to extract package {package_path}: {e}",
                details={"package_path": str(package_path)}
            ) from e
        yield _find_package_root(Path(staging))


def load_package(package_path: Union[str, Path]) -> MigrationManifest:
    """Read the manifest of a package directory or compressed package."""
    with open_package(package_path) as package_root:
        return read_manifest(package_root)


def verify_package_files(package_root: Path, manifest: MigrationManifest) -> List[str]:
    """Return the names of manifest files that are missing or fail their checksum."""
    failed = []
    for entry in manifest.file_manifest:
        path = package_root / entry.name
        if not path.is_file():
            failed.append(entry.name)
            continue
        try:
            algorithm = algorithm_for_checksum(entry.checksum)
        except ValueError:
            failed.append(entry.name)
            continue
        if calculate_file_checksum(path, algorithm) != entry.checksum:
            failed.append(entry.name)
    return failed


class ConfigurationApplier:
    """Writes migrated configuration into an installed sandbox."""

    def __init__(self, adapter: SnapshotAdapter):
        self.adapter = adapter

    async def apply(
        self,
        sandbox_id: str,
        default_user: Optional[str] = None,
        systemd: bool = False,
        services: Sequence[str] = ()
    ) -> None:
        try:
            existing = (await self.adapter.read_file(sandbox_id, scripts.WSL_CONF_PATH)).decode("utf-8")
        except FileNotFoundError:
            existing = ""

        boot_command = None
        if services and not systemd:
            await self.adapter.write_file(
                sandbox_id,
                scripts.INIT_SCRIPT_PATH,
                scripts.render_init_script(services).encode("utf-8"),
                mode=0o755
            )
            boot_command = f"{scripts.INIT_SCRIPT_PATH} start"

        conf = scripts.render_wsl_conf(existing, default_user, systemd, boot_command)
        await self.adapter.write_file(sandbox_id, scripts.WSL_CONF_PATH, conf.encode("utf-8"))
        logger.info(f"Applied configuration to {sandbox_id}")


class PackageInstaller:
    """Installs a migration package as a new sandbox."""

    def __init__(
        self,
        adapter: SnapshotAdapter,
        introspector: Optional[ConfigIntrospector] = None,
        install_root: Optional[Union[str, Path]] = None,
        command_timeout: float = 60.0
    ):
        self.adapter = adapter
        self.introspector = introspector or SandboxConfigIntrospector(adapter, command_timeout)
        self.install_root = Path(install_root) if install_root else None
        self.command_timeout = command_timeout
        self.applier = ConfigurationApplier(adapter)

    async def install(
        self,
        package_path: Union[str, Path],
        sandbox_name: Optional[str] = None
    ) -> InstallResult:
        """
        Install a package.

        Args:
            package_path: Package directory or ``.tar.gz``
            sandbox_name: Name for the new sandbox; defaults to the source name

        Returns:
            InstallResult with completed steps and check outcomes

        Raises:
            PackageError: If the package is unreadable or a step fails
            ValidationError: If package files or post-install checks fail
        """
        with open_package(package_path) as package_root:
            manifest = read_manifest(package_root)
            sandbox_id = sandbox_name or manifest.source_sandbox_id
            result = InstallResult(migration_id=manifest.migration_id, sandbox_id=sandbox_id)

            failed_files = verify_package_files(package_root, manifest)
            if failed_files:
                raise ValidationError(
                    f"Package files failed verification: {', '.join(failed_files)}",
                    failed_checks=failed_files,
                    details={"sandbox_id": sandbox_id}
                )

            install_script = self._load_script(package_root / INSTALL_SCRIPT_FILENAME)
            for step in install_script.get("steps", []):
                action = step.get("action")
                if action == scripts.IMPORT_ARCHIVE:
                    await self._import_archive(package_root, step, sandbox_id)
                elif action == scripts.APPLY_CONFIGURATION:
                    await self.applier.apply(
                        sandbox_id,
                        default_user=step.get("default_user"),
                        systemd=bool(step.get("systemd", False)),
                        services=step.get("services") or [],
                    )
                elif action == scripts.VALIDATE:
                    validate_path = package_root / step.get("script", VALIDATE_SCRIPT_FILENAME)
                    result.checks = await self.run_checks(self._load_script(validate_path), sandbox_id)
                    if result.failed_checks:
                        raise ValidationError(
                            f"Post-install checks failed: {', '.join(result.failed_checks)}",
                            failed_checks=result.failed_checks,
                            details={"sandbox_id": sandbox_id}
                        )
                else:
                    raise PackageError(
                        f"Unknown install step: {action!r}",
                        details={"sandbox_id": sandbox_id}
                    )
                result.steps_completed.append(action)

        logger.info(f"Installed {manifest.migration_id} as {sandbox_id}")
        return result

    @staticmethod
    def _load_script(path: Path) -> Dict[str, Any]:
        try:
            script = load_config_file(path)
        except (OSError, ValueError) as e:
            raise PackageError(f"Unreadable package script {path.name}: {e}") from e
        if not isinstance(script, dict):
            raise PackageError(f"Malformed package script {path.name}")
        return script

    async def _import_archive(self, package_root: Path, step: Dict[str, Any], sandbox_id: str) -> None:
        if await self.adapter.exists(sandbox_id):
            raise PackageError(
                f"Sandbox {sandbox_id} already exists on this host",
                details={"sandbox_id": sandbox_id}
            )

        archive = package_root / step["archive"]
        install_dir = self.install_root / sandbox_id if self.install_root else None

        with tempfile.TemporaryDirectory(prefix="sandbox-vault-import-") as staging:
            try:
                plain_archive = await asyncio.to_thread(decompress_to, archive, Path(staging) / "import.tar")
                await self.adapter.materialize(sandbox_id, plain_archive, install_dir)
            except (OSError, CaptureError) as e:
                raise PackageError(
                    f"Failed to import {archive.name} as {sandbox_id}: {e}",
                    details={"sandbox_id": sandbox_id}
                ) from e

    async def run_checks(self, validate_script: Dict[str, Any], sandbox_id: str) -> List[CheckResult]:
        """Run every check in a validate.script document."""
        results = []
        configuration = None

        for check in validate_script.get("checks", []):
            name = check.get("check")
            if name == scripts.SANDBOX_EXISTS:
                exists = await self.adapter.exists(sandbox_id)
                results.append(CheckResult(name, exists, "" if exists else "sandbox not registered"))
            elif name == scripts.EXEC_COMMAND:
                results.append(await self._check_command(sandbox_id, check.get("command") or ["echo", "ok"]))
            elif name in (scripts.PACKAGE_COUNT, scripts.USER_COUNT):
                if configuration is None:
                    configuration = await self.introspector.read_configuration(sandbox_id)
                items = configuration.packages if name == scripts.PACKAGE_COUNT else configuration.users
                expected = check.get("expected")
                passed = len(items) == expected
                results.append(CheckResult(name, passed, f"expected {expected}, found {len(items)}"))
            else:
                results.append(CheckResult(str(name), False, "unknown check"))

        return results

    async def _check_command(self, sandbox_id: str, command: Sequence[str]) -> CheckResult:
        try:
            probe = await self.adapter.run_command(sandbox_id, command, timeout=self.command_timeout)
        except TimeoutError:
            return CheckResult(scripts.EXEC_COMMAND, False, "command timed out")
        except CaptureError as e:
            return CheckResult(scripts.EXEC_COMMAND, False, e.message)
        return CheckResult(scripts.EXEC_COMMAND, probe.ok, f"exit code {probe.exit_code}")


def _build_adapter(adapter_name: str, sandbox_root: Optional[str], install_root: Path) -> SnapshotAdapter:
    if adapter_name == "directory":
        return DirectorySnapshotAdapter(sandbox_root or install_root)
    return WslSnapshotAdapter(install_root)


@click.command()
@click.argument('package', type=click.Path(exists=True))
@click.option('--name', '-n', help='Name of the sandbox to create (defaults to the source name)')
@click.option('--adapter', type=click.Choice(['wsl', 'directory']), default='wsl', help='Sandbox backend')
@click.option('--sandbox-root', type=click.Path(), help='Root directory for the directory backend')
@click.option('--install-root', type=click.Path(), help='Where imported sandboxes are stored')
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
def main(
    package: str,
    name: Optional[str],
    adapter: str,
    sandbox_root: Optional[str],
    install_root: Optional[str],
    config: Optional[str],
    verbose: bool
):
    """
    Install a sandbox migration package.

    Exit codes: 0 success, 1 failure, 2 validation failure.
    """
    error_handler = ErrorHandler(logger)
    try:
        settings = load_settings(config)
        setup_logging(
            level="DEBUG" if verbose else settings.logging.level,
            log_file=settings.logging.log_file,
            rich_console=settings.logging.rich_console,
            structured_logging=settings.logging.structured,
        )
        root = Path(install_root) if install_root else settings.home_dir / "sandboxes"
        installer = PackageInstaller(
            _build_adapter(adapter, sandbox_root, root),
            install_root=root,
        )
        result = asyncio.run(installer.install(package, sandbox_name=name))
    except SandboxVaultError as e:
        info = error_handler.handle_error(e, ErrorContext(operation="install", sandbox_id=name))
        console.print(f"[red]Install failed:[/red] {e.message}")
        for check in getattr(e, "failed_checks", []):
            console.print(f"  [red]✗[/red] {check}")
        for step in info.remediation_steps:
            console.print(f"  [dim]• {step}[/dim]")
        sys.exit(int(info.exit_code))

    console.print(f"[green]✓ Installed {result.migration_id} as {result.sandbox_id}[/green]")
    for check in result.checks:
        console.print(f"  [green]✓[/green] {check.check} [dim]{check.detail}[/dim]")
    sys.exit(int(ExitCode.SUCCESS))


if __name__ == "__main__":
    main()
