"""
Batch deployment coordinator.

Ships a migration package to many hosts under bounded concurrency. A
fixed pool of workers pulls targets from a work queue and posts one
``DeploymentResult`` per target onto a result queue; the report is
assembled once every target has a result. A failure on one target is
recorded in that target's result and never affects the others.
"""

import asyncio
import shlex
import tarfile
import tempfile
import time
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Sequence, Union

from sandbox_vault.adapters.base import RemoteExecutor
from sandbox_vault.core.error_handler import (
    ErrorContext,
    ErrorHandler,
    RetryHandler,
    create_network_retry_config,
)
from sandbox_vault.core.exceptions import (
    ConfigurationError,
    NetworkError,
    RemoteCommandError,
)
from sandbox_vault.migration.installer import load_package
from sandbox_vault.models.config import DeploymentTarget, RemoteCredentials
from sandbox_vault.models.migration import (
    DeploymentReport,
    DeploymentResult,
    DeploymentStatus,
    MigrationManifest,
)
from sandbox_vault.utils.helpers import format_duration
from sandbox_vault.utils.logging import get_logger

logger = get_logger("deployment.coordinator")

VALIDATION_EXIT_CODE = 2

TargetSpec = Union[str, DeploymentTarget, Dict[str, Any]]
CredentialSpec = Union[RemoteCredentials, Dict[str, RemoteCredentials]]


class BatchDeploymentCoordinator:
    """Deploys one package to many hosts."""

    def __init__(
        self,
        executor: RemoteExecutor,
        remote_package_dir: str = "/tmp/sandbox-vault",
        install_command: str = "sandbox-vault-install {package} --name {sandbox}",
        command_timeout: float = 1800.0,
        copy_retry_attempts: int = 3,
        retry_base_delay: float = 2.0,
        max_concurrent: int = 4
    ):
        self.executor = executor
        self.remote_package_dir = remote_package_dir
        self.install_command = install_command
        self.command_timeout = command_timeout
        self.copy_retry_attempts = copy_retry_attempts
        self.retry_base_delay = retry_base_delay
        self.max_concurrent = max_concurrent
        self.error_handler = ErrorHandler(logger)
        self.retry_handler = RetryHandler(self.error_handler)
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        """Stop dispatching; in-flight targets finish, the rest are skipped.

        A cancel issued before ``deploy_batch`` applies to the next batch.
        The request is consumed when that batch reports.
        """
        logger.warning("Batch deployment cancellation requested")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def deploy_batch(
        self,
        package_path: Union[str, Path],
        targets: Sequence[TargetSpec],
        credentials: CredentialSpec,
        max_concurrent: Optional[int] = None
    ) -> DeploymentReport:
        """
        Deploy a package to every target.

        Args:
            package_path: Package directory or ``.tar.gz``
            targets: Hosts as names, dicts or DeploymentTarget instances
            credentials: One set of credentials, or a mapping of host to credentials
            max_concurrent: Worker pool size; defaults to the coordinator setting

        Returns:
            DeploymentReport with one result per target, in target order

        Raises:
            ConfigurationError: If there are no targets or the pool size is invalid
            PackageError: If the package is missing or unreadable
        """
        if max_concurrent is None:
            max_concurrent = self.max_concurrent
        if max_concurrent < 1:
            raise ConfigurationError(f"max_concurrent must be at least 1, got {max_concurrent}")
        if not targets:
            raise ConfigurationError("No deployment targets given")

        try:
            resolved = [DeploymentTarget.coerce(target) for target in targets]
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid deployment target: {e}") from e

        manifest = load_package(package_path)

        logger.info(
            f"Deploying {manifest.migration_id} to {len(resolved)} hosts "
            f"(max {max_concurrent} concurrent)"
        )

        with tempfile.TemporaryDirectory(prefix="sandbox-vault-deploy-") as staging:
            shipped = await asyncio.to_thread(self._shippable, Path(package_path), Path(staging))
            remote_path = str(PurePosixPath(self.remote_package_dir) / shipped.name)
            results = await self._run_pool(resolved, credentials, manifest, shipped, remote_path, max_concurrent)

        report = DeploymentReport.from_results(results, cancelled=self.cancelled)
        self._cancelled.clear()
        logger.info(
            f"Deployment of {manifest.migration_id} finished: {report.succeeded} succeeded, "
            f"{report.failed} failed, {report.skipped} skipped"
        )
        return report

    @staticmethod
    def _shippable(package_path: Path, staging: Path) -> Path:
        """Return a single file to copy, compressing package directories."""
        if package_path.is_file():
            return package_path
        archive = staging / f"{package_path.name}.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(str(package_path), arcname=package_path.name)
        return archive

    async def _run_pool(
        self,
        targets: List[DeploymentTarget],
        credentials: CredentialSpec,
        manifest: MigrationManifest,
        local_path: Path,
        remote_path: str,
        max_concurrent: int
    ) -> List[DeploymentResult]:
        work: asyncio.Queue = asyncio.Queue()
        results: asyncio.Queue = asyncio.Queue()
        for index, target in enumerate(targets):
            work.put_nowait((index, target))

        async def worker() -> None:
            while True:
                try:
                    index, target = work.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if self.cancelled:
                    result = DeploymentResult(
                        target_host=target.host,
                        success=False,
                        status=DeploymentStatus.SKIPPED,
                        error="Deployment cancelled before dispatch",
                    )
                else:
                    result = await self._deploy_one(target, credentials, manifest, local_path, remote_path)
                await results.put((index, result))

        workers = [asyncio.create_task(worker()) for _ in range(min(max_concurrent, len(targets)))]

        collected: Dict[int, DeploymentResult] = {}
        try:
            while len(collected) < len(targets):
                index, result = await results.get()
                collected[index] = result
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        return [collected[index] for index in range(len(targets))]

    def _credentials_for(self, target: DeploymentTarget, credentials: CredentialSpec) -> RemoteCredentials:
        if isinstance(credentials, RemoteCredentials):
            resolved = credentials
        else:
            resolved = credentials.get(target.host)
            if resolved is None:
                raise NetworkError(
                    f"No credentials configured for {target.host}",
                    code="MISSING_CREDENTIALS",
                    details={"target_host": target.host}
                )
        if target.port is not None:
            resolved = resolved.model_copy(update={"port": target.port})
        return resolved

    async def _deploy_one(
        self,
        target: DeploymentTarget,
        credentials: CredentialSpec,
        manifest: MigrationManifest,
        local_path: Path,
        remote_path: str
    ) -> DeploymentResult:
        host = target.host
        sandbox_id = target.sandbox_name or manifest.source_sandbox_id
        started = time.monotonic()
        attempts = 0

        async def copy_package(creds: RemoteCredentials) -> None:
            nonlocal attempts
            attempts += 1
            await self.executor.copy_file(host, creds, local_path, remote_path)

        logger.info(f"Deploying {manifest.migration_id} to {host}")
        try:
            creds = self._credentials_for(target, credentials)
            await self.retry_handler.retry_with_backoff(
                copy_package,
                creds,
                retry_config=create_network_retry_config(self.copy_retry_attempts, self.retry_base_delay),
                context=ErrorContext(operation="copy_package", target_host=host, sandbox_id=sandbox_id),
            )

            command = self.install_command.format(
                package=shlex.quote(remote_path),
                sandbox=shlex.quote(sandbox_id),
            )
            outcome = await self.executor.run_command(host, creds, command, timeout=self.command_timeout)
            if not outcome.ok:
                raise RemoteCommandError(
                    f"Install on {host} exited with {outcome.exit_code}: {outcome.stderr.strip()}",
                    exit_code=outcome.exit_code,
                    stderr=outcome.stderr,
                    code="VALIDATION_FAILED" if outcome.exit_code == VALIDATION_EXIT_CODE else None,
                    details={"target_host": host, "sandbox_id": sandbox_id}
                )
        except Exception as e:
            self.error_handler.handle_error(
                e,
                ErrorContext(operation="deploy", target_host=host, sandbox_id=sandbox_id)
            )
            return DeploymentResult(
                target_host=host,
                success=False,
                status=DeploymentStatus.FAILED,
                error=str(e),
                error_code=getattr(e, "code", type(e).__name__),
                attempts=attempts,
                duration_seconds=time.monotonic() - started,
            )

        duration = time.monotonic() - started
        logger.info(f"Deployed {manifest.migration_id} to {host} as {sandbox_id} in {format_duration(duration)}")
        return DeploymentResult(
            target_host=host,
            success=True,
            status=DeploymentStatus.SUCCEEDED,
            installed_sandbox_id=sandbox_id,
            attempts=attempts,
            duration_seconds=duration,
        )
