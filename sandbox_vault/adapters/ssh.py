"""
SSH remote execution using paramiko.

Copies migration packages to target hosts over SFTP and runs the install
command there. Paramiko is blocking, so every call is pushed to the
default executor.
"""

import asyncio
import os
import socket
from pathlib import Path
from typing import Any, Dict, Optional, Union

import paramiko
from paramiko import AutoAddPolicy, SSHClient

from sandbox_vault.adapters.base import CommandResult, RemoteExecutor
from sandbox_vault.core.exceptions import NetworkError
from sandbox_vault.models.config import HostKeyPolicy, RemoteCredentials
from sandbox_vault.utils.logging import get_logger

logger = get_logger("adapters.ssh")


def _host_key_policy(policy: HostKeyPolicy) -> paramiko.MissingHostKeyPolicy:
    if policy == HostKeyPolicy.REJECT:
        return paramiko.RejectPolicy()
    if policy == HostKeyPolicy.WARN:
        return paramiko.WarningPolicy()
    return AutoAddPolicy()


class ParamikoRemoteExecutor(RemoteExecutor):
    """
    Remote executor backed by paramiko.

    A fresh connection is opened for every call; deployments make two
    calls per host.
    """

    def __init__(self, compress: bool = True):
        self.compress = compress

    def _connect(self, host: str, credentials: RemoteCredentials) -> SSHClient:
        client = SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(_host_key_policy(credentials.host_key_policy))

        connect_params: Dict[str, Any] = {
            'hostname': host,
            'port': credentials.port,
            'username': credentials.username,
            'timeout': credentials.timeout,
            'compress': self.compress,
            'look_for_keys': credentials.look_for_keys,
            'allow_agent': credentials.allow_agent,
        }
        if credentials.password:
            connect_params['password'] = credentials.password
        if credentials.key_filename:
            connect_params['key_filename'] = credentials.key_filename
        if credentials.key_passphrase:
            connect_params['passphrase'] = credentials.key_passphrase

        try:
            client.connect(**connect_params)
        except paramiko.AuthenticationException as e:
            client.close()
            raise NetworkError(
                f"Authentication failed for {credentials.username}@{host}: {e}",
                code="AUTHENTICATION_FAILED",
                details={"target_host": host}
            ) from e
        except (paramiko.SSHException, socket.error) as e:
            client.close()
            raise NetworkError(
                f"Unable to connect to {host}:{credentials.port}: {e}",
                details={"target_host": host}
            ) from e

        logger.debug(f"SSH connection established to {host}:{credentials.port}")
        return client

    @staticmethod
    def _makedirs(sftp: paramiko.SFTPClient, remote_dir: str) -> None:
        try:
            sftp.stat(remote_dir)
        except FileNotFoundError:
            parent_dir = os.path.dirname(remote_dir)
            if parent_dir and parent_dir != remote_dir:
                ParamikoRemoteExecutor._makedirs(sftp, parent_dir)
            sftp.mkdir(remote_dir)

    def _copy_file_sync(
        self,
        host: str,
        credentials: RemoteCredentials,
        local_path: Path,
        remote_path: str
    ) -> None:
        client = self._connect(host, credentials)
        try:
            sftp = client.open_sftp()
            try:
                remote_dir = os.path.dirname(remote_path)
                if remote_dir:
                    self._makedirs(sftp, remote_dir)
                sftp.put(str(local_path), remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, socket.error) as e:
            raise NetworkError(
                f"Failed to copy {local_path.name} to {host}:{remote_path}: {e}",
                details={"target_host": host, "remote_path": remote_path}
            ) from e
        finally:
            client.close()

    async def copy_file(
        self,
        host: str,
        credentials: RemoteCredentials,
        local_path: Union[str, Path],
        remote_path: str
    ) -> None:
        local_path = Path(local_path)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            self._copy_file_sync,
            host,
            credentials,
            local_path,
            remote_path
        )
        logger.info(f"Copied {local_path.name} to {host}:{remote_path}")

    def _run_command_sync(
        self,
        host: str,
        credentials: RemoteCredentials,
        command: str,
        timeout: Optional[float]
    ) -> CommandResult:
        client = self._connect(host, credentials)
        try:
            _stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
            out = stdout.read().decode(errors="replace")
            err = stderr.read().decode(errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise TimeoutError(f"Remote command timed out on {host}") from e
        except paramiko.SSHException as e:
            raise NetworkError(
                f"Failed to run command on {host}: {e}",
                details={"target_host": host}
            ) from e
        finally:
            client.close()

        return CommandResult(exit_code=exit_status, stdout=out, stderr=err)

    async def run_command(
        self,
        host: str,
        credentials: RemoteCredentials,
        command: str,
        timeout: Optional[float] = None
    ) -> CommandResult:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            self._run_command_sync,
            host,
            credentials,
            command,
            timeout
        )
        logger.debug(f"Command on {host} exited with {result.exit_code}")
        return result
