"""
Sandbox configuration introspection.

Reads users, packages, environment, services and network identity from
inside a sandbox through a ``SnapshotAdapter``, and describes the
originating host with psutil.
"""

import configparser
import platform
from typing import Dict, List, Optional

import psutil

from sandbox_vault.adapters.base import ConfigIntrospector, SnapshotAdapter
from sandbox_vault.models.migration import SandboxConfiguration, SystemInfo
from sandbox_vault.utils.logging import get_logger

logger = get_logger("adapters.introspector")

MIN_LOGIN_UID = 1000
NOBODY_UID = 65534


def parse_passwd(content: str) -> List[str]:
    """Return login users (uid >= 1000) from an /etc/passwd file."""
    users = []
    for line in content.splitlines():
        fields = line.split(":")
        if len(fields) < 7 or line.startswith("#"):
            continue
        try:
            uid = int(fields[2])
        except ValueError:
            continue
        if MIN_LOGIN_UID <= uid < NOBODY_UID:
            users.append(fields[0])
    return users


def parse_wsl_conf(content: str) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read_string(content)
    except configparser.Error as e:
        logger.warning(f"Ignoring unreadable wsl.conf: {e}")
        return configparser.ConfigParser(interpolation=None)
    return parser


def parse_dpkg_status(content: str) -> List[str]:
    """Return the names of installed packages from a dpkg status file."""
    packages = []
    for paragraph in content.split("\n\n"):
        name = None
        installed = False
        for line in paragraph.splitlines():
            if line.startswith("Package:"):
                name = line.split(":", 1)[1].strip()
            elif line.startswith("Status:"):
                installed = line.split(":", 1)[1].strip().endswith(" installed")
        if name and installed:
            packages.append(name)
    return sorted(packages)


def parse_environment(content: str) -> Dict[str, str]:
    """Parse KEY=VALUE lines from /etc/environment."""
    environment = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        environment[key.strip()] = value.strip().strip('"').strip("'")
    return environment


def parse_service_status(output: str) -> List[str]:
    """Return running services from ``service --status-all`` output."""
    services = []
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("[ + ]"):
            services.append(line[5:].strip())
    return services


def parse_os_release(content: str) -> Dict[str, str]:
    return parse_environment(content)


class SandboxConfigIntrospector(ConfigIntrospector):
    """Introspector for Debian-family Linux sandboxes."""

    def __init__(self, adapter: SnapshotAdapter, command_timeout: float = 60.0):
        self.adapter = adapter
        self.command_timeout = command_timeout

    async def _read_text(self, sandbox_id: str, path: str) -> Optional[str]:
        try:
            data = await self.adapter.read_file(sandbox_id, path)
        except FileNotFoundError:
            return None
        return data.decode("utf-8", errors="replace")

    async def _command_output(self, sandbox_id: str, argv: List[str]) -> Optional[str]:
        try:
            result = await self.adapter.run_command(sandbox_id, argv, timeout=self.command_timeout)
        except TimeoutError:
            logger.warning(f"{argv[0]} timed out in {sandbox_id}")
            return None
        if not result.ok:
            logger.debug(f"{argv[0]} exited with {result.exit_code} in {sandbox_id}")
            return None
        return result.stdout

    async def read_configuration(self, sandbox_id: str) -> SandboxConfiguration:
        passwd = await self._read_text(sandbox_id, "/etc/passwd") or ""
        users = parse_passwd(passwd)

        wsl_conf = parse_wsl_conf(await self._read_text(sandbox_id, "/etc/wsl.conf") or "")
        default_user = wsl_conf.get("user", "default", fallback=None)
        if default_user is None and users:
            default_user = users[0]
        systemd_enabled = wsl_conf.getboolean("boot", "systemd", fallback=False)

        packages = parse_dpkg_status(await self._read_text(sandbox_id, "/var/lib/dpkg/status") or "")
        environment = parse_environment(await self._read_text(sandbox_id, "/etc/environment") or "")

        service_output = await self._command_output(sandbox_id, ["service", "--status-all"])
        services = parse_service_status(service_output or "")

        network = {}
        hostname = await self._read_text(sandbox_id, "/etc/hostname")
        if hostname:
            network["hostname"] = hostname.strip()
        addresses = await self._command_output(sandbox_id, ["hostname", "-I"])
        if addresses:
            network["addresses"] = addresses.split()

        return SandboxConfiguration(
            default_user=default_user,
            users=users,
            packages=packages,
            environment=environment,
            services=services,
            network=network,
            systemd_enabled=systemd_enabled,
        )

    async def system_info(self, sandbox_id: str) -> SystemInfo:
        kernel = await self._command_output(sandbox_id, ["uname", "-r"])
        os_release = parse_os_release(await self._read_text(sandbox_id, "/etc/os-release") or "")

        return SystemInfo(
            kernel=kernel.strip() if kernel else None,
            os_name=os_release.get("NAME"),
            os_version=os_release.get("VERSION_ID"),
            host_platform=platform.platform(),
            host_cpu_count=psutil.cpu_count(),
            host_memory_bytes=psutil.virtual_memory().total,
        )
