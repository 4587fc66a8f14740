"""
Generated procedures shipped inside a migration package.

``install.script`` and ``validate.script`` are declarative YAML documents
executed by ``PackageInstaller``. This module also renders the README and
the configuration files written into an installed sandbox.
"""

import configparser
import io
from typing import Any, Dict, List, Optional, Sequence

from sandbox_vault.models.migration import (
    VALIDATE_SCRIPT_FILENAME,
    MigrationManifest,
)
from sandbox_vault.utils.helpers import format_bytes

SCRIPT_VERSION = 1
INIT_SCRIPT_PATH = "/etc/init.wsl"
WSL_CONF_PATH = "/etc/wsl.conf"

# install.script actions
IMPORT_ARCHIVE = "import_archive"
APPLY_CONFIGURATION = "apply_configuration"
VALIDATE = "validate"

# validate.script checks
SANDBOX_EXISTS = "sandbox_exists"
EXEC_COMMAND = "exec_command"
PACKAGE_COUNT = "package_count"
USER_COUNT = "user_count"


def build_install_script(manifest: MigrationManifest, run_validation: bool = True) -> Dict[str, Any]:
    """Steps: import the archive, apply configuration, optionally validate."""
    config = manifest.sandbox_configuration
    steps: List[Dict[str, Any]] = [
        {
            "action": IMPORT_ARCHIVE,
            "archive": manifest.archive_name,
            "target": manifest.source_sandbox_id,
        },
        {
            "action": APPLY_CONFIGURATION,
            "default_user": config.default_user,
            "systemd": config.systemd_enabled,
            "services": list(config.services),
        },
    ]
    if run_validation:
        steps.append({"action": VALIDATE, "script": VALIDATE_SCRIPT_FILENAME})

    return {
        "version": SCRIPT_VERSION,
        "migration_id": manifest.migration_id,
        "source_sandbox_id": manifest.source_sandbox_id,
        "steps": steps,
    }


def build_validate_script(
    manifest: MigrationManifest,
    probe_command: Sequence[str] = ("echo", "ok")
) -> Dict[str, Any]:
    """Checks: the sandbox exists, runs a command, and has the recorded package and user counts."""
    config = manifest.sandbox_configuration
    return {
        "version": SCRIPT_VERSION,
        "migration_id": manifest.migration_id,
        "checks": [
            {"check": SANDBOX_EXISTS},
            {"check": EXEC_COMMAND, "command": list(probe_command)},
            {"check": PACKAGE_COUNT, "expected": len(config.packages)},
            {"check": USER_COUNT, "expected": len(config.users)},
        ],
    }


def render_readme(manifest: MigrationManifest, archive_size: int) -> str:
    config = manifest.sandbox_configuration
    lines = [
        f"Sandbox migration package: {manifest.migration_id}",
        "",
        f"Source sandbox:  {manifest.source_sandbox_id}",
        f"Created at:      {manifest.created_at.isoformat()}",
        f"Created by:      {manifest.creator_principal}@{manifest.origin_host}",
        f"Backup record:   {manifest.backup_record_ref}",
        f"Archive:         {manifest.archive_name} ({format_bytes(archive_size)})",
        "",
        "Configuration",
        f"  Default user:  {config.default_user or '-'}",
        f"  Users:         {', '.join(config.users) or '-'}",
        f"  Packages:      {len(config.packages)}",
        f"  Services:      {', '.join(config.services) or '-'}",
        f"  systemd:       {'enabled' if config.systemd_enabled else 'disabled'}",
    ]

    if manifest.system_info:
        info = manifest.system_info
        lines += [
            "",
            "System",
            f"  Kernel:        {info.kernel or '-'}",
            f"  OS:            {info.os_name or '-'} {info.os_version or ''}".rstrip(),
            f"  Origin host:   {info.host_platform or '-'}",
        ]

    lines += [
        "",
        "Contents",
        "  manifest.json    package manifest",
        f"  {manifest.archive_name:<16} full sandbox archive",
        "  install.script   install steps",
        "  validate.script  post-install checks",
        "",
        "Install",
        "  Copy this package to the target host and run:",
        "",
        "    sandbox-vault-install <package> [--name NEW_NAME]",
        "",
        "  Exit codes: 0 success, 1 failure, 2 validation failure.",
        "",
    ]
    return "\n".join(lines)


def render_init_script(services: Sequence[str]) -> str:
    """Boot script restarting the recorded services."""
    lines = ["#! /bin/sh"]
    lines += [f"service {service} restart" for service in services]
    return "\n".join(lines) + "\n"


def render_wsl_conf(
    existing: str,
    default_user: Optional[str],
    systemd: bool,
    boot_command: Optional[str] = None
) -> str:
    """Merge the migrated settings into an existing wsl.conf."""
    parser = configparser.ConfigParser(interpolation=None)
    parser.read_string(existing)

    if default_user:
        if not parser.has_section("user"):
            parser.add_section("user")
        parser.set("user", "default", default_user)

    if not parser.has_section("boot"):
        parser.add_section("boot")
    parser.set("boot", "systemd", "true" if systemd else "false")
    if boot_command:
        parser.set("boot", "command", boot_command)

    buffer = io.StringIO()
    parser.write(buffer)
    return buffer.getvalue()
