"""
Configuration models for Sandbox Vault.

This module defines Pydantic models for vault settings, remote
credentials and deployment targets, and the settings loader.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from sandbox_vault.core.exceptions import ConfigurationError
from sandbox_vault.utils.helpers import load_config_file, merge_dicts

HOME_ENV_VAR = "SANDBOX_VAULT_HOME"
CONFIG_ENV_VAR = "SANDBOX_VAULT_CONFIG"
DEFAULT_HOME = Path.home() / ".sandbox_vault"


class HostKeyPolicy(str, Enum):
    """SSH host key policies."""
    AUTO_ADD = "auto_add"
    REJECT = "reject"
    WARN = "warn"


class LoggingSettings(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    log_file: Optional[str] = None
    rich_console: bool = True
    structured: bool = False

    @field_validator('level')
    @classmethod
    def level_must_be_known(cls, v):
        if v.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return v.upper()


class VaultSettings(BaseModel):
    """Settings for the catalog, engines, restore and deployment."""
    home_dir: Path = Field(default=DEFAULT_HOME, description="Per-operator vault directory")
    catalog_path: Optional[Path] = None
    backup_dir: Optional[Path] = None
    package_dir: Optional[Path] = None
    compress_backups: bool = False
    checksum_algorithm: str = "sha256"
    restore_timeout_minutes: float = Field(default=30.0, gt=0)
    liveness_command: List[str] = Field(default_factory=lambda: ["echo", "ok"])
    liveness_timeout_seconds: float = Field(default=60.0, gt=0)
    max_concurrent_deployments: int = Field(default=4, ge=1)
    remote_package_dir: str = "/tmp/sandbox-vault"
    remote_install_command: str = "sandbox-vault-install {package} --name {sandbox}"
    remote_command_timeout: float = Field(default=1800.0, gt=0)
    copy_retry_attempts: int = Field(default=3, ge=1)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator('checksum_algorithm')
    @classmethod
    def algorithm_must_be_supported(cls, v):
        if v not in {"md5", "sha1", "sha256", "sha512"}:
            raise ValueError(f"Unsupported checksum algorithm: {v}")
        return v

    @field_validator('liveness_command')
    @classmethod
    def liveness_command_not_empty(cls, v):
        if not v:
            raise ValueError("liveness_command must contain at least one argument")
        return v

    @field_validator('remote_install_command')
    @classmethod
    def install_command_has_placeholders(cls, v):
        if "{package}" not in v:
            raise ValueError("remote_install_command must contain a {package} placeholder")
        return v

    @model_validator(mode='after')
    def derive_paths(self):
        self.home_dir = Path(self.home_dir).expanduser()
        if self.catalog_path is None:
            self.catalog_path = self.home_dir / "catalog.json"
        if self.backup_dir is None:
            self.backup_dir = self.home_dir / "backups"
        if self.package_dir is None:
            self.package_dir = self.home_dir / "packages"
        return self

    @property
    def restore_timeout_seconds(self) -> float:
        return self.restore_timeout_minutes * 60


class RemoteCredentials(BaseModel):
    """Credentials used to reach a deployment target over SSH."""
    model_config = ConfigDict(frozen=True)

    username: str
    password: Optional[str] = Field(default=None, repr=False)
    key_filename: Optional[str] = None
    key_passphrase: Optional[str] = Field(default=None, repr=False)
    port: int = Field(default=22, ge=1, le=65535)
    timeout: float = Field(default=30.0, gt=0)
    host_key_policy: HostKeyPolicy = HostKeyPolicy.AUTO_ADD
    allow_agent: bool = True
    look_for_keys: bool = True


class DeploymentTarget(BaseModel):
    """A host that should receive a migration package."""
    model_config = ConfigDict(frozen=True)

    host: str = Field(..., min_length=1)
    sandbox_name: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)

    @classmethod
    def coerce(cls, target: Union[str, "DeploymentTarget", Dict[str, Any]]) -> "DeploymentTarget":
        if isinstance(target, DeploymentTarget):
            return target
        if isinstance(target, str):
            return cls(host=target)
        return cls(**target)


def load_settings(config_path: Optional[Union[str, Path]] = None, **overrides: Any) -> VaultSettings:
    """
    Load vault settings from a YAML/JSON file and the environment.

    Lookup order for the file: *config_path*, then ``$SANDBOX_VAULT_CONFIG``.
    ``$SANDBOX_VAULT_HOME`` overrides ``home_dir``; keyword overrides win
    over both.
    """
    data: Dict[str, Any] = {}
    config_path = config_path or os.environ.get(CONFIG_ENV_VAR)

    if config_path:
        try:
            data = load_config_file(config_path) or {}
        except (OSError, ValueError) as e:
            raise ConfigurationError(
                f"Failed to load configuration: {e}",
                details={"config_path": str(config_path)}
            ) from e

    if os.environ.get(HOME_ENV_VAR):
        data["home_dir"] = os.environ[HOME_ENV_VAR]

    data = merge_dicts(data, overrides)

    try:
        return VaultSettings(**data)
    except PydanticValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}",
            details={"config_path": str(config_path) if config_path else None}
        ) from e
