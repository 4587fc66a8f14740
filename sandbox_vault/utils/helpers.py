"""
Helper utilities for Sandbox Vault.

This module contains identifier generation, checksum and streaming
hash helpers, atomic file writes and configuration file loading.
"""

import hashlib
import json
import os
import uuid
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, BinaryIO, Dict, Union

import yaml

CHUNK_SIZE = 64 * 1024
GZIP_MAGIC = b"\x1f\x8b"


def generate_record_id() -> str:
    """Generate a unique backup record ID."""
    return str(uuid.uuid4())


def generate_migration_id(sandbox_id: str) -> str:
    """Generate a unique migration ID."""
    timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    unique_id = str(uuid.uuid4())[:8]
    return f"migration_{safe_filename(sandbox_id)}_{timestamp}_{unique_id}"


def calculate_file_checksum(file_path: Union[str, Path], algorithm: str = "sha256") -> str:
    """
    Calculate checksum for a file.

    Args:
        file_path: Path to the file
        algorithm: Hash algorithm (md5, sha1, sha256, sha512)

    Returns:
        Hexadecimal checksum string
    """
    hash_obj = hashlib.new(algorithm)

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            hash_obj.update(chunk)

    return hash_obj.hexdigest()


class HashingWriter:
    """Binary sink that hashes and counts every byte it forwards.

    Lets an archive be checksummed in the same pass that writes it.
    """

    def __init__(self, target: BinaryIO, algorithm: str = "sha256"):
        self._target = target
        self._hash = hashlib.new(algorithm)
        self.bytes_written = 0

    def write(self, data: bytes) -> int:
        self._target.write(data)
        self._hash.update(data)
        self.bytes_written += len(data)
        return len(data)

    def flush(self) -> None:
        self._target.flush()

    def writable(self) -> bool:
        return True

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


def is_gzip_file(file_path: Union[str, Path]) -> bool:
    """Check whether a file starts with the gzip magic bytes."""
    with open(file_path, "rb") as f:
        return f.read(2) == GZIP_MAGIC


def atomic_write_bytes(file_path: Union[str, Path], data: bytes) -> None:
    """Write *data* to a temporary sibling and rename it into place."""
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = file_path.with_name(f".{file_path.name}.{uuid.uuid4().hex[:8]}.tmp")

    try:
        with open(temp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, file_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()


def format_bytes(bytes_count: int) -> str:
    """Format bytes into human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024.0:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024.0
    return f"{bytes_count:.1f} PB"


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"


def safe_filename(filename: str) -> str:
    """Convert a string to a safe filename."""
    unsafe_chars = '<>:"/\\|?*'
    for char in unsafe_chars:
        filename = filename.replace(char, '_')

    filename = filename.strip(' .')

    if len(filename) > 255:
        filename = filename[:255]

    return filename


def load_config_file(file_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Args:
        file_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    with open(file_path, 'r', encoding='utf-8') as f:
        if file_path.suffix.lower() in ['.yaml', '.yml', '.script']:
            return yaml.safe_load(f) or {}
        elif file_path.suffix.lower() == '.json':
            return json.load(f)
        else:
            raise ValueError(f"Unsupported configuration file format: {file_path.suffix}")


def save_config_file(config: Dict[str, Any], file_path: Union[str, Path], format: str = "yaml") -> None:
    """
    Save configuration to YAML or JSON file.

    Args:
        config: Configuration dictionary
        file_path: Path to save configuration
        format: File format ('yaml' or 'json')
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    with open(file_path, 'w', encoding='utf-8') as f:
        if format.lower() == 'yaml':
            yaml.safe_dump(config, f, default_flow_style=False, indent=2, sort_keys=False)
        elif format.lower() == 'json':
            json.dump(config, f, indent=2, default=str)
        else:
            raise ValueError(f"Unsupported format: {format}")


def merge_dicts(dict1: Dict[str, Any], dict2: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge two dictionaries.

    Args:
        dict1: Base dictionary
        dict2: Dictionary to merge (takes precedence)

    Returns:
        Merged dictionary
    """
    result = dict1.copy()

    for key, value in dict2.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value

    return result


_DIGEST_ALGORITHMS = {32: "md5", 40: "sha1", 64: "sha256", 128: "sha512"}


def algorithm_for_checksum(checksum: str) -> str:
    """Infer the hash algorithm from the length of a hex digest."""
    try:
        return _DIGEST_ALGORITHMS[len(checksum)]
    except KeyError:
        raise ValueError(f"Unrecognized checksum length: {len(checksum)}") from None
