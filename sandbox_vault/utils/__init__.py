"""
Utilities module for Sandbox Vault.

This module contains helper functions and logging setup
used throughout the application.
"""

from sandbox_vault.utils.helpers import (
    HashingWriter,
    algorithm_for_checksum,
    atomic_write_bytes,
    calculate_file_checksum,
    format_bytes,
    format_duration,
    generate_migration_id,
    generate_record_id,
    is_gzip_file,
    load_config_file,
    merge_dicts,
    safe_filename,
    save_config_file,
)
from sandbox_vault.utils.logging import (
    LogCategory,
    LogEntry,
    StructuredFormatter,
    get_logger,
    setup_logging,
)

__all__ = [
    # Helper functions
    "HashingWriter",
    "algorithm_for_checksum",
    "atomic_write_bytes",
    "calculate_file_checksum",
    "format_bytes",
    "format_duration",
    "generate_migration_id",
    "generate_record_id",
    "is_gzip_file",
    "load_config_file",
    "merge_dicts",
    "safe_filename",
    "save_config_file",
    # Logging utilities
    "LogCategory",
    "LogEntry",
    "StructuredFormatter",
    "get_logger",
    "setup_logging",
]
