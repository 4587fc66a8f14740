"""
Error handling for Sandbox Vault.

This module categorizes errors, maps them to process exit codes and
remediation hints, and provides retry logic with exponential backoff
for transient (network) failures.
"""

import asyncio
import logging
import random
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, List, Optional, Type

from .exceptions import (
    CaptureError,
    CatalogCorruptError,
    CatalogError,
    ChainIntegrityError,
    ConfigurationError,
    DependencyError,
    LivenessError,
    NetworkError,
    NoParentError,
    PackageError,
    RecordNotFoundError,
    RemoteCommandError,
    RestoreError,
    RestoreTimeoutError,
    ValidationError,
)


class ExitCode(IntEnum):
    """Process exit codes shared by every entry point."""
    SUCCESS = 0
    FAILURE = 1
    VALIDATION_FAILURE = 2


class ErrorCategory(str, Enum):
    """Categories of errors for better handling and reporting."""
    CONFIGURATION = "configuration"
    CAPTURE = "capture"
    CATALOG = "catalog"
    INTEGRITY = "integrity"
    RESTORE = "restore"
    PACKAGE = "package"
    NETWORK = "network"
    REMOTE = "remote"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for an error occurrence."""
    timestamp: datetime = field(default_factory=datetime.now)
    operation: Optional[str] = None
    sandbox_id: Optional[str] = None
    record_id: Optional[str] = None
    target_host: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RetryConfig:
    """Configuration for retry logic."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: List[Type[Exception]] = field(default_factory=list)


@dataclass
class ErrorInfo:
    """Categorized error information."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    context: ErrorContext
    exit_code: ExitCode
    remediation_steps: List[str]
    traceback_str: str
    retry_count: int = 0
    is_retryable: bool = False


class ErrorHandler:
    """
    Categorizes errors and logs them with their retry context.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._error_mappings = self._build_error_mappings()
        self._remediation_guides = self._build_remediation_guides()

    def _build_error_mappings(self) -> Dict[Type[Exception], Dict[str, Any]]:
        """Build mapping of exception types to error categories and severities.

        Order matters: subclasses are listed before their bases so the first
        ``isinstance`` match is the most specific one.
        """
        return {
            ConfigurationError: {
                "category": ErrorCategory.CONFIGURATION,
                "severity": ErrorSeverity.HIGH,
                "retryable": False,
            },
            ValidationError: {
                "category": ErrorCategory.VALIDATION,
                "severity": ErrorSeverity.MEDIUM,
                "retryable": False,
            },
            CaptureError: {
                "category": ErrorCategory.CAPTURE,
                "severity": ErrorSeverity.HIGH,
                "retryable": False,
            },
            CatalogCorruptError: {
                "category": ErrorCategory.CATALOG,
                "severity": ErrorSeverity.CRITICAL,
                "retryable": False,
            },
            DependencyError: {
                "category": ErrorCategory.CATALOG,
                "severity": ErrorSeverity.LOW,
                "retryable": False,
            },
            NoParentError: {
                "category": ErrorCategory.CATALOG,
                "severity": ErrorSeverity.LOW,
                "retryable": False,
            },
            RecordNotFoundError: {
                "category": ErrorCategory.CATALOG,
                "severity": ErrorSeverity.LOW,
                "retryable": False,
            },
            CatalogError: {
                "category": ErrorCategory.CATALOG,
                "severity": ErrorSeverity.HIGH,
                "retryable": False,
            },
            ChainIntegrityError: {
                "category": ErrorCategory.INTEGRITY,
                "severity": ErrorSeverity.CRITICAL,
                "retryable": False,
            },
            LivenessError: {
                "category": ErrorCategory.RESTORE,
                "severity": ErrorSeverity.HIGH,
                "retryable": False,
            },
            RestoreTimeoutError: {
                "category": ErrorCategory.RESTORE,
                "severity": ErrorSeverity.HIGH,
                "retryable": True,
            },
            RestoreError: {
                "category": ErrorCategory.RESTORE,
                "severity": ErrorSeverity.HIGH,
                "retryable": False,
            },
            PackageError: {
                "category": ErrorCategory.PACKAGE,
                "severity": ErrorSeverity.HIGH,
                "retryable": False,
            },
            NetworkError: {
                "category": ErrorCategory.NETWORK,
                "severity": ErrorSeverity.MEDIUM,
                "retryable": True,
            },
            RemoteCommandError: {
                "category": ErrorCategory.REMOTE,
                "severity": ErrorSeverity.HIGH,
                "retryable": False,
            },
            TimeoutError: {
                "category": ErrorCategory.NETWORK,
                "severity": ErrorSeverity.MEDIUM,
                "retryable": True,
            },
            OSError: {
                "category": ErrorCategory.UNKNOWN,
                "severity": ErrorSeverity.MEDIUM,
                "retryable": False,
            },
        }

    def _build_remediation_guides(self) -> Dict[ErrorCategory, List[str]]:
        """Build remediation guides for each error category."""
        return {
            ErrorCategory.CONFIGURATION: [
                "Check configuration file syntax and required fields",
                "Verify the vault home directory is writable",
            ],
            ErrorCategory.CAPTURE: [
                "Confirm the sandbox exists and is not running an export already",
                "Ensure sufficient disk space in the backup directory",
            ],
            ErrorCategory.CATALOG: [
                "Inspect the catalog file for manual edits",
                "Restore the catalog from the last known good copy",
                "Use cascade deletion to remove dependent records",
            ],
            ErrorCategory.INTEGRITY: [
                "Re-run the audit to list every damaged archive",
                "Take a fresh Full backup to start a new chain",
                "Restore with force only after inspecting the damaged archive",
            ],
            ErrorCategory.RESTORE: [
                "Inspect the partially restored sandbox before removing it",
                "Increase the restore timeout for large chains",
            ],
            ErrorCategory.PACKAGE: [
                "Ensure the package directory is writable",
                "Verify the Full backup archive still exists",
            ],
            ErrorCategory.NETWORK: [
                "Check network connectivity to the target host",
                "Confirm SSH credentials and host key policy",
                "Verify the SSH port is reachable through the firewall",
            ],
            ErrorCategory.REMOTE: [
                "Review the remote install output",
                "Verify the install command is available on the target host",
            ],
            ErrorCategory.VALIDATION: [
                "Review validation criteria and requirements",
                "Check the package manifest against the installed sandbox",
            ],
            ErrorCategory.UNKNOWN: [
                "Review error logs for additional context",
            ],
        }

    def categorize_error(self, error: Exception, context: Optional[ErrorContext] = None) -> ErrorInfo:
        """
        Categorize an error and create error information.

        Args:
            error: The exception that occurred
            context: Optional context information

        Returns:
            ErrorInfo object with categorized error details
        """
        mapping = self._error_mappings.get(type(error))

        if not mapping:
            for exc_type, exc_mapping in self._error_mappings.items():
                if isinstance(error, exc_type):
                    mapping = exc_mapping
                    break

        if not mapping:
            mapping = {
                "category": ErrorCategory.UNKNOWN,
                "severity": ErrorSeverity.MEDIUM,
                "retryable": False,
            }

        category = mapping["category"]
        context = context or ErrorContext()
        details = getattr(error, "details", {}) or {}
        context.sandbox_id = context.sandbox_id or details.get("sandbox_id")
        context.record_id = context.record_id or details.get("record_id")
        context.target_host = context.target_host or details.get("target_host")

        return ErrorInfo(
            error=error,
            category=category,
            severity=mapping["severity"],
            context=context,
            exit_code=self.exit_code_for(error),
            remediation_steps=self._remediation_guides.get(category, []),
            traceback_str=traceback.format_exc(),
            retry_count=getattr(error, "_retry_count", 0),
            is_retryable=mapping["retryable"],
        )

    @staticmethod
    def exit_code_for(error: Optional[BaseException]) -> ExitCode:
        """Map an exception (or its absence) to a process exit code."""
        if error is None:
            return ExitCode.SUCCESS
        if isinstance(error, (ValidationError, ChainIntegrityError)):
            return ExitCode.VALIDATION_FAILURE
        return ExitCode.FAILURE

    def handle_error(self, error: Exception, context: Optional[ErrorContext] = None) -> ErrorInfo:
        """Categorize and log an error."""
        error_info = self.categorize_error(error, context)
        self._log_error(error_info)
        return error_info

    def _log_error(self, error_info: ErrorInfo) -> None:
        """Log error information with appropriate level."""
        log_data = {
            "error_type": type(error_info.error).__name__,
            "error_message": str(error_info.error),
            "category": error_info.category.value,
            "severity": error_info.severity.value,
            "operation": error_info.context.operation,
            "sandbox_id": error_info.context.sandbox_id,
            "record_id": error_info.context.record_id,
            "target_host": error_info.context.target_host,
            "retry_count": error_info.retry_count,
            "is_retryable": error_info.is_retryable,
        }
        message = f"{error_info.category.value} error: {error_info.error}"

        if error_info.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(message, extra=log_data)
        elif error_info.severity == ErrorSeverity.HIGH:
            self.logger.error(message, extra=log_data)
        elif error_info.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(message, extra=log_data)
        else:
            self.logger.info(message, extra=log_data)


class RetryHandler:
    """
    Handles retry logic with exponential backoff and jitter.
    """

    def __init__(self, error_handler: Optional[ErrorHandler] = None):
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)

    async def retry_with_backoff(
        self,
        func: Callable,
        *args,
        retry_config: Optional[RetryConfig] = None,
        context: Optional[ErrorContext] = None,
        **kwargs
    ) -> Any:
        """
        Execute a coroutine function with retry logic and exponential backoff.

        Raises:
            The last exception if all retries are exhausted, or immediately
            when the exception is not in ``retryable_exceptions``.
        """
        config = retry_config or RetryConfig()
        last_exception: Optional[Exception] = None

        for attempt in range(config.max_attempts):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                last_exception = e
                setattr(e, "_retry_count", attempt + 1)
                self.error_handler.handle_error(e, context)

                if config.retryable_exceptions and not any(
                    isinstance(e, exc_type) for exc_type in config.retryable_exceptions
                ):
                    raise

                if attempt == config.max_attempts - 1:
                    break

                delay = min(
                    config.base_delay * (config.exponential_base ** attempt),
                    config.max_delay
                )
                if config.jitter:
                    delay *= (0.5 + random.random() * 0.5)

                self.logger.info(
                    f"Retrying in {delay:.2f} seconds (attempt {attempt + 1}/{config.max_attempts})"
                )
                await asyncio.sleep(delay)

        raise last_exception


def create_network_retry_config(max_attempts: int = 3, base_delay: float = 2.0) -> RetryConfig:
    """Create retry configuration for remote copy steps."""
    return RetryConfig(
        max_attempts=max(1, max_attempts),
        base_delay=base_delay,
        max_delay=30.0,
        retryable_exceptions=[NetworkError, TimeoutError],
    )
