"""
Unit tests for the error handling system.
"""

import logging
from unittest.mock import Mock

import pytest

from sandbox_vault.core.error_handler import (
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    ExitCode,
    RetryConfig,
    RetryHandler,
    create_network_retry_config,
)
from sandbox_vault.core.exceptions import (
    CaptureError,
    CatalogCorruptError,
    ChainIntegrityError,
    ConfigurationError,
    DependencyError,
    NetworkError,
    PackageError,
    RecordNotFoundError,
    RestoreTimeoutError,
    ValidationError,
)


class TestErrorHandler:
    """Test cases for ErrorHandler class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.logger = Mock(spec=logging.Logger)
        self.error_handler = ErrorHandler(logger=self.logger)

    def test_categorize_configuration_error(self):
        error = ConfigurationError("Invalid configuration")
        context = ErrorContext(operation="load_settings")

        error_info = self.error_handler.categorize_error(error, context)

        assert error_info.category == ErrorCategory.CONFIGURATION
        assert error_info.severity == ErrorSeverity.HIGH
        assert error_info.exit_code == ExitCode.FAILURE
        assert len(error_info.remediation_steps) > 0

    def test_subclass_uses_most_specific_mapping(self):
        error_info = self.error_handler.categorize_error(CatalogCorruptError("bad catalog"))

        assert error_info.category == ErrorCategory.CATALOG
        assert error_info.severity == ErrorSeverity.CRITICAL

    def test_dependency_error_is_low_severity(self):
        error = DependencyError("has dependents", dependents=["i1"])

        error_info = self.error_handler.categorize_error(error)

        assert error_info.severity == ErrorSeverity.LOW
        assert error.dependents == ["i1"]

    def test_network_errors_are_retryable(self):
        error_info = self.error_handler.categorize_error(NetworkError("refused"))

        assert error_info.category == ErrorCategory.NETWORK
        assert error_info.is_retryable is True

    def test_restore_timeout_is_retryable(self):
        assert self.error_handler.categorize_error(RestoreTimeoutError("slow")).is_retryable is True

    def test_unknown_error(self):
        error_info = self.error_handler.categorize_error(RuntimeError("boom"))

        assert error_info.category == ErrorCategory.UNKNOWN
        assert error_info.exit_code == ExitCode.FAILURE

    def test_context_is_filled_from_details(self):
        error = CaptureError("export failed", details={"sandbox_id": "dev", "record_id": "r1"})

        error_info = self.error_handler.categorize_error(error)

        assert error_info.context.sandbox_id == "dev"
        assert error_info.context.record_id == "r1"

    def test_exit_codes(self):
        assert ErrorHandler.exit_code_for(None) == ExitCode.SUCCESS
        assert ErrorHandler.exit_code_for(ValidationError("checks failed")) == ExitCode.VALIDATION_FAILURE
        assert ErrorHandler.exit_code_for(ChainIntegrityError("bad chain")) == ExitCode.VALIDATION_FAILURE
        assert ErrorHandler.exit_code_for(PackageError("no package")) == ExitCode.FAILURE
        assert int(ExitCode.VALIDATION_FAILURE) == 2

    def test_handle_error_logs_by_severity(self):
        self.error_handler.handle_error(CatalogCorruptError("bad catalog"))
        self.error_handler.handle_error(RecordNotFoundError("missing"))

        self.logger.critical.assert_called_once()
        self.logger.info.assert_called_once()

    def test_exception_details(self):
        error = NetworkError("refused", code="AUTHENTICATION_FAILED", details={"target_host": "host-a"})

        assert error.code == "AUTHENTICATION_FAILED"
        assert error.target_host == "host-a"
        assert NetworkError("refused").code == "NetworkError"


class TestRetryHandler:
    """Test cases for RetryHandler class."""

    def setup_method(self):
        self.retry_handler = RetryHandler(ErrorHandler(logger=Mock(spec=logging.Logger)))

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        calls = []

        async def operation():
            calls.append(1)
            return "done"

        result = await self.retry_handler.retry_with_backoff(operation)

        assert result == "done"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        async def operation(host):
            calls.append(host)
            if len(calls) < 3:
                raise NetworkError(f"{host} unreachable")
            return "copied"

        result = await self.retry_handler.retry_with_backoff(
            operation,
            "host-a",
            retry_config=create_network_retry_config(max_attempts=3, base_delay=0.0),
        )

        assert result == "copied"
        assert calls == ["host-a"] * 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        calls = []

        async def operation():
            calls.append(1)
            raise NetworkError("unreachable")

        with pytest.raises(NetworkError) as exc_info:
            await self.retry_handler.retry_with_backoff(
                operation,
                retry_config=RetryConfig(max_attempts=2, base_delay=0.0, retryable_exceptions=[NetworkError]),
            )

        assert len(calls) == 2
        assert exc_info.value._retry_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self):
        calls = []

        async def operation():
            calls.append(1)
            raise PackageError("corrupt package")

        with pytest.raises(PackageError):
            await self.retry_handler.retry_with_backoff(
                operation,
                retry_config=create_network_retry_config(max_attempts=5, base_delay=0.0),
            )

        assert len(calls) == 1

    def test_network_retry_config(self):
        config = create_network_retry_config(max_attempts=0)

        assert config.max_attempts == 1
        assert NetworkError in config.retryable_exceptions
        assert TimeoutError in config.retryable_exceptions
