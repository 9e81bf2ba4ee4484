"""
Tests for the errors module.

This test module validates:
- Fixed error codes per error class
- Message and details handling on MetricsError
- The fields handed to structured log calls
"""

from __future__ import annotations

import pytest

from watcher_metrics.errors import (
    CorruptDataError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    LockHeldError,
    MetricsError,
    StorageUnavailableError,
)

# =============================================================================
# Tests for Error Codes
# =============================================================================


@pytest.mark.parametrize(
    ("error_class", "code"),
    [
        (InvalidArgumentError, "invalid_argument"),
        (StorageUnavailableError, "unavailable"),
        (CorruptDataError, "corrupt_data"),
        (LockHeldError, "lock_held"),
        (FailedPreconditionError, "failed_precondition"),
        (InternalError, "internal"),
    ],
)
def test_error_codes(error_class: type[MetricsError], code: str) -> None:
    """Test that every subclass carries its code and can be caught as MetricsError."""
    with pytest.raises(MetricsError) as exc_info:
        raise error_class("failed")

    assert exc_info.value.error_code == code
    assert isinstance(exc_info.value, error_class)


# =============================================================================
# Tests for MetricsError Attributes
# =============================================================================


class TestMetricsError:
    """Tests for message and details handling."""

    def test_message_is_exception_text(self) -> None:
        """Test that str() of the error is its message."""
        error = InvalidArgumentError("Unknown tier: 10min", details={"tier": "10min"})

        assert str(error) == "Unknown tier: 10min"
        assert error.message == "Unknown tier: 10min"
        assert error.details == {"tier": "10min"}

    def test_details_default_to_empty(self) -> None:
        """Test that omitted details become an empty dict."""
        assert LockHeldError("held").details == {}

    def test_details_are_copied(self) -> None:
        """Test that mutating the caller's dict does not alter the error."""
        details = {"path": "/data/ping/raw.log"}
        error = StorageUnavailableError("Unable to open file", details=details)

        details["path"] = "/elsewhere"

        assert error.details == {"path": "/data/ping/raw.log"}

    def test_repr(self) -> None:
        """Test that repr names the class, message and details."""
        error = CorruptDataError("Invalid state file", details={"line": 3})

        assert repr(error) == "CorruptDataError('Invalid state file', details={'line': 3})"


class TestLogFields:
    """Tests for MetricsError.log_fields."""

    def test_log_fields(self) -> None:
        """Test the fields passed as logging extras."""
        error = LockHeldError(
            "Daemon already running", details={"lock_file": "/run/rollupd.lock"}
        )

        assert error.log_fields() == {
            "error_code": "lock_held",
            "error": "Daemon already running",
            "details": {"lock_file": "/run/rollupd.lock"},
        }

    def test_log_fields_avoid_reserved_message_key(self) -> None:
        """Test that log fields never use the LogRecord 'message' attribute."""
        fields = FailedPreconditionError("Scheduler is already running").log_fields()

        assert "message" not in fields
