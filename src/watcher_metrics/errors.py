"""
Error types for the metrics rollup engine.

Storage operations report I/O trouble through structured results rather than
exceptions. The classes below are raised for configuration and argument
problems, and internally between the locking layer and the public operations
that translate them into "skipped" results.

Each subclass fixes its ``error_code``; the daemon logs that code together
with ``details`` when it refuses to start.
"""

from __future__ import annotations

from typing import Any, ClassVar


class MetricsError(Exception):
    """
    Base exception class for metrics engine errors.

    Attributes:
        error_code: Category of the error, fixed per subclass.
        message: Human-readable error message.
        details: Structured context such as the offending path or tier name.

    Example:
        >>> raise InvalidArgumentError(
        ...     "Tier intervals must be strictly increasing",
        ...     details={"tier": "5min"},
        ... )
    """

    error_code: ClassVar[str] = "unknown"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, details={self.details!r})"

    def log_fields(self) -> dict[str, Any]:
        """Fields suitable for ``extra=`` on a log call."""
        return {"error_code": self.error_code, "error": self.message, "details": self.details}


class InvalidArgumentError(MetricsError):
    """
    Invalid arguments or configuration.

    Raised for tier sets that break ordering or retention rules, unknown tier
    names and out-of-range parameters.
    """

    error_code = "invalid_argument"


class StorageUnavailableError(MetricsError):
    """A storage file cannot be opened or locked."""

    error_code = "unavailable"


class CorruptDataError(MetricsError):
    """Persisted data cannot be decoded."""

    error_code = "corrupt_data"


class LockHeldError(MetricsError):
    """
    A lock is held by another process.

    The daemon lock raises it when a live instance already runs; the rollup
    processor uses it to skip a cycle.
    """

    error_code = "lock_held"


class FailedPreconditionError(MetricsError):
    """The operation is not valid in the current state, e.g. a second scheduler start."""

    error_code = "failed_precondition"


class InternalError(MetricsError):
    """An aggregator or other internal component misbehaved."""

    error_code = "internal"
