"""
Error types for the Dasharr metrics engine.

This module defines the DasharrError base class and subclasses for domain-specific
errors. Components raise these instead of returning ad-hoc status values so that
callers (the scheduler, the composition root, an HTTP layer) can map them to
log levels, exit codes or response statuses in one place.
"""

from __future__ import annotations

from typing import Any


class DasharrError(Exception):
    """
    Base exception class for engine errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "failed_precondition", "unavailable", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., parameter values, context).

    Example:
        >>> raise DasharrError(
        ...     error_code="invalid_argument",
        ...     message="days_to_keep must be positive",
        ...     details={"days_to_keep": -1},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a DasharrError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(DasharrError):
    """Error raised when an operation receives invalid input arguments."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class UnavailableError(DasharrError):
    """
    Error raised when a required resource is unavailable.

    Used when the database cannot be opened or a push target cannot be reached.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(DasharrError):
    """
    Error raised when a precondition for the operation is not met.

    Used when a component is in the wrong state for the requested operation,
    for example a scheduler that is already running.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class InternalError(DasharrError):
    """
    Error raised for unexpected internal errors.

    These should be logged with full stack traces.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


class CollectionInProgressError(FailedPreconditionError):
    """Raised when a collection cycle is requested while another one is running."""

    def __init__(
        self,
        message: str = "Metrics collection already in progress",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.error_code = "collection_in_progress"


class StorageError(UnavailableError):
    """Raised when a read or write against the metrics database fails."""


class EncryptionError(InternalError):
    """Raised when a credential cannot be encrypted."""


class MigrationError(InternalError):
    """
    Raised when a schema migration step fails.

    The store has already attempted a rollback and restore when this is raised;
    the process must not keep running on the partially migrated schema.
    """
