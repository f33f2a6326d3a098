"""
Tests for the errors module.

This test module validates:
- DasharrError base class functionality
- Error subclasses and their error codes
- Error serialization (to_dict)
"""

from __future__ import annotations

import pytest

from dasharr.errors import (
    CollectionInProgressError,
    DasharrError,
    EncryptionError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    MigrationError,
    StorageError,
    UnavailableError,
)

# =============================================================================
# Tests for DasharrError Base Class
# =============================================================================


class TestDasharrError:
    """Tests for DasharrError base class."""

    def test_init_with_all_args(self) -> None:
        """Test DasharrError initialization with all arguments."""
        error = DasharrError(
            error_code="test_error",
            message="Test error message",
            details={"key": "value"},
        )

        assert error.error_code == "test_error"
        assert error.message == "Test error message"
        assert error.details == {"key": "value"}

    def test_details_default_to_empty_dict(self) -> None:
        """Test that details default to an empty dict."""
        error = DasharrError(error_code="test_error", message="Test message")
        assert error.details == {}

    def test_str_is_message(self) -> None:
        """Test DasharrError string representation."""
        error = DasharrError(error_code="test_error", message="Test error message")
        assert str(error) == "Test error message"

    def test_repr_contains_fields(self) -> None:
        """Test DasharrError repr representation."""
        error = DasharrError(
            error_code="test_error",
            message="Test message",
            details={"instance_id": "radarr1"},
        )
        repr_str = repr(error)

        assert "DasharrError" in repr_str
        assert "test_error" in repr_str
        assert "radarr1" in repr_str

    def test_to_dict(self) -> None:
        """Test DasharrError to_dict serialization."""
        error = DasharrError(
            error_code="test_error",
            message="Test message",
            details={"key": "value"},
        )

        assert error.to_dict() == {
            "error_code": "test_error",
            "message": "Test message",
            "details": {"key": "value"},
        }


# =============================================================================
# Tests for Error Subclasses
# =============================================================================


class TestErrorSubclasses:
    """Tests for the error subclasses."""

    @pytest.mark.parametrize(
        ("error_class", "expected_code", "parent"),
        [
            (InvalidArgumentError, "invalid_argument", DasharrError),
            (FailedPreconditionError, "failed_precondition", DasharrError),
            (UnavailableError, "unavailable", DasharrError),
            (InternalError, "internal", DasharrError),
            (StorageError, "unavailable", UnavailableError),
            (EncryptionError, "internal", InternalError),
            (MigrationError, "internal", InternalError),
        ],
    )
    def test_error_codes_and_hierarchy(
        self,
        error_class: type[DasharrError],
        expected_code: str,
        parent: type[DasharrError],
    ) -> None:
        """Test each subclass sets its error code and parent class."""
        error = error_class("Something went wrong", details={"x": 1})

        assert error.error_code == expected_code
        assert error.message == "Something went wrong"
        assert error.details == {"x": 1}
        assert isinstance(error, parent)

    def test_collection_in_progress_defaults(self) -> None:
        """Test CollectionInProgressError has a default message."""
        error = CollectionInProgressError()

        assert error.message == "Metrics collection already in progress"
        assert error.error_code == "collection_in_progress"
        assert isinstance(error, FailedPreconditionError)

    def test_errors_can_be_chained(self) -> None:
        """Test that errors keep their cause when raised from another."""
        with pytest.raises(MigrationError) as exc_info:
            try:
                raise ValueError("bad data")
            except ValueError as e:
                raise MigrationError("Migration 2 failed") from e

        assert isinstance(exc_info.value.__cause__, ValueError)
