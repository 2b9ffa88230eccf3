"""
Unit tests for Solace-AI CDS exception hierarchy.
"""
from __future__ import annotations
from services.cds_service.src.exceptions import (
    CDSError, DataUnavailableError, ErrorCategory, ExternalLookupError, InputInvalidError,
    ReferenceDataError, SnapshotNotFoundError, SnapshotUnavailableError,
)


class TestExceptionHierarchy:
    """Tests for error codes and classification."""

    def test_snapshot_errors_are_data_unavailable(self) -> None:
        """Test snapshot failures share the data-unavailable base."""
        not_found = SnapshotNotFoundError("p-1")
        unavailable = SnapshotUnavailableError("p-1")
        assert isinstance(not_found, DataUnavailableError)
        assert not_found.category == ErrorCategory.NOT_FOUND
        assert not_found.retryable is False
        assert unavailable.retryable is True
        assert unavailable.details == {"patient_id": "p-1"}

    def test_reference_and_lookup_errors(self) -> None:
        """Test reference and lookup failures keep their own codes."""
        assert ReferenceDataError("x").error_code == "REFERENCE_DATA_ERROR"
        assert ExternalLookupError("x").error_code == "EXTERNAL_LOOKUP_FAILED"
        assert isinstance(ExternalLookupError("x"), CDSError)

    def test_input_invalid_field(self) -> None:
        """Test the offending field is recorded in details."""
        error = InputInvalidError("Patient id is required", field="patient_id")
        assert error.field == "patient_id"
        assert error.details == {"field": "patient_id"}

    def test_to_dict(self) -> None:
        """Test the serialized error envelope."""
        cause = ValueError("bad")
        payload = SnapshotUnavailableError("p-2", cause=cause).to_dict()["error"]
        assert payload["code"] == "SNAPSHOT_UNAVAILABLE"
        assert payload["retryable"] is True
        assert payload["message"] == "Snapshot for patient p-2 is unavailable"
        assert payload["correlation_id"]
