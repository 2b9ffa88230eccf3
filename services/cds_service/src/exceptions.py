"""
Solace-AI CDS Service - Exception Hierarchy.
Structured errors for input validation, data availability and reference data failures.
"""
from __future__ import annotations
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import structlog

logger = structlog.get_logger(__name__)


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    EXTERNAL_SERVICE = "external_service"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class CDSError(Exception):
    """Base exception for all CDS errors with structured tracking."""
    error_code: str = "CDS_ERROR"
    category: ErrorCategory = ErrorCategory.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    retryable: bool = False

    def __init__(self, message: str, *, cause: Exception | None = None,
                 details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details = details or {}
        self.correlation_id = str(uuid.uuid4())
        self.timestamp = datetime.now(timezone.utc)
        self._log_error()

    def _log_error(self) -> None:
        log_data = {
            "error_code": self.error_code, "category": self.category.value,
            "severity": self.severity.value, "correlation_id": self.correlation_id,
            "details": self.details,
        }
        if self.cause:
            log_data["cause_type"] = type(self.cause).__name__
            log_data["cause_message"] = str(self.cause)
        if self.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            logger.error(self.message, **log_data)
        else:
            logger.warning(self.message, **log_data)

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.error_code, "message": self.message,
                          "retryable": self.retryable,
                          "correlation_id": self.correlation_id,
                          "timestamp": self.timestamp.isoformat()}}


class InputInvalidError(CDSError):
    """Request is missing required identifiers or carries unusable values."""
    error_code = "INPUT_INVALID"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        self.field = field
        super().__init__(message, details=details, **kwargs)


class DataUnavailableError(CDSError):
    """Snapshot or reference data could not be fetched."""
    error_code = "DATA_UNAVAILABLE"
    category = ErrorCategory.EXTERNAL_SERVICE
    severity = ErrorSeverity.MEDIUM


class SnapshotNotFoundError(DataUnavailableError):
    """No snapshot exists for the requested patient."""
    error_code = "SNAPSHOT_NOT_FOUND"
    category = ErrorCategory.NOT_FOUND

    def __init__(self, patient_id: str, **kwargs: Any) -> None:
        self.patient_id = patient_id
        super().__init__(f"Snapshot for patient {patient_id} not found",
                         details={"patient_id": patient_id}, **kwargs)


class SnapshotUnavailableError(DataUnavailableError):
    """The snapshot reader failed; callers may retry."""
    error_code = "SNAPSHOT_UNAVAILABLE"
    retryable = True

    def __init__(self, patient_id: str, **kwargs: Any) -> None:
        self.patient_id = patient_id
        super().__init__(f"Snapshot for patient {patient_id} is unavailable",
                         details={"patient_id": patient_id}, **kwargs)


class ReferenceDataError(DataUnavailableError):
    """Reference data source could not be loaded."""
    error_code = "REFERENCE_DATA_ERROR"
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.HIGH


class ExternalLookupError(DataUnavailableError):
    """External interaction database call failed."""
    error_code = "EXTERNAL_LOOKUP_FAILED"
    retryable = True
