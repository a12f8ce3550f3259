"""Application error taxonomy.

Data-quality problems (unparseable numbers, arithmetic mismatches) are
reported through result values and never raised. The classes below cover
contract violations and infrastructure failures that callers must handle.
"""

from typing import Any


class AppError(Exception):
    """Base class for all application errors.

    Attributes:
        message: Human-readable description
        code: Stable machine-readable error code
        status_code: HTTP status used when the error reaches the API
        details: Structured context for logs and API responses
    """

    code = "APP_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for API responses."""
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(AppError):
    """Bad input shape or business-rule failure that the user can correct."""

    code = "VALIDATION_ERROR"
    status_code = 400


class ExtractionError(AppError):
    """Extraction provider call failed or returned unusable data."""

    code = "EXTRACTION_ERROR"
    status_code = 502


class UnknownFormatError(AppError):
    """Requested output format is not registered."""

    code = "UNKNOWN_FORMAT"
    status_code = 400

    def __init__(self, format_id: str, available: list[str]) -> None:
        super().__init__(
            f"Unknown output format: '{format_id}'. Available formats: {', '.join(available)}",
            details={"format": format_id, "available": available},
        )
        self.format_id = format_id


class GeneratorSchemaError(AppError):
    """Canonical invoice lacks a field that the target format mandates."""

    code = "GENERATOR_SCHEMA_ERROR"
    status_code = 422

    def __init__(
        self, format_id: str, missing_fields: list[str], reason: str | None = None
    ) -> None:
        message = reason or (
            f"Format '{format_id}' requires missing fields: {', '.join(missing_fields)}"
        )
        super().__init__(message, details={"format": format_id, "fields": missing_fields})
        self.format_id = format_id
        self.missing_fields = missing_fields


class OptimisticLockError(AppError):
    """Conditional update matched zero rows because the version moved on."""

    code = "CONFLICT"
    status_code = 409

    def __init__(self, table: str, row_id: str, expected_version: int) -> None:
        super().__init__(
            f"Conflict: the {table} row {row_id} was modified by another request. "
            f"Expected version {expected_version}. Please reload and try again.",
            details={"table": table, "id": row_id, "expected_version": expected_version},
        )
        self.table = table
        self.row_id = row_id
        self.expected_version = expected_version


class StorageError(AppError):
    """Persistence backend failed for a reason other than a version conflict."""

    code = "STORAGE_ERROR"
    status_code = 500


class NotFoundError(AppError):
    """Requested record does not exist."""

    code = "NOT_FOUND"
    status_code = 404
