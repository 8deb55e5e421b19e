"""
Custom Exceptions for the Student Records Registry
==================================================

Every error raised by services derives from RegistryError and carries the
HTTP status the API layer answers with.

Usage:
    from app.core.exceptions import StudentNotFoundError, CSVImportError

    if not student:
        raise StudentNotFoundError(registration_id)

    try:
        rows = parse_student_csv(content)
    except CSVImportError as e:
        logger.warning(f"Rejected CSV: {e}")
        raise
"""

from typing import Optional, Any, Dict, List


class RegistryError(Exception):
    """Base exception for all registry errors"""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Resource Errors (404-type)
# ============================================

class ResourceNotFoundError(RegistryError):
    """Base class for not found errors"""

    status_code = 404

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            f"{resource_type} with ID '{resource_id}' not found",
            code=f"{resource_type.upper().replace(' ', '_')}_NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": str(resource_id)}
        )


class StudentNotFoundError(ResourceNotFoundError):
    """Student not found by id or registration id"""

    def __init__(self, student_id: Any):
        super().__init__("Student", student_id)


class DocumentNotFoundError(ResourceNotFoundError):
    """Document not found"""

    def __init__(self, document_id: Any):
        super().__init__("Document", document_id)


class CacheNamespaceNotFoundError(ResourceNotFoundError):
    """No cache registered under this namespace"""

    def __init__(self, namespace: str):
        super().__init__("Cache namespace", namespace)


# ============================================
# Validation Errors (400-type)
# ============================================

class ValidationError(RegistryError):
    """Input validation failed"""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class InvalidIdentifierError(ValidationError):
    """Verification identifier is neither a registration id nor a certificate id"""

    def __init__(self, identifier: str):
        super().__init__(
            f"Invalid identifier format: '{identifier}'. "
            "Use a registration id (GRW-...) or a numeric certificate id",
            field="identifier"
        )
        self.code = "INVALID_IDENTIFIER"


class InvalidFileTypeError(ValidationError):
    """Uploaded file extension is not allowed"""

    def __init__(self, filename: str, allowed: List[str]):
        super().__init__(
            f"File type not allowed: {filename}. Allowed: {', '.join(allowed)}",
            field="files"
        )
        self.code = "INVALID_FILE_TYPE"
        self.details["allowed"] = allowed


class FileTooLargeError(ValidationError):
    """Uploaded file exceeds the configured limit"""

    def __init__(self, filename: str, max_bytes: int):
        super().__init__(
            f"File too large: {filename}. Maximum size is {max_bytes // (1024 * 1024)}MB",
            field="file"
        )
        self.code = "FILE_TOO_LARGE"
        self.details["max_bytes"] = max_bytes


# ============================================
# Import Errors (fatal, 400-type)
# ============================================

class CSVImportError(RegistryError):
    """The CSV file as a whole cannot be processed (encoding, empty, missing columns)"""

    status_code = 400

    def __init__(self, message: str, missing_columns: Optional[List[str]] = None):
        details = {"missing_columns": missing_columns} if missing_columns else {}
        super().__init__(message, code="CSV_IMPORT_ERROR", details=details)


class ZipArchiveError(RegistryError):
    """The ZIP archive is corrupt, empty or too large"""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message, code="ZIP_ARCHIVE_ERROR")


# ============================================
# Conflict Errors (409-type)
# ============================================

class ConflictError(RegistryError):
    """Operation conflicts with existing data"""

    status_code = 409

    def __init__(self, message: str, code: str = "CONFLICT",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class DuplicateStudentError(ConflictError):
    """Registration id or certificate id already in use"""

    def __init__(self, conflicting_ids: List[str]):
        super().__init__(
            "Students already exist with these registration or certificate ids",
            code="DUPLICATE_STUDENT",
            details={"conflicting_ids": conflicting_ids}
        )


class ResourceInUseError(ConflictError):
    """Resource cannot be deleted while other records reference it"""

    def __init__(self, resource_type: str, resource_id: Any, dependants: str):
        super().__init__(
            f"Cannot delete {resource_type.lower()} '{resource_id}' with existing {dependants}",
            code="RESOURCE_IN_USE",
            details={"resource_type": resource_type, "resource_id": str(resource_id)}
        )


# ============================================
# Storage Errors
# ============================================

class StorageError(RegistryError):
    """File storage operation failed"""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message, code="STORAGE_ERROR", details={"path": path} if path else {})


# ============================================
# Helper function for API responses
# ============================================

def error_response(error: RegistryError) -> Dict[str, Any]:
    """Convert exception to API error response format"""
    return {
        "success": False,
        "error": error.to_dict()
    }
