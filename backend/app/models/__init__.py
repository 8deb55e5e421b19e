# Re-export all models for convenient imports
from app.models.academic import Faculty, Department, AcademicYear
from app.models.student import Student, Gender, StudentStatus
from app.models.document import Document, DocumentType
from app.models.audit_log import AuditLog

__all__ = [
    # Academic configuration
    "Faculty",
    "Department",
    "AcademicYear",
    # Students
    "Student",
    "Gender",
    "StudentStatus",
    # Documents
    "Document",
    "DocumentType",
    # Audit
    "AuditLog",
]
