"""
Certificate verification for the public portal.

An identifier is either a registration id (GRW-...) or a numeric
certificate id. Results, including "not found", are cached briefly under
the upper-cased identifier.
"""

from typing import Any, Dict, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.exceptions import InvalidIdentifierError
from app.services.document_service import serialize_document
from app.services.student_service import StudentService


REGISTRATION_PREFIX = "GRW-"


def parse_identifier(identifier: str) -> Tuple[str, str]:
    """Return (kind, normalized) where kind is 'registration_id' or 'certificate_id'"""
    value = (identifier or "").strip().upper()
    if value.startswith(REGISTRATION_PREFIX) and len(value) > len(REGISTRATION_PREFIX):
        return "registration_id", value
    if value.isdigit():
        return "certificate_id", value
    raise InvalidIdentifierError(identifier)


async def lookup(session_factory: async_sessionmaker, identifier: str) -> Dict[str, Any]:
    """Verification payload; {"found": False, ...} when there is no such student"""
    kind, value = parse_identifier(identifier)
    async with session_factory() as db:
        service = StudentService(db)
        if kind == "registration_id":
            student = await service.get_by_registration_id(value)
        else:
            student = await service.get_by_certificate_id(value)

        if student is None:
            return {"found": False, "identifier": value, "lookup": kind, "student": None}

        return {
            "found": True,
            "identifier": value,
            "lookup": kind,
            "student": {
                "registration_id": student.registration_id,
                "certificate_id": student.certificate_id,
                "full_name": student.full_name,
                "department": student.department.name if student.department else None,
                "faculty": student.faculty.name if student.faculty else None,
                "academic_year": student.academic_year.year if student.academic_year else None,
                "gpa": student.gpa,
                "grade": student.grade,
                "graduation_date": student.graduation_date.isoformat() if student.graduation_date else None,
                "status": student.status.value,
                "documents": [serialize_document(doc) for doc in student.documents],
            },
        }
