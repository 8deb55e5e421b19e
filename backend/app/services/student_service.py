"""
Student Service - student records, duplicate checks and bulk creation
"""

import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.core.exceptions import DuplicateStudentError, ResourceNotFoundError, StudentNotFoundError
from app.core.logging_config import logger
from app.models.academic import AcademicYear, Department, Faculty
from app.models.document import Document
from app.models.student import Student, StudentStatus
from app.schemas.student import StudentCreate, StudentResponse, StudentUpdate
from app.services.document_service import serialize_document


def _student_options():
    return (
        selectinload(Student.department),
        selectinload(Student.faculty),
        selectinload(Student.academic_year),
    )


def serialize_student(student: Student, document_count: int = 0) -> Dict[str, Any]:
    return StudentResponse(
        id=student.id,
        registration_id=student.registration_id,
        certificate_id=student.certificate_id,
        full_name=student.full_name,
        gender=student.gender,
        phone_number=student.phone_number,
        department_id=student.department_id,
        department_name=student.department.name if student.department else None,
        department_code=student.department.code if student.department else None,
        faculty_id=student.faculty_id,
        faculty_name=student.faculty.name if student.faculty else None,
        academic_year_id=student.academic_year_id,
        academic_year=student.academic_year.year if student.academic_year else None,
        gpa=student.gpa,
        grade=student.grade,
        graduation_date=student.graduation_date,
        status=student.status,
        document_count=document_count,
        created_at=student.created_at,
    ).model_dump(mode="json")


def student_cache_keys(students: Iterable[Student]) -> Dict[str, List[str]]:
    """Keys under which a student's data is cached: detail by id, documents by reg id, verification by both"""
    detail, documents, verification = [], [], []
    for student in students:
        detail.append(str(student.id))
        documents.append(student.registration_id)
        verification.append(student.registration_id)
        if student.certificate_id:
            verification.append(student.certificate_id.upper())
    return {"detail": detail, "documents": documents, "verification": verification}


class StudentService:

    def __init__(self, db: AsyncSession):
        self.db = db

    # ========== Reads ==========

    async def list_students(
        self,
        page: int = 1,
        page_size: int = 20,
        search: Optional[str] = None,
        department_id: Optional[int] = None,
        faculty_id: Optional[int] = None,
        academic_year_id: Optional[int] = None,
        status: Optional[StudentStatus] = None,
    ) -> Dict[str, Any]:
        conditions = []
        if search:
            term = f"%{search.strip()}%"
            conditions.append(or_(
                Student.full_name.ilike(term),
                Student.registration_id.ilike(term),
                Student.certificate_id.ilike(term),
            ))
        if department_id is not None:
            conditions.append(Student.department_id == department_id)
        if faculty_id is not None:
            conditions.append(Student.faculty_id == faculty_id)
        if academic_year_id is not None:
            conditions.append(Student.academic_year_id == academic_year_id)
        if status is not None:
            conditions.append(Student.status == status)

        total = await self.db.scalar(select(func.count(Student.id)).where(*conditions)) or 0

        doc_counts = (
            select(Document.student_id, func.count(Document.id).label("n"))
            .group_by(Document.student_id)
            .subquery()
        )
        result = await self.db.execute(
            select(Student, func.coalesce(doc_counts.c.n, 0))
            .outerjoin(doc_counts, doc_counts.c.student_id == Student.id)
            .options(*_student_options())
            .where(*conditions)
            .order_by(Student.registration_id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )

        return {
            "students": [serialize_student(student, count) for student, count in result.all()],
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": math.ceil(total / page_size) if total else 0,
        }

    async def get_student(self, student_id: int) -> Student:
        result = await self.db.execute(
            select(Student)
            .options(*_student_options(), selectinload(Student.documents))
            .where(Student.id == student_id)
            .execution_options(populate_existing=True)
        )
        student = result.scalar_one_or_none()
        if student is None:
            raise StudentNotFoundError(student_id)
        return student

    async def get_by_registration_id(self, registration_id: str) -> Optional[Student]:
        result = await self.db.execute(
            select(Student)
            .options(*_student_options(), selectinload(Student.documents))
            .where(Student.registration_id == registration_id.strip().upper())
        )
        return result.scalar_one_or_none()

    async def get_by_certificate_id(self, certificate_id: str) -> Optional[Student]:
        result = await self.db.execute(
            select(Student)
            .options(*_student_options(), selectinload(Student.documents))
            .where(Student.certificate_id == certificate_id.strip())
        )
        return result.scalar_one_or_none()

    async def get_detail(self, student_id: int) -> Dict[str, Any]:
        student = await self.get_student(student_id)
        data = serialize_student(student, len(student.documents))
        data["documents"] = [serialize_document(doc) for doc in student.documents]
        return data

    async def list_identities(self) -> List[Dict[str, Optional[str]]]:
        """Every registration id / certificate id pair, for import duplicate checks"""
        result = await self.db.execute(
            select(Student.registration_id, Student.certificate_id).order_by(Student.registration_id)
        )
        return [
            {"registration_id": registration_id, "certificate_id": certificate_id}
            for registration_id, certificate_id in result.all()
        ]

    async def registration_ids(self, candidates: Iterable[str]) -> List[str]:
        """Subset of candidates that exist as students"""
        wanted = sorted({c.strip().upper() for c in candidates if c})
        if not wanted:
            return []
        result = await self.db.execute(
            select(Student.registration_id).where(Student.registration_id.in_(wanted))
        )
        return sorted(result.scalars().all())

    # ========== Conflict checks ==========

    async def find_conflicts(self, identities: Sequence[Tuple[str, Optional[str]]],
                             exclude_id: Optional[int] = None) -> List[str]:
        """
        Registration ids or certificate ids already used by a student,
        or repeated within `identities` itself.
        """
        registrations = [reg for reg, _ in identities]
        certificates = [cert for _, cert in identities if cert]
        conflicts: List[str] = []

        seen_regs, seen_certs = set(), set()
        for reg, cert in identities:
            if reg in seen_regs:
                conflicts.append(reg)
            seen_regs.add(reg)
            if cert:
                if cert in seen_certs:
                    conflicts.append(cert)
                seen_certs.add(cert)

        clauses = []
        if registrations:
            clauses.append(Student.registration_id.in_(registrations))
        if certificates:
            clauses.append(Student.certificate_id.in_(certificates))
        if clauses:
            query = select(Student.registration_id, Student.certificate_id).where(or_(*clauses))
            if exclude_id is not None:
                query = query.where(Student.id != exclude_id)
            wanted_regs, wanted_certs = set(registrations), set(certificates)
            for reg, cert in (await self.db.execute(query)).all():
                if reg in wanted_regs:
                    conflicts.append(reg)
                if cert and cert in wanted_certs:
                    conflicts.append(cert)

        return sorted(set(conflicts))

    async def _resolve_references(self, department_id: Optional[int], faculty_id: Optional[int],
                                  academic_year_id: Optional[int]) -> Optional[int]:
        """Check referenced rows exist; returns the faculty id to store"""
        if department_id is not None:
            department = await self.db.get(Department, department_id)
            if department is None:
                raise ResourceNotFoundError("Department", department_id)
            if faculty_id is None:
                faculty_id = department.faculty_id
        if faculty_id is not None and await self.db.get(Faculty, faculty_id) is None:
            raise ResourceNotFoundError("Faculty", faculty_id)
        if academic_year_id is not None and await self.db.get(AcademicYear, academic_year_id) is None:
            raise ResourceNotFoundError("Academic year", academic_year_id)
        return faculty_id

    # ========== Writes ==========

    async def create_student(self, data: StudentCreate) -> Student:
        conflicts = await self.find_conflicts([(data.registration_id, data.certificate_id)])
        if conflicts:
            raise DuplicateStudentError(conflicts)
        values = data.model_dump()
        values["faculty_id"] = await self._resolve_references(
            data.department_id, data.faculty_id, data.academic_year_id
        )
        student = Student(**values)
        self.db.add(student)
        await self.db.flush()
        logger.info(f"Created student: {student.registration_id}")
        return await self.get_student(student.id)

    async def bulk_create(self, items: List[StudentCreate]) -> List[Student]:
        """All or nothing: any conflicting id rejects the whole batch"""
        conflicts = await self.find_conflicts([(item.registration_id, item.certificate_id) for item in items])
        if conflicts:
            raise DuplicateStudentError(conflicts)

        resolved: Dict[Tuple[int, Optional[int], Optional[int]], Optional[int]] = {}
        students = []
        for item in items:
            refs = (item.department_id, item.faculty_id, item.academic_year_id)
            if refs not in resolved:
                resolved[refs] = await self._resolve_references(*refs)
            values = item.model_dump()
            values["faculty_id"] = resolved[refs]
            students.append(Student(**values))

        self.db.add_all(students)
        await self.db.flush()
        logger.info(f"Bulk created {len(students)} students")
        return students

    async def update_student(self, student_id: int, data: StudentUpdate) -> Student:
        student = await self.get_student(student_id)
        changes = data.model_dump(exclude_unset=True)

        if "certificate_id" in changes:
            cert = (changes["certificate_id"] or "").strip() or None
            changes["certificate_id"] = cert
            if cert:
                conflicts = await self.find_conflicts([(student.registration_id, cert)], exclude_id=student.id)
                if cert in conflicts:
                    raise DuplicateStudentError([cert])

        if {"department_id", "faculty_id", "academic_year_id"} & changes.keys():
            department_id = changes.get("department_id") or student.department_id
            faculty_id = changes.get("faculty_id")
            if faculty_id is None and "department_id" not in changes:
                faculty_id = student.faculty_id
            changes["faculty_id"] = await self._resolve_references(
                department_id, faculty_id, changes.get("academic_year_id", student.academic_year_id)
            )

        for key, value in changes.items():
            if key in ("full_name", "department_id", "status") and value is None:
                continue
            setattr(student, key, value)

        await self.db.flush()
        return await self.get_student(student_id)

    async def delete_student(self, student_id: int) -> Tuple[Student, List[str]]:
        """Delete the student and its documents; returns the stored file paths to remove"""
        student = await self.get_student(student_id)
        paths = [doc.file_path for doc in student.documents]
        await self.db.delete(student)
        await self.db.flush()
        logger.info(f"Deleted student: {student.registration_id} ({len(paths)} documents)")
        return student, paths


# ========== Cache loaders ==========

async def load_student_page(session_factory: async_sessionmaker, **filters) -> Dict[str, Any]:
    async with session_factory() as db:
        return await StudentService(db).list_students(**filters)


async def load_student_detail(session_factory: async_sessionmaker, student_id: int) -> Dict[str, Any]:
    async with session_factory() as db:
        return await StudentService(db).get_detail(student_id)


async def load_student_identities(session_factory: async_sessionmaker) -> List[Dict[str, Optional[str]]]:
    async with session_factory() as db:
        return await StudentService(db).list_identities()
