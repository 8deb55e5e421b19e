"""
Student record endpoints.

Static routes (/validation, /bulk, /by-registration) are declared before
/{student_id} so they are not captured by it.
"""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from typing import Optional

from app.api.dependencies import commit_changes, get_cache_registry, get_invalidator, get_storage
from app.core.database import get_db, get_session_factory
from app.core.exceptions import StudentNotFoundError
from app.core.logging_config import logger
from app.models.student import StudentStatus
from app.schemas.student import BulkCreateResponse, StudentBulkCreate, StudentCreate, StudentUpdate
from app.services.audit_service import AuditService
from app.services.cache_invalidation import CacheInvalidator, EntityType
from app.services.cache_service import CacheNamespace, CacheRegistry, make_key
from app.services.document_service import DocumentService, LocalDocumentStorage, serialize_document
from app.services.student_service import (
    StudentService, load_student_detail, load_student_identities, load_student_page,
    serialize_student, student_cache_keys,
)

router = APIRouter()


def _scoped_keys(students) -> dict:
    keys = student_cache_keys(students)
    return {
        CacheNamespace.STUDENT_DETAIL: keys["detail"],
        CacheNamespace.DOCUMENTS: keys["documents"],
        CacheNamespace.VERIFICATION: keys["verification"],
    }


@router.get("")
async def list_students(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    department_id: Optional[int] = None,
    faculty_id: Optional[int] = None,
    academic_year_id: Optional[int] = None,
    status: Optional[StudentStatus] = None,
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """List students with search, filters and pagination (cached per query)"""
    filters = dict(
        page=page,
        page_size=page_size,
        search=search.strip() if search else None,
        department_id=department_id,
        faculty_id=faculty_id,
        academic_year_id=academic_year_id,
        status=status,
    )
    return await registry.get_or_load(
        CacheNamespace.STUDENTS,
        make_key(**filters),
        lambda: load_student_page(session_factory, **filters),
    )


@router.get("/validation")
async def list_student_identities(
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Registration and certificate ids of every student, for client-side duplicate checks"""
    students = await registry.get_or_load(
        CacheNamespace.STUDENT_VALIDATION, "all", lambda: load_student_identities(session_factory)
    )
    return {"students": students, "total": len(students)}


@router.get("/by-registration/{registration_id}")
async def get_student_by_registration(registration_id: str, db: AsyncSession = Depends(get_db)):
    student = await StudentService(db).get_by_registration_id(registration_id)
    if student is None:
        raise StudentNotFoundError(registration_id.strip().upper())
    data = serialize_student(student, len(student.documents))
    data["documents"] = [serialize_document(doc) for doc in student.documents]
    return data


@router.post("/bulk", status_code=201, response_model=BulkCreateResponse)
async def bulk_create_students(
    data: StudentBulkCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """
    Create many students at once.

    Any registration or certificate id that already exists (or repeats in
    the request) rejects the whole batch with 409.
    """
    students = await StudentService(db).bulk_create(data.students)
    registration_ids = [student.registration_id for student in students]
    await AuditService(db).record(
        "bulk_create", "student", None, {"count": len(students), "registration_ids": registration_ids}, request
    )
    await commit_changes(db, invalidator, EntityType.STUDENT)
    logger.info(f"Bulk import created {len(students)} students")
    return BulkCreateResponse(created=len(students), registration_ids=registration_ids)


@router.get("/{student_id}")
async def get_student(
    student_id: int,
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Student detail with documents (served stale while a refresh runs)"""
    return await registry.swr(CacheNamespace.STUDENT_DETAIL).get(
        str(student_id), lambda: load_student_detail(session_factory, student_id)
    )


@router.post("", status_code=201)
async def create_student(
    data: StudentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    student = await StudentService(db).create_student(data)
    await AuditService(db).record(
        "create", "student", student.id, {"registration_id": student.registration_id}, request
    )
    await commit_changes(db, invalidator, EntityType.STUDENT, keys=_scoped_keys([student]))
    return serialize_student(student)


@router.put("/{student_id}")
async def update_student(
    student_id: int,
    data: StudentUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    service = StudentService(db)
    before = await service.get_student(student_id)
    previous_certificate = before.certificate_id

    student = await service.update_student(student_id, data)
    keys = _scoped_keys([student])
    if previous_certificate:
        keys[CacheNamespace.VERIFICATION].append(previous_certificate.upper())

    await AuditService(db).record(
        "update", "student", student_id, data.model_dump(exclude_unset=True, mode="json"), request
    )
    await commit_changes(db, invalidator, EntityType.STUDENT, keys=keys)
    return serialize_student(student, len(student.documents))


@router.delete("/{student_id}")
async def delete_student(
    student_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    storage: LocalDocumentStorage = Depends(get_storage),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """Delete a student together with its documents and stored files"""
    student, paths = await StudentService(db).delete_student(student_id)
    await AuditService(db).record(
        "delete", "student", student_id,
        {"registration_id": student.registration_id, "documents": len(paths)}, request,
    )
    await commit_changes(db, invalidator, EntityType.STUDENT, keys=_scoped_keys([student]))
    removed = await DocumentService(db, storage).remove_files(paths)
    return {
        "success": True,
        "message": f"Student {student.registration_id} deleted",
        "documents_removed": removed,
    }
