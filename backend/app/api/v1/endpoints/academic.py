"""
Academic configuration endpoints: faculties, departments, academic years.

Lists are read through the cache; every mutation is audited and then
invalidates the namespaces mapped to its entity.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from typing import Optional

from app.api.dependencies import commit_changes, get_cache_registry, get_invalidator
from app.core.database import get_db, get_session_factory
from app.schemas.academic import (
    AcademicYearCreate, AcademicYearUpdate,
    DepartmentCreate, DepartmentUpdate,
    FacultyCreate, FacultyUpdate,
)
from app.services.academic_service import (
    AcademicService, load_academic_years, load_departments, load_faculties,
    serialize_academic_year, serialize_department, serialize_faculty,
)
from app.services.audit_service import AuditService
from app.services.cache_invalidation import CacheInvalidator, EntityType
from app.services.cache_service import CacheNamespace, CacheRegistry, make_key

router = APIRouter()


# ==================== Faculties ====================

@router.get("/faculties")
async def list_faculties(
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """List faculties with their department counts"""
    faculties = await registry.get_or_load(
        CacheNamespace.FACULTIES, "all", lambda: load_faculties(session_factory)
    )
    return {"faculties": faculties, "total": len(faculties)}


@router.get("/faculties/{faculty_id}")
async def get_faculty(faculty_id: int, db: AsyncSession = Depends(get_db)):
    faculty = await AcademicService(db).get_faculty(faculty_id)
    return serialize_faculty(faculty)


@router.post("/faculties", status_code=201)
async def create_faculty(
    data: FacultyCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    faculty = await AcademicService(db).create_faculty(data)
    await AuditService(db).record("create", "faculty", faculty.id, {"name": faculty.name}, request)
    await commit_changes(db, invalidator, EntityType.FACULTY)
    return serialize_faculty(faculty)


@router.put("/faculties/{faculty_id}")
async def update_faculty(
    faculty_id: int,
    data: FacultyUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    faculty = await AcademicService(db).update_faculty(faculty_id, data)
    await AuditService(db).record(
        "update", "faculty", faculty_id, data.model_dump(exclude_unset=True), request
    )
    await commit_changes(db, invalidator, EntityType.FACULTY)
    return serialize_faculty(faculty)


@router.delete("/faculties/{faculty_id}")
async def delete_faculty(
    faculty_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    faculty = await AcademicService(db).delete_faculty(faculty_id)
    await AuditService(db).record("delete", "faculty", faculty_id, {"name": faculty.name}, request)
    await commit_changes(db, invalidator, EntityType.FACULTY)
    return {"success": True, "message": f"Faculty '{faculty.name}' deleted"}


# ==================== Departments ====================

@router.get("/departments")
async def list_departments(
    faculty_id: Optional[int] = None,
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """List departments, optionally for one faculty"""
    departments = await registry.get_or_load(
        CacheNamespace.DEPARTMENTS,
        make_key(faculty_id=faculty_id),
        lambda: load_departments(session_factory, faculty_id),
    )
    return {"departments": departments, "total": len(departments)}


@router.get("/departments/faculty/{faculty_id}")
async def list_faculty_departments(
    faculty_id: int,
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await list_departments(faculty_id, registry, session_factory)


@router.get("/departments/{department_id}")
async def get_department(department_id: int, db: AsyncSession = Depends(get_db)):
    department = await AcademicService(db).get_department(department_id)
    return serialize_department(department)


@router.post("/departments", status_code=201)
async def create_department(
    data: DepartmentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    department = await AcademicService(db).create_department(data)
    await AuditService(db).record(
        "create", "department", department.id, {"code": department.code, "name": department.name}, request
    )
    await commit_changes(db, invalidator, EntityType.DEPARTMENT)
    return serialize_department(department)


@router.put("/departments/{department_id}")
async def update_department(
    department_id: int,
    data: DepartmentUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    department = await AcademicService(db).update_department(department_id, data)
    await AuditService(db).record(
        "update", "department", department_id, data.model_dump(exclude_unset=True), request
    )
    await commit_changes(db, invalidator, EntityType.DEPARTMENT)
    return serialize_department(department)


@router.delete("/departments/{department_id}")
async def delete_department(
    department_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    department = await AcademicService(db).delete_department(department_id)
    await AuditService(db).record("delete", "department", department_id, {"code": department.code}, request)
    await commit_changes(db, invalidator, EntityType.DEPARTMENT)
    return {"success": True, "message": f"Department '{department.code}' deleted"}


# ==================== Academic Years ====================

@router.get("/academic-years")
async def list_academic_years(
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    years = await registry.get_or_load(
        CacheNamespace.ACADEMIC_YEARS, "all", lambda: load_academic_years(session_factory)
    )
    return {"academic_years": years, "total": len(years)}


@router.post("/academic-years", status_code=201)
async def create_academic_year(
    data: AcademicYearCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    year = await AcademicService(db).create_academic_year(data)
    await AuditService(db).record("create", "academic_year", year.id, {"year": year.year}, request)
    await commit_changes(db, invalidator, EntityType.ACADEMIC_YEAR)
    return serialize_academic_year(year)


@router.put("/academic-years/{year_id}")
async def update_academic_year(
    year_id: int,
    data: AcademicYearUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    year = await AcademicService(db).update_academic_year(year_id, data)
    await AuditService(db).record(
        "update", "academic_year", year_id, data.model_dump(exclude_unset=True), request
    )
    await commit_changes(db, invalidator, EntityType.ACADEMIC_YEAR)
    return serialize_academic_year(year)


@router.delete("/academic-years/{year_id}")
async def delete_academic_year(
    year_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    year = await AcademicService(db).delete_academic_year(year_id)
    await AuditService(db).record("delete", "academic_year", year_id, {"year": year.year}, request)
    await commit_changes(db, invalidator, EntityType.ACADEMIC_YEAR)
    return {"success": True, "message": f"Academic year '{year.year}' deleted"}
