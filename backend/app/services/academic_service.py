"""
Academic Service - faculties, departments and academic years

Reads return plain dicts so they can be cached; the load_* helpers open
their own session for use as cache loaders.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.core.exceptions import ConflictError, ResourceInUseError, ResourceNotFoundError, ValidationError
from app.core.logging_config import logger
from app.models.academic import AcademicYear, Department, Faculty
from app.models.student import Student
from app.schemas.academic import (
    AcademicYearCreate, AcademicYearResponse, AcademicYearUpdate,
    DepartmentCreate, DepartmentResponse, DepartmentUpdate,
    FacultyCreate, FacultyResponse, FacultyUpdate,
)


def serialize_faculty(faculty: Faculty, department_count: int = 0) -> Dict[str, Any]:
    return FacultyResponse(
        id=faculty.id,
        name=faculty.name,
        code=faculty.code,
        description=faculty.description,
        department_count=department_count,
        created_at=faculty.created_at,
    ).model_dump(mode="json")


def serialize_department(department: Department) -> Dict[str, Any]:
    return DepartmentResponse(
        id=department.id,
        name=department.name,
        code=department.code,
        faculty_id=department.faculty_id,
        faculty_name=department.faculty.name if department.faculty else None,
        created_at=department.created_at,
    ).model_dump(mode="json")


def serialize_academic_year(year: AcademicYear) -> Dict[str, Any]:
    return AcademicYearResponse.model_validate(year).model_dump(mode="json")


class AcademicService:

    def __init__(self, db: AsyncSession):
        self.db = db

    # ========== Faculties ==========

    async def list_faculties(self) -> List[Dict[str, Any]]:
        counts = (
            select(Department.faculty_id, func.count(Department.id).label("n"))
            .group_by(Department.faculty_id)
            .subquery()
        )
        result = await self.db.execute(
            select(Faculty, func.coalesce(counts.c.n, 0))
            .outerjoin(counts, counts.c.faculty_id == Faculty.id)
            .order_by(Faculty.name)
        )
        return [serialize_faculty(faculty, count) for faculty, count in result.all()]

    async def get_faculty(self, faculty_id: int) -> Faculty:
        faculty = await self.db.get(Faculty, faculty_id)
        if faculty is None:
            raise ResourceNotFoundError("Faculty", faculty_id)
        return faculty

    async def _check_faculty_unique(self, name: Optional[str], code: Optional[str],
                                    exclude_id: Optional[int] = None) -> None:
        for column, value in ((Faculty.name, name), (Faculty.code, code)):
            if not value:
                continue
            query = select(Faculty.id).where(func.lower(column) == value.lower())
            if exclude_id is not None:
                query = query.where(Faculty.id != exclude_id)
            if (await self.db.execute(query)).first():
                raise ConflictError(f"Faculty with {column.key} '{value}' already exists",
                                    code="FACULTY_EXISTS")

    async def create_faculty(self, data: FacultyCreate) -> Faculty:
        await self._check_faculty_unique(data.name, data.code)
        faculty = Faculty(name=data.name.strip(), code=data.code, description=data.description)
        self.db.add(faculty)
        await self.db.flush()
        logger.info(f"Created faculty: {faculty.name}")
        return faculty

    async def update_faculty(self, faculty_id: int, data: FacultyUpdate) -> Faculty:
        faculty = await self.get_faculty(faculty_id)
        changes = data.model_dump(exclude_unset=True)
        await self._check_faculty_unique(changes.get("name"), changes.get("code"), exclude_id=faculty_id)
        for key, value in changes.items():
            setattr(faculty, key, value)
        await self.db.flush()
        return faculty

    async def delete_faculty(self, faculty_id: int) -> Faculty:
        faculty = await self.get_faculty(faculty_id)
        departments = await self.db.scalar(
            select(func.count(Department.id)).where(Department.faculty_id == faculty_id)
        )
        if departments:
            raise ResourceInUseError("Faculty", faculty_id, "departments")
        students = await self.db.scalar(
            select(func.count(Student.id)).where(Student.faculty_id == faculty_id)
        )
        if students:
            raise ResourceInUseError("Faculty", faculty_id, "students")
        await self.db.delete(faculty)
        await self.db.flush()
        return faculty

    # ========== Departments ==========

    async def list_departments(self, faculty_id: Optional[int] = None) -> List[Dict[str, Any]]:
        query = select(Department).options(selectinload(Department.faculty)).order_by(Department.name)
        if faculty_id is not None:
            query = query.where(Department.faculty_id == faculty_id)
        result = await self.db.execute(query)
        return [serialize_department(dept) for dept in result.scalars().all()]

    async def get_department(self, department_id: int) -> Department:
        result = await self.db.execute(
            select(Department)
            .options(selectinload(Department.faculty))
            .where(Department.id == department_id)
            .execution_options(populate_existing=True)
        )
        department = result.scalar_one_or_none()
        if department is None:
            raise ResourceNotFoundError("Department", department_id)
        return department

    async def _check_department_code(self, code: str, exclude_id: Optional[int] = None) -> None:
        query = select(Department.id).where(Department.code == code)
        if exclude_id is not None:
            query = query.where(Department.id != exclude_id)
        if (await self.db.execute(query)).first():
            raise ConflictError(f"Department code '{code}' already exists", code="DEPARTMENT_CODE_EXISTS")

    async def create_department(self, data: DepartmentCreate) -> Department:
        await self.get_faculty(data.faculty_id)
        await self._check_department_code(data.code)
        department = Department(name=data.name.strip(), code=data.code, faculty_id=data.faculty_id)
        self.db.add(department)
        await self.db.flush()
        logger.info(f"Created department: {department.code}")
        return await self.get_department(department.id)

    async def update_department(self, department_id: int, data: DepartmentUpdate) -> Department:
        department = await self.get_department(department_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("code"):
            await self._check_department_code(changes["code"], exclude_id=department_id)
        if changes.get("faculty_id") is not None:
            await self.get_faculty(changes["faculty_id"])
        for key, value in changes.items():
            if value is None:
                raise ValidationError(f"{key} cannot be null", field=key)
            setattr(department, key, value)
        await self.db.flush()
        return await self.get_department(department_id)

    async def delete_department(self, department_id: int) -> Department:
        department = await self.get_department(department_id)
        students = await self.db.scalar(
            select(func.count(Student.id)).where(Student.department_id == department_id)
        )
        if students:
            raise ResourceInUseError("Department", department.code, "students")
        await self.db.delete(department)
        await self.db.flush()
        return department

    # ========== Academic Years ==========

    async def list_academic_years(self) -> List[Dict[str, Any]]:
        result = await self.db.execute(select(AcademicYear).order_by(AcademicYear.year.desc()))
        return [serialize_academic_year(year) for year in result.scalars().all()]

    async def get_academic_year(self, year_id: int) -> AcademicYear:
        year = await self.db.get(AcademicYear, year_id)
        if year is None:
            raise ResourceNotFoundError("Academic year", year_id)
        return year

    async def _check_year_unique(self, year: str, exclude_id: Optional[int] = None) -> None:
        query = select(AcademicYear.id).where(AcademicYear.year == year)
        if exclude_id is not None:
            query = query.where(AcademicYear.id != exclude_id)
        if (await self.db.execute(query)).first():
            raise ConflictError(f"Academic year '{year}' already exists", code="ACADEMIC_YEAR_EXISTS")

    async def _deactivate_others(self, keep_id: int) -> None:
        result = await self.db.execute(
            select(AcademicYear).where(AcademicYear.is_active.is_(True), AcademicYear.id != keep_id)
        )
        for other in result.scalars().all():
            other.is_active = False

    async def create_academic_year(self, data: AcademicYearCreate) -> AcademicYear:
        year_label = data.year.strip()
        await self._check_year_unique(year_label)
        year = AcademicYear(year=year_label, is_active=data.is_active)
        self.db.add(year)
        await self.db.flush()
        if year.is_active:
            await self._deactivate_others(year.id)
        return year

    async def update_academic_year(self, year_id: int, data: AcademicYearUpdate) -> AcademicYear:
        year = await self.get_academic_year(year_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("year"):
            changes["year"] = changes["year"].strip()
            await self._check_year_unique(changes["year"], exclude_id=year_id)
        for key, value in changes.items():
            if value is not None:
                setattr(year, key, value)
        if year.is_active:
            await self._deactivate_others(year.id)
        await self.db.flush()
        return year

    async def delete_academic_year(self, year_id: int) -> AcademicYear:
        year = await self.get_academic_year(year_id)
        students = await self.db.scalar(
            select(func.count(Student.id)).where(Student.academic_year_id == year_id)
        )
        if students:
            raise ResourceInUseError("Academic year", year.year, "students")
        await self.db.delete(year)
        await self.db.flush()
        return year


# ========== Cache loaders ==========

async def load_faculties(session_factory: async_sessionmaker) -> List[Dict[str, Any]]:
    async with session_factory() as db:
        return await AcademicService(db).list_faculties()


async def load_departments(session_factory: async_sessionmaker,
                           faculty_id: Optional[int] = None) -> List[Dict[str, Any]]:
    async with session_factory() as db:
        return await AcademicService(db).list_departments(faculty_id)


async def load_academic_years(session_factory: async_sessionmaker) -> List[Dict[str, Any]]:
    async with session_factory() as db:
        return await AcademicService(db).list_academic_years()
