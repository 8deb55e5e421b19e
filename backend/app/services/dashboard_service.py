"""
Reporting for the admin dashboard.

Three cached views, all in the dashboard namespace:
    load_dashboard_stats       counts, recent registrations, status split, monthly trend
    load_student_analytics     GPA and grade breakdowns by status, department, faculty
    load_document_insights     per-type counts and storage use, students without documents
"""

from collections import Counter, OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from app.models.academic import AcademicYear, Department, Faculty
from app.models.document import Document
from app.models.student import Student, StudentStatus


RECENT_REGISTRATIONS = 10
TREND_MONTHS = 6

# (label, lower bound inclusive), highest first
GPA_BANDS = (
    ("3.5-4.0", 3.5),
    ("3.0-3.49", 3.0),
    ("2.0-2.99", 2.0),
    ("below 2.0", 0.0),
)
NOT_RECORDED = "not recorded"
GPA_BAND_LABELS = tuple(label for label, _ in GPA_BANDS) + (NOT_RECORDED,)


def percentage(count: int, total: int) -> int:
    if not total:
        return 0
    return int(count * 100 / total + 0.5)


def average(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(float(value), 2)


def month_start(now: datetime, months_back: int) -> datetime:
    """First day of the month `months_back` months before now's month"""
    index = now.year * 12 + (now.month - 1) - months_back
    return datetime(index // 12, index % 12 + 1, 1)


def gpa_band(gpa: Optional[float]) -> str:
    if gpa is None:
        return NOT_RECORDED
    for label, lower in GPA_BANDS:
        if gpa >= lower:
            return label
    return GPA_BANDS[-1][0]


def monthly_trend(created: List[datetime], now: datetime, months: int = TREND_MONTHS) -> List[Dict[str, Any]]:
    """Registrations per month over the last `months` months, oldest first, empty months included"""
    buckets: "OrderedDict[str, int]" = OrderedDict()
    for back in range(months - 1, -1, -1):
        buckets[month_start(now, back).strftime("%Y-%m")] = 0
    for created_at in created:
        month = created_at.strftime("%Y-%m")
        if month in buckets:
            buckets[month] += 1
    return [{"month": month, "count": count} for month, count in buckets.items()]


async def load_dashboard_stats(session_factory: async_sessionmaker,
                               now: Optional[datetime] = None) -> Dict[str, Any]:
    """Counts and recent activity shown on the admin dashboard"""
    now = now or datetime.utcnow()
    async with session_factory() as db:
        total_students = await db.scalar(select(func.count(Student.id))) or 0
        by_status = dict((await db.execute(
            select(Student.status, func.count(Student.id)).group_by(Student.status)
        )).all())
        by_type = await db.execute(
            select(Document.document_type, func.count(Document.id)).group_by(Document.document_type)
        )
        by_department = await db.execute(
            select(Department.code, func.count(Student.id))
            .join(Student, Student.department_id == Department.id)
            .group_by(Department.code)
            .order_by(Department.code)
        )
        recent = await db.execute(
            select(Student)
            .options(selectinload(Student.department))
            .order_by(Student.created_at.desc(), Student.id.desc())
            .limit(RECENT_REGISTRATIONS)
        )
        created = await db.execute(
            select(Student.created_at).where(Student.created_at >= month_start(now, TREND_MONTHS - 1))
        )
        cleared = by_status.get(StudentStatus.CLEARED, 0)

        return {
            "students": {
                "total": total_students,
                "cleared": cleared,
                "un_cleared": total_students - cleared,
                "by_department": {code: count for code, count in by_department.all()},
            },
            "documents": {
                "total": await db.scalar(select(func.count(Document.id))) or 0,
                "by_type": {doc_type.value: count for doc_type, count in by_type.all()},
            },
            "faculties": await db.scalar(select(func.count(Faculty.id))) or 0,
            "departments": await db.scalar(select(func.count(Department.id))) or 0,
            "academic_years": await db.scalar(select(func.count(AcademicYear.id))) or 0,
            "status_distribution": [
                {
                    "status": status.value,
                    "count": by_status.get(status, 0),
                    "percentage": percentage(by_status.get(status, 0), total_students),
                }
                for status in StudentStatus
            ],
            "recent_registrations": [
                {
                    "id": student.id,
                    "registration_id": student.registration_id,
                    "full_name": student.full_name,
                    "status": student.status.value,
                    "department_name": student.department.name if student.department else None,
                    "created_at": student.created_at.isoformat(),
                }
                for student in recent.scalars().all()
            ],
            "monthly_registrations": monthly_trend([row[0] for row in created.all()], now),
        }


async def load_student_analytics(session_factory: async_sessionmaker) -> Dict[str, Any]:
    """Student counts and average GPA grouped by status, department and faculty"""
    async with session_factory() as db:
        by_status = await db.execute(
            select(Student.status, func.count(Student.id), func.avg(Student.gpa))
            .group_by(Student.status)
            .order_by(Student.status)
        )
        by_department = await db.execute(
            select(Department.id, Department.code, Department.name, func.count(Student.id), func.avg(Student.gpa))
            .join(Student, Student.department_id == Department.id)
            .group_by(Department.id, Department.code, Department.name)
            .order_by(Department.code)
        )
        by_faculty = await db.execute(
            select(Faculty.id, Faculty.name, func.count(Student.id), func.avg(Student.gpa))
            .join(Student, Student.faculty_id == Faculty.id)
            .group_by(Faculty.id, Faculty.name)
            .order_by(Faculty.name)
        )
        gpa_and_grade = (await db.execute(select(Student.gpa, Student.grade))).all()

    bands = Counter(gpa_band(gpa) for gpa, _ in gpa_and_grade)
    grades = Counter((grade or "").strip().upper() or NOT_RECORDED for _, grade in gpa_and_grade)

    return {
        "status_breakdown": [
            {"status": status.value, "count": count, "average_gpa": average(avg)}
            for status, count, avg in by_status.all()
        ],
        "department_stats": [
            {"department_id": dept_id, "department_code": code, "department_name": name,
             "count": count, "average_gpa": average(avg)}
            for dept_id, code, name, count, avg in by_department.all()
        ],
        "faculty_stats": [
            {"faculty_id": faculty_id, "faculty_name": name, "count": count, "average_gpa": average(avg)}
            for faculty_id, name, count, avg in by_faculty.all()
        ],
        "gpa_bands": {label: bands.get(label, 0) for label in GPA_BAND_LABELS},
        "grade_distribution": dict(sorted(grades.items())),
    }


async def load_document_insights(session_factory: async_sessionmaker) -> Dict[str, Any]:
    """Document counts and storage use per type"""
    async with session_factory() as db:
        by_type = await db.execute(
            select(Document.document_type, func.count(Document.id),
                   func.avg(Document.file_size), func.sum(Document.file_size))
            .group_by(Document.document_type)
            .order_by(Document.document_type)
        )
        total_students = await db.scalar(select(func.count(Student.id))) or 0
        with_documents = await db.scalar(select(func.count(func.distinct(Document.student_id)))) or 0

    document_type_stats = [
        {
            "type": doc_type.value,
            "count": count,
            "average_size_kb": int(float(avg or 0) / 1024 + 0.5),
            "total_size_mb": round(float(total or 0) / (1024 * 1024), 2),
        }
        for doc_type, count, avg, total in by_type.all()
    ]
    return {
        "document_type_stats": document_type_stats,
        "total_documents": sum(item["count"] for item in document_type_stats),
        "students_with_documents": with_documents,
        "students_without_documents": total_students - with_documents,
    }
