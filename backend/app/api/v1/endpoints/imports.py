"""
Import previews.

Both endpoints only classify the upload; nothing is written. The admin
confirms and then sends the valid rows to POST /students/bulk (or the ZIP
to POST /documents/bulk).
"""
from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import ValidationError
from app.core.logging_config import logger
from app.models.academic import AcademicYear, Department, Faculty
from app.schemas.imports import DocumentImportPreview, StudentImportPreview
from app.services.student_import import ReferenceData, parse_student_csv, reconcile
from app.services.student_service import StudentService
from app.services.zip_documents import organize_entries, plan_uploads, read_zip_entries

router = APIRouter()


async def load_reference_data(db: AsyncSession) -> ReferenceData:
    departments = (await db.execute(select(Department))).scalars().all()
    faculties = (await db.execute(select(Faculty))).scalars().all()
    years = (await db.execute(select(AcademicYear))).scalars().all()
    return ReferenceData.build(departments, faculties, years)


@router.post("/students/preview", response_model=StudentImportPreview)
async def preview_student_import(
    file: UploadFile = File(..., description="Student CSV (max 10MB)"),
    db: AsyncSession = Depends(get_db),
):
    """
    Reconcile a student CSV against existing records.

    Returns the rows that would be imported, the duplicates that would be
    skipped (pre-existing or repeated in the file) and per-row validation
    errors. A file that cannot be read at all is rejected with 400.
    """
    if file.filename and not file.filename.lower().endswith(".csv"):
        raise ValidationError("Only CSV files are supported", field="file")

    content = await file.read()
    rows = parse_student_csv(content, max_bytes=settings.MAX_CSV_BYTES)
    existing = await StudentService(db).list_identities()
    result = reconcile(rows, existing, await load_reference_data(db))

    logger.log_import_summary("students", result.summary())
    return result.to_dict()


@router.post("/documents/preview", response_model=DocumentImportPreview)
async def preview_document_import(
    file: UploadFile = File(..., description="Document ZIP (max 100MB)"),
    db: AsyncSession = Depends(get_db),
):
    """Organize a document ZIP and report which students it covers"""
    if file.filename and not file.filename.lower().endswith(".zip"):
        raise ValidationError("Only ZIP archives are supported", field="file")

    content = await file.read()
    entries = read_zip_entries(content, max_bytes=settings.MAX_ZIP_BYTES)
    organized = organize_entries(entries, settings.ALLOWED_DOCUMENT_EXTENSIONS)
    known = await StudentService(db).registration_ids(organized.registration_ids)
    plan = plan_uploads(organized, known)

    logger.log_import_summary("documents", {
        "students": len(organized.files),
        "files": organized.file_count,
        "unknown_students": len(plan.unknown_students),
        "unrecognized": len(organized.unrecognized),
    })
    return DocumentImportPreview(
        students=organized.summary(),
        known_students=known,
        unknown_students=plan.unknown_students,
        unrecognized=[entry.to_dict() for entry in organized.unrecognized],
        batches=len(plan.batches),
        files=plan.file_count,
    )
