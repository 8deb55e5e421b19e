"""
Student document endpoints.

- GET    /documents                                   list with filters
- GET    /documents/student/{registration_id}         one student's documents (cached)
- POST   /documents/bulk                              ZIP upload for many students
- POST   /documents/{registration_id}/{document_type} multi-file upload
- GET    /documents/{id}, /documents/{id}/download
- DELETE /documents/{id}
"""
from fastapi import APIRouter, Depends, File, Query, Request, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from typing import List, Optional

from app.api.dependencies import commit_changes, get_cache_registry, get_invalidator, get_storage
from app.core.config import settings
from app.core.database import get_db, get_session_factory
from app.core.exceptions import ResourceNotFoundError, StudentNotFoundError, ValidationError
from app.core.logging_config import logger
from app.models.document import DocumentType
from app.schemas.document import BulkZipUploadResponse, DocumentUploadResponse, FileFailure
from app.services.audit_service import AuditService
from app.services.cache_invalidation import CacheInvalidator, EntityType
from app.services.cache_service import CacheNamespace, CacheRegistry
from app.services.document_service import (
    DocumentService, IncomingFile, LocalDocumentStorage, load_student_documents, serialize_document,
)
from app.services.student_service import StudentService, student_cache_keys
from app.services.zip_documents import folder_document_type

router = APIRouter()


def parse_document_type(value: str) -> DocumentType:
    """Accept PHOTO, photo, Photos, supporting-documents, ..."""
    document_type = folder_document_type(value)
    if document_type is None:
        raise ValidationError(
            f"Unknown document type '{value}'. Use one of: {', '.join(t.value for t in DocumentType)}",
            field="document_type",
        )
    return document_type


@router.get("")
async def list_documents(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    document_type: Optional[str] = None,
    registration_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    return await DocumentService(db).list_documents(
        page=page,
        page_size=page_size,
        document_type=parse_document_type(document_type) if document_type else None,
        registration_id=registration_id,
    )


@router.get("/student/{registration_id}")
async def list_student_documents(
    registration_id: str,
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    key = registration_id.strip().upper()
    documents = await registry.get_or_load(
        CacheNamespace.DOCUMENTS, key, lambda: load_student_documents(session_factory, key)
    )
    return {"registration_id": key, "documents": documents, "total": len(documents)}


@router.post("/bulk", response_model=BulkZipUploadResponse)
async def upload_documents_zip(
    request: Request,
    file: UploadFile = File(..., description="ZIP archive laid out as <DocumentType>/<registrationId>.<ext>"),
    db: AsyncSession = Depends(get_db),
    storage: LocalDocumentStorage = Depends(get_storage),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """
    Upload documents for many students from one ZIP archive.

    Files for unknown students and unrecognized entries are reported and
    skipped; a file that fails does not undo the others.
    """
    if not file.filename or not file.filename.lower().endswith(".zip"):
        raise ValidationError("Only ZIP archives are supported", field="file")
    content = await file.read()
    if not content:
        raise ValidationError("Empty file", field="file")

    service = DocumentService(db, storage)
    organized, plan, report = await service.import_archive(content, concurrency=settings.UPLOAD_CONCURRENCY)

    if report.uploaded:
        await AuditService(db).record(
            "bulk_upload", "document", None,
            {"uploaded": report.uploaded, "failed": report.failed, "students": len(organized.files)},
            request,
        )
        await commit_changes(db, invalidator, EntityType.DOCUMENT)

    logger.info(
        f"ZIP upload {file.filename}: {report.uploaded} stored, {report.failed} failed, "
        f"{len(plan.unknown_students)} unknown students, {len(organized.unrecognized)} unrecognized"
    )
    return BulkZipUploadResponse(
        success=report.failed == 0,
        students=len(organized.files),
        batches=report.batches,
        uploaded=report.uploaded,
        failed=report.failed,
        unknown_students=plan.unknown_students,
        unrecognized=[entry.to_dict() for entry in organized.unrecognized],
        results=[result.to_dict() for result in report.results],
    )


@router.post("/{registration_id}/{document_type}", status_code=201, response_model=DocumentUploadResponse)
async def upload_documents(
    registration_id: str,
    document_type: str,
    request: Request,
    files: List[UploadFile] = File(..., description="One or more files"),
    db: AsyncSession = Depends(get_db),
    storage: LocalDocumentStorage = Depends(get_storage),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """Attach files of one document type to a student; each file succeeds or fails on its own"""
    doc_type = parse_document_type(document_type)
    if len(files) > settings.MAX_FILES_PER_UPLOAD:
        raise ValidationError(
            f"Too many files: {len(files)}. Maximum is {settings.MAX_FILES_PER_UPLOAD} per upload",
            field="files",
        )

    student = await StudentService(db).get_by_registration_id(registration_id)
    if student is None:
        raise StudentNotFoundError(registration_id.strip().upper())

    incoming = []
    for upload in files:
        incoming.append(IncomingFile(
            file_name=upload.filename or "file",
            data=await upload.read(),
            content_type=upload.content_type,
        ))

    service = DocumentService(db, storage)
    stored = await service.store_files(student, doc_type, incoming)
    failed = [FileFailure(file_name=item.file_name, error=item.error) for item in stored if not item.success]
    documents = [item.document for item in stored if item.success]

    if not documents:
        error = ValidationError("No files were stored", field="files")
        error.details["failed"] = [failure.model_dump() for failure in failed]
        raise error

    await db.flush()
    await AuditService(db).record(
        "upload", "document", student.registration_id,
        {"document_type": doc_type.value, "files": [doc.file_name for doc in documents], "failed": len(failed)},
        request,
    )
    keys = student_cache_keys([student])
    await commit_changes(db, invalidator, EntityType.DOCUMENT, keys={
        CacheNamespace.STUDENT_DETAIL: keys["detail"],
        CacheNamespace.DOCUMENTS: keys["documents"],
        CacheNamespace.VERIFICATION: keys["verification"],
    })
    return DocumentUploadResponse(
        success=not failed,
        count=len(documents),
        documents=[serialize_document(doc) for doc in documents],
        failed=failed,
    )


@router.get("/{document_id}")
async def get_document(document_id: int, db: AsyncSession = Depends(get_db)):
    document = await DocumentService(db).get_document(document_id)
    return serialize_document(document)


@router.get("/{document_id}/download")
async def download_document(
    document_id: int,
    db: AsyncSession = Depends(get_db),
    storage: LocalDocumentStorage = Depends(get_storage),
):
    document = await DocumentService(db, storage).get_document(document_id)
    if not await storage.exists(document.file_path):
        logger.error(f"Stored file missing for document {document_id}: {document.file_path}")
        raise ResourceNotFoundError("Document file", document_id)
    return FileResponse(
        path=str(storage.resolve(document.file_path)),
        filename=document.file_name,
        media_type=document.file_type or "application/octet-stream",
    )


@router.delete("/{document_id}")
async def delete_document(
    document_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    storage: LocalDocumentStorage = Depends(get_storage),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    service = DocumentService(db, storage)
    document = await service.delete_document(document_id)
    await AuditService(db).record(
        "delete", "document", document_id,
        {"registration_id": document.registration_id, "file_name": document.file_name},
        request,
    )
    # Verification entries may be keyed by certificate id, so that namespace is cleared whole
    await commit_changes(db, invalidator, EntityType.DOCUMENT, keys={
        CacheNamespace.STUDENT_DETAIL: [str(document.student_id)],
        CacheNamespace.DOCUMENTS: [document.registration_id],
    })
    await service.remove_files([document.file_path])
    return {"success": True, "message": f"Document {document.file_name} deleted"}
