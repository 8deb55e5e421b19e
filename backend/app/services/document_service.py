"""
Document Service - student documents on local storage

Files live under UPLOAD_DIR as <registration_id>/<type>/<token>_<name>;
the documents table keeps the metadata. Multi-file uploads store each
file independently: one bad file is reported and the rest are kept.
"""

import math
import mimetypes
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import (
    DocumentNotFoundError, FileTooLargeError, InvalidFileTypeError, StorageError, StudentNotFoundError,
)
from app.core.logging_config import logger
from app.models.document import Document, DocumentType
from app.models.student import Student
from app.schemas.document import DocumentResponse
from app.services.zip_documents import (
    FileUploadResult, OrganizedDocuments, UploadBatch, UploadPlan, UploadReport,
    organize_entries, plan_uploads, read_zip_entries, run_upload_batches,
)


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_file_name(name: str) -> str:
    base = Path(name.replace("\\", "/")).name
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned or "file"


def document_url(document_id: int) -> str:
    return f"/api/{settings.API_VERSION}/documents/{document_id}/download"


def serialize_document(document: Document) -> Dict[str, Any]:
    return DocumentResponse(
        id=document.id,
        student_id=document.student_id,
        registration_id=document.registration_id,
        document_type=document.document_type,
        file_name=document.file_name,
        file_size=document.file_size,
        file_type=document.file_type,
        file_url=document_url(document.id),
        upload_date=document.upload_date,
    ).model_dump(mode="json")


class LocalDocumentStorage:
    """Async file storage rooted at one directory"""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def resolve(self, relative_path: str) -> Path:
        root = self.base_dir.resolve()
        path = (root / relative_path).resolve()
        if root != path and root not in path.parents:
            raise StorageError("Path escapes the upload directory", path=relative_path)
        return path

    async def save(self, relative_path: str, data: bytes) -> None:
        path = self.resolve(relative_path)
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except OSError as e:
            raise StorageError(f"Could not write file: {e}", path=relative_path)

    async def delete(self, relative_path: str) -> bool:
        path = self.resolve(relative_path)
        try:
            await aiofiles.os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not delete stored file {relative_path}: {e}")
            return False

    async def exists(self, relative_path: str) -> bool:
        return await aiofiles.os.path.exists(self.resolve(relative_path))


def get_document_storage() -> LocalDocumentStorage:
    return LocalDocumentStorage(settings.UPLOAD_PATH)


@dataclass
class IncomingFile:
    file_name: str
    data: bytes
    content_type: Optional[str] = None


@dataclass
class StoredFile:
    file_name: str
    document: Optional[Document] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.document is not None


class DocumentService:

    def __init__(self, db: AsyncSession, storage: Optional[LocalDocumentStorage] = None):
        self.db = db
        self.storage = storage or get_document_storage()
        self.allowed_extensions = settings.ALLOWED_DOCUMENT_EXTENSIONS
        self.max_file_bytes = settings.MAX_ZIP_BYTES

    # ========== Reads ==========

    async def list_documents(self, page: int = 1, page_size: int = 20,
                             document_type: Optional[DocumentType] = None,
                             registration_id: Optional[str] = None) -> Dict[str, Any]:
        conditions = []
        if document_type is not None:
            conditions.append(Document.document_type == document_type)
        if registration_id:
            conditions.append(Document.registration_id == registration_id.strip().upper())

        total = await self.db.scalar(select(func.count(Document.id)).where(*conditions)) or 0
        result = await self.db.execute(
            select(Document)
            .where(*conditions)
            .order_by(Document.upload_date.desc(), Document.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return {
            "documents": [serialize_document(doc) for doc in result.scalars().all()],
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": math.ceil(total / page_size) if total else 0,
        }

    async def list_for_student(self, registration_id: str) -> List[Dict[str, Any]]:
        registration_id = registration_id.strip().upper()
        exists = await self.db.scalar(select(Student.id).where(Student.registration_id == registration_id))
        if exists is None:
            raise StudentNotFoundError(registration_id)
        result = await self.db.execute(
            select(Document)
            .where(Document.registration_id == registration_id)
            .order_by(Document.document_type, Document.upload_date)
        )
        return [serialize_document(doc) for doc in result.scalars().all()]

    async def get_document(self, document_id: int) -> Document:
        document = await self.db.get(Document, document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    # ========== Writes ==========

    def check_file(self, file: IncomingFile) -> None:
        ext = Path(file.file_name).suffix.lower().lstrip(".")
        if ext not in self.allowed_extensions:
            raise InvalidFileTypeError(file.file_name, self.allowed_extensions)
        if len(file.data) > self.max_file_bytes:
            raise FileTooLargeError(file.file_name, self.max_file_bytes)

    async def store_file(self, student: Student, document_type: DocumentType,
                         file: IncomingFile) -> Document:
        """Validate and write one file, and add its row to the session (not flushed)"""
        self.check_file(file)
        name = safe_file_name(file.file_name)
        relative_path = f"{student.registration_id}/{document_type.value.lower()}/{uuid.uuid4().hex[:12]}_{name}"
        await self.storage.save(relative_path, file.data)

        document = Document(
            student_id=student.id,
            registration_id=student.registration_id,
            document_type=document_type,
            file_name=Path(file.file_name.replace("\\", "/")).name,
            file_size=len(file.data),
            file_type=file.content_type or mimetypes.guess_type(name)[0] or "application/octet-stream",
            file_path=relative_path,
        )
        self.db.add(document)
        return document

    async def store_files(self, student: Student, document_type: DocumentType,
                          files: List[IncomingFile]) -> List[StoredFile]:
        """
        Store every file independently. No database I/O happens here, so
        batches for different students can run concurrently on one
        session; the caller flushes once afterwards.
        """
        results = []
        for file in files:
            try:
                document = await self.store_file(student, document_type, file)
                results.append(StoredFile(file.file_name, document=document))
            except (InvalidFileTypeError, FileTooLargeError, StorageError) as e:
                logger.warning(f"Rejected {file.file_name} for {student.registration_id}: {e.message}")
                results.append(StoredFile(file.file_name, error=e.message))
        return results

    async def import_archive(self, data: bytes,
                             concurrency: int = 3) -> Tuple[OrganizedDocuments, UploadPlan, UploadReport]:
        """
        Organize a ZIP of documents and store it for students that exist.
        The archive is validated in full before any file is written.
        """
        entries = read_zip_entries(data, max_bytes=settings.MAX_ZIP_BYTES)
        organized = organize_entries(entries, self.allowed_extensions)

        students: Dict[str, Student] = {}
        if organized.registration_ids:
            result = await self.db.execute(
                select(Student).where(Student.registration_id.in_(organized.registration_ids))
            )
            students = {student.registration_id: student for student in result.scalars().all()}
        plan = plan_uploads(organized, students.keys())

        created: List[Tuple[FileUploadResult, Document]] = []

        async def upload(batch: UploadBatch) -> List[FileUploadResult]:
            stored = await self.store_files(
                students[batch.registration_id],
                batch.document_type,
                [IncomingFile(entry.file_name, entry.data) for entry in batch.files],
            )
            results = []
            for item in stored:
                outcome = FileUploadResult(
                    registration_id=batch.registration_id,
                    document_type=batch.document_type,
                    file_name=item.file_name,
                    success=item.success,
                    error=item.error,
                )
                if item.document is not None:
                    created.append((outcome, item.document))
                results.append(outcome)
            return results

        report = await run_upload_batches(plan.batches, upload, concurrency=concurrency)
        await self.db.flush()
        for outcome, document in created:
            outcome.document_id = document.id

        if plan.unknown_students:
            logger.warning(f"ZIP import skipped unknown students: {', '.join(plan.unknown_students)}")
        return organized, plan, report

    async def delete_document(self, document_id: int) -> Document:
        """Delete the row only; call remove_files() with its file_path once committed"""
        document = await self.get_document(document_id)
        await self.db.delete(document)
        await self.db.flush()
        return document

    async def remove_files(self, paths: List[str]) -> int:
        removed = 0
        for path in paths:
            if await self.storage.delete(path):
                removed += 1
        return removed


# ========== Cache loaders ==========

async def load_student_documents(session_factory: async_sessionmaker,
                                 registration_id: str) -> List[Dict[str, Any]]:
    async with session_factory() as db:
        return await DocumentService(db).list_for_student(registration_id)
