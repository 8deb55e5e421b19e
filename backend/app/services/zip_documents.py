"""
ZIP Document Reconciliation

Bulk document archives follow one layout:

    Photo/GRW-BCS-2020.jpg
    Transcript/GRW-BCS-2020.pdf
    Certificate/GRW-BCS-2021.pdf
    Supporting/GRW-BCS-2021.docx

optionally wrapped in a single top-level folder. The folder names the
document type (case-insensitive, singular or plural) and the file stem is
the student's registration id.

Usage:
    entries = read_zip_entries(data)            # raises ZipArchiveError
    organized = organize_entries(entries)       # never raises for bad entries
    plan = plan_uploads(organized, known_ids)   # unknown students are reported
    report = await run_upload_batches(plan.batches, uploader, concurrency=3)
"""

import asyncio
import io
import posixpath
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from app.core.exceptions import ZipArchiveError
from app.core.logging_config import logger
from app.models.document import DocumentType
from app.models.student import is_registration_id


DEFAULT_ALLOWED_EXTENSIONS = ("pdf", "jpg", "jpeg", "png", "doc", "docx", "xls", "xlsx")

FOLDER_ALIASES: Dict[str, DocumentType] = {
    "photo": DocumentType.PHOTO,
    "photos": DocumentType.PHOTO,
    "transcript": DocumentType.TRANSCRIPT,
    "transcripts": DocumentType.TRANSCRIPT,
    "certificate": DocumentType.CERTIFICATE,
    "certificates": DocumentType.CERTIFICATE,
    "supporting": DocumentType.SUPPORTING,
    "supporting_documents": DocumentType.SUPPORTING,
    "supporting-documents": DocumentType.SUPPORTING,
    "supporting documents": DocumentType.SUPPORTING,
}

IGNORED_NAMES = {"thumbs.db", "desktop.ini"}


def folder_document_type(folder: str) -> Optional[DocumentType]:
    return FOLDER_ALIASES.get(folder.strip().lower())


@dataclass
class ZipEntryFile:
    path: str
    data: bytes

    @property
    def file_name(self) -> str:
        return posixpath.basename(self.path)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UnrecognizedEntry:
    path: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "reason": self.reason}


@dataclass
class OrganizedDocuments:
    files: Dict[str, Dict[DocumentType, List[ZipEntryFile]]] = field(default_factory=dict)
    unrecognized: List[UnrecognizedEntry] = field(default_factory=list)
    skipped: int = 0  # OS metadata entries

    def add(self, registration_id: str, document_type: DocumentType, entry: ZipEntryFile) -> None:
        self.files.setdefault(registration_id, {}).setdefault(document_type, []).append(entry)

    @property
    def registration_ids(self) -> List[str]:
        return sorted(self.files)

    @property
    def file_count(self) -> int:
        return sum(len(entries) for by_type in self.files.values() for entries in by_type.values())

    def summary(self) -> Dict[str, Dict[str, List[str]]]:
        return {
            reg_id: {
                doc_type.value: [entry.file_name for entry in entries]
                for doc_type, entries in sorted(by_type.items(), key=lambda item: item[0].value)
            }
            for reg_id, by_type in sorted(self.files.items())
        }


@dataclass
class UploadBatch:
    """All files of one document type for one student; one request"""
    registration_id: str
    document_type: DocumentType
    files: List[ZipEntryFile]


@dataclass
class UploadPlan:
    batches: List[UploadBatch] = field(default_factory=list)
    unknown_students: List[str] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return sum(len(batch.files) for batch in self.batches)


@dataclass
class FileUploadResult:
    registration_id: str
    document_type: DocumentType
    file_name: str
    success: bool
    error: Optional[str] = None
    document_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registration_id": self.registration_id,
            "document_type": self.document_type.value,
            "file_name": self.file_name,
            "success": self.success,
            "error": self.error,
            "document_id": self.document_id,
        }


@dataclass
class UploadReport:
    results: List[FileUploadResult] = field(default_factory=list)
    batches: int = 0

    @property
    def uploaded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def failures(self) -> List[FileUploadResult]:
        return [result for result in self.results if not result.success]


Uploader = Callable[[UploadBatch], Awaitable[List[FileUploadResult]]]


# ========== Reading ==========

def read_zip_entries(data: bytes, max_bytes: Optional[int] = None,
                     max_uncompressed_bytes: Optional[int] = None) -> List[ZipEntryFile]:
    """
    Read every file in the archive into memory.

    Any structural problem aborts with ZipArchiveError before the caller
    has processed a single entry.
    """
    if max_bytes is not None and len(data) > max_bytes:
        raise ZipArchiveError(f"ZIP file exceeds the {max_bytes // (1024 * 1024)}MB limit")
    if max_uncompressed_bytes is None and max_bytes is not None:
        max_uncompressed_bytes = max_bytes * 4

    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            infos = [info for info in archive.infolist() if not info.is_dir()]
            if not infos:
                raise ZipArchiveError("ZIP archive contains no files")

            total = sum(info.file_size for info in infos)
            if max_uncompressed_bytes is not None and total > max_uncompressed_bytes:
                raise ZipArchiveError("ZIP archive expands beyond the allowed size")

            entries = []
            for info in infos:
                entries.append(ZipEntryFile(path=info.filename, data=archive.read(info)))
            return entries
    except ZipArchiveError:
        raise
    except (zipfile.BadZipFile, zlib.error, EOFError) as e:
        raise ZipArchiveError(f"Invalid or corrupt ZIP archive: {e}")
    except (RuntimeError, NotImplementedError) as e:
        # Encrypted entries or unsupported compression methods
        raise ZipArchiveError(f"Cannot read ZIP archive: {e}")


# ========== Organizing ==========

def _is_os_metadata(parts: List[str]) -> bool:
    if any(part == "__MACOSX" for part in parts):
        return True
    name = parts[-1]
    return name.startswith(".") or name.lower() in IGNORED_NAMES


def organize_entries(
    entries: Iterable[ZipEntryFile],
    allowed_extensions: Iterable[str] = DEFAULT_ALLOWED_EXTENSIONS,
) -> OrganizedDocuments:
    """Group entries as registration_id -> document type -> files"""
    allowed = {ext.lower().lstrip(".") for ext in allowed_extensions}
    organized = OrganizedDocuments()

    for entry in entries:
        path = entry.path.replace("\\", "/")
        parts = [part for part in path.split("/") if part]
        if not parts:
            continue
        if _is_os_metadata(parts):
            organized.skipped += 1
            continue

        # One wrapper folder is allowed: Archive/Photo/GRW-BCS-2020.jpg
        if len(parts) == 3 and folder_document_type(parts[1]) is not None:
            parts = parts[1:]

        if len(parts) != 2:
            organized.unrecognized.append(UnrecognizedEntry(
                entry.path, "expected <DocumentType>/<registrationId>.<ext>"
            ))
            continue

        folder, file_name = parts
        document_type = folder_document_type(folder)
        if document_type is None:
            organized.unrecognized.append(UnrecognizedEntry(
                entry.path, f"unknown document type folder '{folder}'"
            ))
            continue

        stem, ext = posixpath.splitext(file_name)
        ext = ext.lower().lstrip(".")
        if ext not in allowed:
            organized.unrecognized.append(UnrecognizedEntry(
                entry.path, f"unsupported file type '.{ext}'" if ext else "file has no extension"
            ))
            continue

        registration_id = stem.strip().upper()
        if not is_registration_id(registration_id):
            organized.unrecognized.append(UnrecognizedEntry(
                entry.path, f"file name '{stem.strip()}' is not a registration id"
            ))
            continue

        organized.add(registration_id, document_type, entry)

    return organized


def plan_uploads(organized: OrganizedDocuments, known_registration_ids: Iterable[str]) -> UploadPlan:
    """One batch per (student, document type); students not in known ids are reported instead"""
    known = {reg_id.strip().upper() for reg_id in known_registration_ids}
    plan = UploadPlan()
    for registration_id in organized.registration_ids:
        if registration_id not in known:
            plan.unknown_students.append(registration_id)
            continue
        by_type = organized.files[registration_id]
        for document_type in sorted(by_type, key=lambda doc_type: doc_type.value):
            plan.batches.append(UploadBatch(registration_id, document_type, list(by_type[document_type])))
    return plan


# ========== Uploading ==========

async def run_upload_batches(
    batches: List[UploadBatch],
    uploader: Uploader,
    concurrency: int = 3,
) -> UploadReport:
    """
    Send every batch through uploader, at most `concurrency` at a time.

    A batch that raises marks each of its files as failed; files that
    already succeeded elsewhere are kept.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    report = UploadReport(batches=len(batches))
    if not batches:
        return report

    semaphore = asyncio.Semaphore(concurrency)

    async def upload_with_limit(batch: UploadBatch) -> List[FileUploadResult]:
        async with semaphore:
            return await uploader(batch)

    tasks = [upload_with_limit(batch) for batch in batches]
    outcomes = await asyncio.gather(*tasks, return_exceptions=True)

    for batch, outcome in zip(batches, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.error(
                f"Upload failed for {batch.registration_id}/{batch.document_type.value}: {outcome}"
            )
            report.results.extend(
                FileUploadResult(
                    registration_id=batch.registration_id,
                    document_type=batch.document_type,
                    file_name=entry.file_name,
                    success=False,
                    error=str(outcome) or type(outcome).__name__,
                )
                for entry in batch.files
            )
        else:
            report.results.extend(outcome)

    logger.info(
        f"Uploaded {report.uploaded} files in {report.batches} batches ({report.failed} failed)"
    )
    return report
