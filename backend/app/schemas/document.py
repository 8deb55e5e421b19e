from pydantic import BaseModel
from typing import Optional, List, Dict
from datetime import datetime

from app.models.document import DocumentType


class DocumentResponse(BaseModel):
    id: int
    student_id: int
    registration_id: str
    document_type: DocumentType
    file_name: str
    file_size: int
    file_type: Optional[str] = None
    file_url: str
    upload_date: datetime


class FileFailure(BaseModel):
    file_name: str
    error: str


class DocumentUploadResponse(BaseModel):
    """Result of one multi-file upload for a (student, document type) pair"""
    success: bool
    count: int
    documents: List[DocumentResponse]
    failed: List[FileFailure] = []


class BulkZipUploadResponse(BaseModel):
    """Result of a ZIP upload, one entry per file"""
    success: bool
    students: int
    batches: int
    uploaded: int
    failed: int
    unknown_students: List[str]
    unrecognized: List[Dict[str, str]]
    results: List[Dict[str, object]]
