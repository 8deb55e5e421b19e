from pydantic import BaseModel
from typing import Optional, List, Dict, Any


class RowErrorResponse(BaseModel):
    row_number: int
    field: Optional[str] = None
    message: str


class DuplicateRowResponse(BaseModel):
    row_number: int
    registration_id: str
    certificate_id: Optional[str] = None
    reason: str
    first_row: Optional[int] = None


class ImportSummary(BaseModel):
    total: int
    duplicates: int
    existing_duplicates: int
    batch_duplicates: int
    invalid: int
    will_import: int


class StudentImportPreview(BaseModel):
    """CSV reconciliation result; nothing has been written"""
    summary: ImportSummary
    valid_rows: List[Dict[str, Any]]
    duplicate_rows: List[DuplicateRowResponse]
    errors: List[RowErrorResponse]


class DocumentImportPreview(BaseModel):
    """ZIP organization result; nothing has been written"""
    students: Dict[str, Dict[str, List[str]]]
    known_students: List[str]
    unknown_students: List[str]
    unrecognized: List[Dict[str, str]]
    batches: int
    files: int
