from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import date, datetime

from app.models.student import Gender, StudentStatus, is_registration_id


def normalize_registration_id(value: str) -> str:
    return value.strip().upper()


# ============== Student Schemas ==============

class StudentCreate(BaseModel):
    registration_id: str = Field(..., min_length=3, max_length=50)
    certificate_id: Optional[str] = Field(None, max_length=50)
    full_name: str = Field(..., min_length=2, max_length=255)
    gender: Optional[Gender] = None
    phone_number: Optional[str] = Field(None, max_length=30)
    department_id: int
    faculty_id: Optional[int] = None
    academic_year_id: Optional[int] = None
    gpa: Optional[float] = Field(None, ge=0, le=4)
    grade: Optional[str] = Field(None, max_length=10)
    graduation_date: Optional[date] = None
    status: StudentStatus = StudentStatus.UN_CLEARED

    @field_validator('registration_id')
    @classmethod
    def normalize_registration(cls, v):
        v = normalize_registration_id(v)
        if not is_registration_id(v):
            raise ValueError("registration_id must look like GRW-XXX-YYYY")
        return v

    @field_validator('certificate_id')
    @classmethod
    def strip_certificate(cls, v):
        if v is None:
            return None
        return v.strip() or None


class StudentUpdate(BaseModel):
    certificate_id: Optional[str] = Field(None, max_length=50)
    full_name: Optional[str] = Field(None, min_length=2, max_length=255)
    gender: Optional[Gender] = None
    phone_number: Optional[str] = Field(None, max_length=30)
    department_id: Optional[int] = None
    faculty_id: Optional[int] = None
    academic_year_id: Optional[int] = None
    gpa: Optional[float] = Field(None, ge=0, le=4)
    grade: Optional[str] = Field(None, max_length=10)
    graduation_date: Optional[date] = None
    status: Optional[StudentStatus] = None


class StudentBulkCreate(BaseModel):
    students: List[StudentCreate] = Field(..., min_length=1, max_length=5000)


class StudentResponse(BaseModel):
    id: int
    registration_id: str
    certificate_id: Optional[str] = None
    full_name: str
    gender: Optional[Gender] = None
    phone_number: Optional[str] = None
    department_id: int
    department_name: Optional[str] = None
    department_code: Optional[str] = None
    faculty_id: Optional[int] = None
    faculty_name: Optional[str] = None
    academic_year_id: Optional[int] = None
    academic_year: Optional[str] = None
    gpa: Optional[float] = None
    grade: Optional[str] = None
    graduation_date: Optional[date] = None
    status: StudentStatus
    document_count: int = 0
    created_at: datetime

    class Config:
        from_attributes = True


class StudentListResponse(BaseModel):
    """Paginated list of students"""
    students: List[StudentResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class StudentIdentity(BaseModel):
    """Identity pair used to detect duplicates before import"""
    registration_id: str
    certificate_id: Optional[str] = None


class BulkCreateResponse(BaseModel):
    success: bool = True
    created: int
    registration_ids: List[str]
