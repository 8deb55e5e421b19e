from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime


# ============== Faculty Schemas ==============

class FacultyCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    code: Optional[str] = Field(None, max_length=20)
    description: Optional[str] = None

    @field_validator('code')
    @classmethod
    def uppercase_code(cls, v):
        return v.upper().strip() if v else v


class FacultyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    code: Optional[str] = Field(None, max_length=20)
    description: Optional[str] = None

    @field_validator('code')
    @classmethod
    def uppercase_code(cls, v):
        return v.upper().strip() if v else v


class FacultyResponse(BaseModel):
    id: int
    name: str
    code: Optional[str] = None
    description: Optional[str] = None
    department_count: int = 0
    created_at: datetime

    class Config:
        from_attributes = True


# ============== Department Schemas ==============

class DepartmentCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    code: str = Field(..., min_length=2, max_length=20)
    faculty_id: int

    @field_validator('code')
    @classmethod
    def uppercase_code(cls, v):
        return v.upper().strip()


class DepartmentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    code: Optional[str] = Field(None, min_length=2, max_length=20)
    faculty_id: Optional[int] = None

    @field_validator('code')
    @classmethod
    def uppercase_code(cls, v):
        return v.upper().strip() if v else v


class DepartmentResponse(BaseModel):
    id: int
    name: str
    code: str
    faculty_id: int
    faculty_name: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


# ============== Academic Year Schemas ==============

class AcademicYearCreate(BaseModel):
    year: str = Field(..., min_length=4, max_length=20, description="e.g. 2023-2024")
    is_active: bool = False


class AcademicYearUpdate(BaseModel):
    year: Optional[str] = Field(None, min_length=4, max_length=20)
    is_active: Optional[bool] = None


class AcademicYearResponse(BaseModel):
    id: int
    year: str
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True
