from sqlalchemy import Column, String, DateTime, Date, Enum as SQLEnum, Integer, Float, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
import re

from app.core.database import Base


# GRW-<department code>-<year>, e.g. GRW-BCS-2021
REGISTRATION_ID_PATTERN = re.compile(r"^GRW-[A-Z]{3}-\d{4}$")


def is_registration_id(value: str) -> bool:
    return REGISTRATION_ID_PATTERN.fullmatch(value) is not None


class Gender(str, enum.Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"


class StudentStatus(str, enum.Enum):
    CLEARED = "CLEARED"
    UN_CLEARED = "UN_CLEARED"


class Student(Base):
    """Graduate record; registration_id (GRW-<DEPT>-<YEAR>) and certificate_id are unique"""
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, autoincrement=True)
    registration_id = Column(String(50), nullable=False, unique=True, index=True)
    certificate_id = Column(String(50), nullable=True, unique=True, index=True)
    full_name = Column(String(255), nullable=False, index=True)
    gender = Column(SQLEnum(Gender), nullable=True)
    phone_number = Column(String(30), nullable=True)

    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False, index=True)
    faculty_id = Column(Integer, ForeignKey("faculties.id"), nullable=True, index=True)
    academic_year_id = Column(Integer, ForeignKey("academic_years.id"), nullable=True, index=True)

    gpa = Column(Float, nullable=True)
    grade = Column(String(10), nullable=True)
    graduation_date = Column(Date, nullable=True)
    status = Column(SQLEnum(StudentStatus), default=StudentStatus.UN_CLEARED, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    department = relationship("Department", back_populates="students")
    faculty = relationship("Faculty", back_populates="students")
    academic_year = relationship("AcademicYear", back_populates="students")
    documents = relationship("Document", back_populates="student", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Student {self.registration_id}>"
