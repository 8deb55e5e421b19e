"""
Academic configuration: faculties, departments, academic years
"""

from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime

from app.core.database import Base


class Faculty(Base):
    """Faculty / school grouping several departments"""
    __tablename__ = "faculties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    code = Column(String(20), nullable=True, unique=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    departments = relationship("Department", back_populates="faculty")
    students = relationship("Student", back_populates="faculty")

    def __repr__(self):
        return f"<Faculty {self.name}>"


class Department(Base):
    """Department within a faculty; code is unique and stored upper-case"""
    __tablename__ = "departments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    code = Column(String(20), nullable=False, unique=True, index=True)
    faculty_id = Column(Integer, ForeignKey("faculties.id"), nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    faculty = relationship("Faculty", back_populates="departments")
    students = relationship("Student", back_populates="department")

    def __repr__(self):
        return f"<Department {self.code}>"


class AcademicYear(Base):
    """Academic year such as 2023-2024"""
    __tablename__ = "academic_years"

    id = Column(Integer, primary_key=True, autoincrement=True)
    year = Column(String(20), nullable=False, unique=True)
    is_active = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    students = relationship("Student", back_populates="academic_year")

    def __repr__(self):
        return f"<AcademicYear {self.year}>"
