from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, Integer, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from app.core.database import Base


class DocumentType(str, enum.Enum):
    PHOTO = "PHOTO"
    TRANSCRIPT = "TRANSCRIPT"
    CERTIFICATE = "CERTIFICATE"
    SUPPORTING = "SUPPORTING"


class Document(Base):
    """File attached to a student, stored under UPLOAD_DIR"""
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
    registration_id = Column(String(50), nullable=False, index=True)

    document_type = Column(SQLEnum(DocumentType), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    file_type = Column(String(100), nullable=True)  # MIME type
    file_path = Column(String(500), nullable=False)  # relative to UPLOAD_DIR

    upload_date = Column(DateTime, default=datetime.utcnow, nullable=False)

    student = relationship("Student", back_populates="documents")

    def __repr__(self):
        return f"<Document {self.document_type} {self.file_name}>"
