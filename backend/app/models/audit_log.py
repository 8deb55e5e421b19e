from sqlalchemy import Column, String, DateTime, Text, Integer, JSON
from datetime import datetime

from app.core.database import Base


class AuditLog(Base):
    """Audit trail of registry mutations"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor = Column(String(255), nullable=False, default="system", index=True)

    # Action details
    action = Column(String(100), nullable=False, index=True)  # e.g. 'create', 'bulk_create', 'upload'
    resource_type = Column(String(50), nullable=False, index=True)  # e.g. 'student', 'department'
    resource_id = Column(String(100), nullable=True)

    details = Column(JSON, nullable=True)

    # Request metadata
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)

    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog {self.action} by {self.actor}>"
