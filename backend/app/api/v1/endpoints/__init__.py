# API endpoints
from . import academic, audit_logs, cache, dashboard, documents, health, imports, students, verification

__all__ = ["academic", "audit_logs", "cache", "dashboard", "documents", "health", "imports", "students", "verification"]
