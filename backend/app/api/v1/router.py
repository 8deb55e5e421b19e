from fastapi import APIRouter
from app.api.v1.endpoints import academic, audit_logs, cache, dashboard, documents, health, imports, students, verification

api_router = APIRouter()

api_router.include_router(health.router)


@api_router.get("/health", tags=["Health"])
async def health_check():
    """Simple health check endpoint"""
    return {"status": "healthy", "service": "student-records-registry"}


api_router.include_router(academic.router, tags=["Academic Configuration"])
api_router.include_router(students.router, prefix="/students", tags=["Students"])
api_router.include_router(documents.router, prefix="/documents", tags=["Documents"])
api_router.include_router(imports.router, prefix="/imports", tags=["Imports"])
api_router.include_router(verification.router, prefix="/verify", tags=["Verification"])
api_router.include_router(audit_logs.router, prefix="/audit-logs", tags=["Audit Logs"])
api_router.include_router(dashboard.router, prefix="/dashboard", tags=["Dashboard"])
api_router.include_router(cache.router, prefix="/cache", tags=["Cache"])
