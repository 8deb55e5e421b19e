from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.api.dependencies import get_cache_registry
from app.core.database import get_session_factory
from app.services.cache_service import CacheNamespace, CacheRegistry
from app.services.dashboard_service import load_dashboard_stats, load_document_insights, load_student_analytics

router = APIRouter()


@router.get("/stats")
async def get_dashboard_stats(
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Record counts, status split, recent registrations and the monthly trend"""
    return await registry.swr(CacheNamespace.DASHBOARD).get(
        "all", lambda: load_dashboard_stats(session_factory)
    )


@router.get("/analytics/students")
async def get_student_analytics(
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Average GPA by status, department and faculty, plus GPA bands and grades"""
    return await registry.swr(CacheNamespace.DASHBOARD).get(
        "student-analytics", lambda: load_student_analytics(session_factory)
    )


@router.get("/analytics/documents")
async def get_document_insights(
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await registry.swr(CacheNamespace.DASHBOARD).get(
        "document-insights", lambda: load_document_insights(session_factory)
    )
