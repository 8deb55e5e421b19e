from pydantic_settings import BaseSettings
from typing import List, Any
import json
from pathlib import Path


def parse_list(value: Any) -> List[str]:
    """Accept a JSON array or a comma-separated string"""
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    if not isinstance(value, str):
        return []
    if value.startswith('['):
        try:
            return parse_list(json.loads(value))
        except json.JSONDecodeError:
            pass
    return [item.strip() for item in value.split(',') if item.strip()]


class Settings(BaseSettings):
    """Registry settings, each overridable by environment variable or .env"""

    # Application
    APP_NAME: str = "Student Records Registry"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    API_VERSION: str = "v1"
    TESTING: bool = False
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8000

    # Database (postgresql:// and sqlite:/// get their async drivers)
    DATABASE_URL: str = "sqlite+aiosqlite:///./registry.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 5
    DB_ECHO: bool = False

    CORS_ORIGINS_STR: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Rate limiting
    RATE_LIMIT_PER_MINUTE: int = 120
    VERIFY_RATE_LIMIT: str = "30/minute"

    # Uploads and imports
    UPLOAD_DIR: str = "uploads"
    MAX_UPLOAD_SIZE: int = 200 * 1024 * 1024  # whole request body
    MAX_CSV_SIZE_MB: int = 10
    MAX_ZIP_SIZE_MB: int = 100
    MAX_FILES_PER_UPLOAD: int = 10
    ALLOWED_DOCUMENT_EXTENSIONS_STR: str = "pdf,jpg,jpeg,png,doc,docx,xls,xlsx"
    UPLOAD_CONCURRENCY: int = 3

    # Cache TTLs in seconds
    CACHE_TTL_ACADEMIC: int = 900  # faculties, departments, academic years
    CACHE_TTL_STUDENTS: int = 120  # list / search pages
    CACHE_TTL_STUDENT_DETAIL: int = 600
    CACHE_TTL_STUDENT_VALIDATION: int = 600
    CACHE_TTL_DOCUMENTS: int = 300
    CACHE_TTL_VERIFICATION: int = 60
    CACHE_TTL_AUDIT_LOGS: int = 120
    CACHE_TTL_DASHBOARD: int = 1800
    CACHE_STALE_FRACTION: float = 0.8
    CACHE_REFRESH_CONCURRENCY: int = 3
    CACHE_FAILURE_HISTORY: int = 50

    AUDIT_RETENTION_DAYS: int = 90

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def CORS_ORIGINS(self) -> List[str]:
        return parse_list(self.CORS_ORIGINS_STR)

    @property
    def ALLOWED_DOCUMENT_EXTENSIONS(self) -> List[str]:
        """Lower-cased, without the leading dot"""
        return [ext.lstrip('.').lower() for ext in parse_list(self.ALLOWED_DOCUMENT_EXTENSIONS_STR)]

    @property
    def UPLOAD_PATH(self) -> Path:
        return Path(self.UPLOAD_DIR)

    @property
    def MAX_CSV_BYTES(self) -> int:
        return self.MAX_CSV_SIZE_MB * 1024 * 1024

    @property
    def MAX_ZIP_BYTES(self) -> int:
        return self.MAX_ZIP_SIZE_MB * 1024 * 1024

    @property
    def async_database_url(self) -> str:
        url = self.DATABASE_URL
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite:///"):
            return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return url

    def is_dev_mode(self) -> bool:
        return self.ENVIRONMENT != "production"


settings = Settings()
