"""
Student Records Registry - Logging
Plain text with request context in development, one JSON object per line in production.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.core.config import settings


# Request-scoped context, set by RequestLoggingMiddleware
request_id_var: ContextVar[str] = ContextVar('request_id', default='')
actor_var: ContextVar[str] = ContextVar('actor', default='')

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024

_RECORD_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'request_id', 'actor'}

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine", "aiosqlite")


def get_request_id() -> str:
    return request_id_var.get()


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def get_actor() -> str:
    """Acting admin taken from the X-Actor header, '' outside a request"""
    return actor_var.get()


def set_actor(actor: str) -> None:
    actor_var.set(actor.strip())


def generate_request_id() -> str:
    return uuid.uuid4().hex[:8]


def _request_context() -> Dict[str, str]:
    context = {}
    if request_id_var.get():
        context["request_id"] = request_id_var.get()
    if actor_var.get():
        context["actor"] = actor_var.get()
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with request context and any `extra=` fields"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            **_request_context(),
        }
        if record.exc_info and record.exc_info[0]:
            exc_type, exc, tb = record.exc_info
            payload["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": traceback.format_exception(exc_type, exc, tb),
            }
        payload.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith('_')
        )
        return json.dumps(payload, default=str)


class ContextualFormatter(logging.Formatter):
    """Text formatter exposing %(request_id)s and %(actor)s"""

    def format(self, record: logging.LogRecord) -> str:
        context = _request_context()
        record.request_id = context.get("request_id", "-")
        record.actor = context.get("actor", "-")
        return super().format(record)


class RegistryLogger(logging.Logger):
    """Logger with helpers for the registry's recurring events"""

    def log_cache_event(self, event: str, namespace: str, key: Optional[str] = None, **kwargs) -> None:
        """HIT, MISS, STALE, DISCARD, INVALIDATE, CLEAR or REFRESH_QUEUED"""
        target = namespace if key is None else f"{namespace}/{key}"
        self.debug(f"Cache {event}: {target}", extra={
            "event_type": "cache",
            "cache_event": event,
            "cache_namespace": namespace,
            "cache_key": key,
            **kwargs,
        })

    def log_import_summary(self, kind: str, summary: Dict[str, Any], **kwargs) -> None:
        counts = ", ".join(f"{name}={count}" for name, count in summary.items())
        self.info(f"Import {kind}: {counts}", extra={"event_type": "import", "import_kind": kind, **kwargs})

    def log_error_with_context(self, error: Exception, context: Optional[str] = None, **kwargs) -> None:
        self.error(
            f"Error in {context}: {type(error).__name__}: {error}",
            exc_info=True,
            extra={
                "event_type": "error",
                "error_type": type(error).__name__,
                "error_context": context,
                **kwargs,
            },
        )

    def log_performance(self, operation: str, duration_ms: float, threshold_ms: float = 1000, **kwargs) -> None:
        """Warn when an operation is slower than threshold_ms"""
        slow = duration_ms > threshold_ms
        message = f"Performance: {operation} took {duration_ms:.2f}ms"
        if slow:
            message += f" (threshold: {threshold_ms}ms)"
        self.log(logging.WARNING if slow else logging.DEBUG, message, extra={
            "event_type": "performance",
            "operation": operation,
            "duration_ms": duration_ms,
            "exceeded_threshold": slow,
            **kwargs,
        })


def _build_handlers(json_logs: bool) -> List[logging.Handler]:
    if json_logs:
        console_formatter = file_formatter = JSONFormatter()
    else:
        console_formatter = ContextualFormatter("%(levelname)-8s | %(message)s")
        file_formatter = ContextualFormatter(
            "%(asctime)s | %(levelname)-8s | [%(request_id)s] [%(actor)s] | "
            "%(funcName)s:%(lineno)d | %(message)s"
        )

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(console_formatter)
    handlers: List[logging.Handler] = [console]

    if settings.LOG_FILE:
        log_file = Path(settings.LOG_FILE)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=10 if json_logs else 5)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    return handlers


def setup_logging() -> RegistryLogger:
    """Configure the 'registry' logger for the current environment"""
    logging.setLoggerClass(RegistryLogger)
    registry_logger = logging.getLogger("registry")
    registry_logger.__class__ = RegistryLogger
    registry_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    json_logs = settings.ENVIRONMENT == "production"
    registry_logger.handlers.clear()
    for handler in _build_handlers(json_logs):
        registry_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    registry_logger.info("Logging initialized", extra={
        "environment": settings.ENVIRONMENT,
        "log_level": settings.LOG_LEVEL,
        "json_logging": json_logs,
    })
    return registry_logger


logger: RegistryLogger = setup_logging()


__all__ = [
    'logger',
    'setup_logging',
    'get_request_id',
    'set_request_id',
    'get_actor',
    'set_actor',
    'generate_request_id',
    'RegistryLogger',
]
