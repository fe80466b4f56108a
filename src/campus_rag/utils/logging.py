"""Logging for the Campus RAG service.

Every record carries the request id plus the owner and document being worked
on, taken from context variables. The HTTP middleware sets the request id;
indexing runs and queries bind the owner and document with ``log_context``.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

from campus_rag.config import get_settings

ROOT_LOGGER = "campus_rag"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
owner_id_var: ContextVar[Optional[str]] = ContextVar("owner_id", default=None)
document_id_var: ContextVar[Optional[str]] = ContextVar("document_id", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "owner_id": owner_id_var,
    "document_id": document_id_var,
}

# Third-party loggers and the level they are held at outside debug mode
_QUIET_LOGGERS = {
    "uvicorn": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "fastapi": logging.WARNING,
    "httpx": logging.WARNING,
    "openai": logging.WARNING,
    "litellm": logging.WARNING,
    "LiteLLM": logging.WARNING,
    "qdrant_client": logging.WARNING,
}

_configured = False


class LogContextFilter(logging.Filter):
    """Copy request id, owner id and document id onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT_VARS.items():
            if getattr(record, name, None) is None:
                setattr(record, name, var.get())
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line (production)."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        for name in _CONTEXT_VARS:
            value = getattr(record, name, None)
            if value:
                entry[name] = value
        entry.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Readable single-line format for development."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s [%(request_id)s]%(scope)s %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        record.request_id = getattr(record, "request_id", None) or "-"
        scope = []
        if getattr(record, "owner_id", None):
            scope.append(f"owner={record.owner_id}")
        if getattr(record, "document_id", None):
            scope.append(f"doc={record.document_id}")
        record.scope = f" ({', '.join(scope)})" if scope else ""
        return super().format(record)


def setup_logging() -> logging.Logger:
    """Configure the service logger once; later calls return it unchanged."""
    global _configured

    logger = logging.getLogger(ROOT_LOGGER)
    if _configured:
        return logger

    settings = get_settings()
    level = getattr(logging, settings.log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(LogContextFilter())
    handler.setFormatter(JSONFormatter() if settings.is_production else ConsoleFormatter())

    logger.setLevel(level)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(logging.INFO if settings.debug else quiet_level)

    _configured = True
    logger.info(
        f"Logging configured: level={settings.log_level}, environment={settings.environment.value}"
    )
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Child of the service logger, e.g. ``get_logger("vector_store")``."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


@contextmanager
def log_context(owner_id: Optional[str] = None, document_id: Optional[str] = None) -> Iterator[None]:
    """Attach owner and document ids to every record logged inside the block."""
    tokens = []
    if owner_id is not None:
        tokens.append((owner_id_var, owner_id_var.set(owner_id)))
    if document_id is not None:
        tokens.append((document_id_var, document_id_var.set(document_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def log_request(method: str, path: str, status_code: int, duration_ms: float, **kwargs: Any) -> None:
    """Access log line written by the timing middleware."""
    get_logger("http").info(
        f"{method} {path} - {status_code} - {duration_ms:.2f}ms",
        extra={
            "extra_fields": {
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
                **kwargs,
            }
        },
    )


def log_error(error: Exception, context: Optional[Dict[str, Any]] = None) -> None:
    """Log an exception with its traceback and request context."""
    get_logger("error").error(
        f"{type(error).__name__}: {error}",
        exc_info=error,
        extra={
            "extra_fields": {
                "error_type": type(error).__name__,
                "context": context or {},
            }
        },
    )
