"""Logging configuration for the Knowledge Retrieval service."""

import json
import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

from knowledge_retrieval.config import get_settings

# Request ID context variable for tracking requests across async operations
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_logger: Optional[logging.Logger] = None

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "openai", "jieba")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; fields passed as `extra={"extra_fields": ...}` are merged in."""

    def __init__(self, service: str = "knowledge-retrieval"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "service": self.service,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(getattr(record, "extra_fields", {}))
        return json.dumps(log_data, default=str, ensure_ascii=False)


class StandardFormatter(logging.Formatter):
    """Human-readable lines for development."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        record.request_id = request_id_var.get() or "N/A"
        return super().format(record)


def setup_logging() -> logging.Logger:
    """Attach a stdout handler to the `knowledge_retrieval` logger (JSON in production)."""
    global _logger

    if _logger is not None:
        return _logger

    settings = get_settings()
    level = getattr(logging, settings.log_level)

    logger = logging.getLogger("knowledge_retrieval")
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter(settings.app_name) if settings.is_production else StandardFormatter())
    logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("litellm").setLevel(logging.INFO if settings.debug else logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database.echo else logging.WARNING
    )

    _logger = logger
    logger.info(
        f"Logging configured: level={settings.log_level}, environment={settings.environment.value}"
    )
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger under the `knowledge_retrieval` namespace."""
    if name:
        return logging.getLogger(f"knowledge_retrieval.{name}")
    return logging.getLogger("knowledge_retrieval")


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def log_request(method: str, path: str, status_code: int, duration_ms: float, **fields: Any) -> None:
    """Log an HTTP request."""
    get_logger("http").info(
        f"{method} {path} - {status_code} - {duration_ms:.2f}ms",
        extra={
            "extra_fields": {
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": duration_ms,
                **fields,
            }
        },
    )


def log_error(error: Exception, **fields: Any) -> None:
    """
    Log an exception raised while handling a request.

    Client errors (a `status_code` below 500, e.g. a missing knowledge base) are
    logged as warnings without a traceback; everything else as an error with one.
    """
    status_code = getattr(error, "status_code", 500)
    extra_fields = {
        "error_type": type(error).__name__,
        "error_code": getattr(error, "code", None),
        "status_code": status_code,
        **fields,
    }
    logger = get_logger("error")
    if status_code < 500:
        logger.warning(f"{type(error).__name__}: {error}", extra={"extra_fields": extra_fields})
    else:
        logger.error(
            f"{type(error).__name__}: {error}", exc_info=error, extra={"extra_fields": extra_fields}
        )
