"""
Structured logging.

JSON lines in production (or LOG_FORMAT=json), plain text otherwise. Every
record carries the request id and, once authenticated, the user id, so a
usage record, a credit deduction and a provider failure from the same
request can be joined in the log stream.
"""
import logging
import sys
import json
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from core.config import settings

_log_context: ContextVar[Dict[str, str]] = ContextVar("metering_log_context", default={})

# Third-party loggers that are chatty at INFO.
QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "anthropic", "openai", "google_genai")


def bind_log_context(**fields: Optional[str]) -> None:
    """Attach fields to every record logged from the current request/task."""
    merged = dict(_log_context.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    _log_context.set(merged)


def clear_log_context() -> None:
    _log_context.set({})


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        record.request_id = context.get("request_id", "-")
        record.user_id = context.get("user_id", "-")
        return True


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for key in ("request_id", "user_id"):
            value = getattr(record, key, "-")
            if value != "-":
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # extra={"extra_fields": {...}} from call sites
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def setup_logging():
    """Configure the root logger once at startup (API and Celery worker)."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s [%(request_id)s %(user_id)s] %(name)s: %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(formatter)
    handler.addFilter(RequestContextFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
