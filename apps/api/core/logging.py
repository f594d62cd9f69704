"""
Structured logging configuration.

JSON lines in production, plain text in development. Code that handles one
Stripe event, checkout session or link wraps its work in `log_context(...)`;
every record logged inside carries those identifiers (`event_id`, `code`,
`session_id`, ...) without threading them through each call.
"""
from contextlib import contextmanager
from contextvars import ContextVar
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterator
from core.config import settings

_context: ContextVar[Dict[str, Any]] = ContextVar("filepay_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach identifiers to every record logged in this block. None values are dropped."""
    token = _context.set({**_context.get(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _context.reset(token)


def current_log_context() -> Dict[str, Any]:
    return dict(_context.get())


class ContextFilter(logging.Filter):
    """Copies the active `log_context` onto each record as `record.context`."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = current_log_context()
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record: base fields, then context, then extra_fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "service": "filepay-api",
            "environment": settings.ENVIRONMENT,
        }
        log_data.update(getattr(record, "context", None) or {})

        # Per-call structured fields passed as extra={"extra_fields": {...}}
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable format; the active context is appended as key=value pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None)
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return line


def setup_logging():
    """Configure the root logger once per process."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = TextFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    root_logger.addHandler(handler)

    # Client libraries log every HTTP call at INFO.
    for noisy in ("sqlalchemy.engine", "urllib3", "botocore", "boto3", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)

    return root_logger
