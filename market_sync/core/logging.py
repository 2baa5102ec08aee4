"""
Structured logging configuration for Market Sync.

JSON output in production, human-readable output in debug mode. Trace, job
and style identifiers are carried in context variables so every log line
emitted while a sync job runs can be correlated.
"""
import json
import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

from market_sync.core.config import get_settings

settings = get_settings()

# Context variables for request/job scoped data
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
style_id_var: ContextVar[Optional[str]] = ContextVar("style_id", default=None)

_CONTEXT_VARS = {
    "trace_id": trace_id_var,
    "job_id": job_id_var,
    "style_id": style_id_var,
}

_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per record with context information for log
    aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, var in _CONTEXT_VARS.items():
            value = var.get()
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        # Fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str, ensure_ascii=False)


def setup_logging() -> None:
    """
    Configure logging for the application.

    Sets up structured JSON logging for production and human-readable
    logging for development.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    if settings.DEBUG:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = StructuredFormatter()

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set levels for third-party libraries
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DEBUG else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


class LogContext:
    """
    Context manager for adding context to logs.

    Usage:
        with LogContext(job_id="42", style_id="DD1391-100"):
            logger.info("This log will include job_id and style_id")
    """

    def __init__(
        self,
        trace_id: Optional[str] = None,
        job_id: Optional[str] = None,
        style_id: Optional[str] = None,
    ):
        self._values = {
            "trace_id": trace_id,
            "job_id": job_id,
            "style_id": style_id,
        }
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        for name, value in self._values.items():
            if value:
                token = _CONTEXT_VARS[name].set(str(value))
                self._tokens.append((name, token))
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for name, token in reversed(self._tokens):
            _CONTEXT_VARS[name].reset(token)
        self._tokens.clear()


def log_operation(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """Log an operation with context."""
    logger.log(
        level,
        f"Operation: {operation}",
        extra={"operation": operation, **context},
    )


def log_performance(
    logger: logging.Logger,
    operation: str,
    duration_seconds: float,
    **context: Any,
) -> None:
    """Log operation performance."""
    logger.info(
        f"Operation {operation} completed in {duration_seconds:.3f}s",
        extra={
            "operation": operation,
            "duration_seconds": duration_seconds,
            "performance": True,
            **context,
        },
    )


# Initialize logging on module import
setup_logging()
