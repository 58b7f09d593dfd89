"""Structured logging with correlation IDs.

JSON log records carry the correlation ID of the request or job that
produced them, so a callback delivery can be followed from the HTTP
handler through the ledger update to the background notification.

Gateway traffic carries signatures, client secrets and key material;
extra fields with those names are redacted before a record is written.
"""

import json
import logging
import sys
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_STANDARD_RECORD_FIELDS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName", "correlation_id",
))

SENSITIVE_FIELDS = frozenset((
    "sign", "signature", "stripe_signature", "client_secret",
    "private_key", "app_secret", "api_key", "webhook_secret",
    "authorization", "password", "smtp_password", "token",
))

REDACTED = "***"

# Provider bodies are logged for diagnostics only; keep records bounded
MAX_RAW_BODY_CHARS = 2048


def get_correlation_id() -> str:
    """Get the current correlation ID, generating one if unset."""
    cid = correlation_id_var.get()
    if cid is None:
        cid = str(uuid.uuid4())
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> Token:
    """Set the correlation ID for the current context.

    Returns:
        Token that restores the previous value via reset_correlation_id
    """
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token: Token) -> None:
    correlation_id_var.reset(token)


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Run a block under a correlation ID, restoring the outer one after."""
    token = set_correlation_id(correlation_id)
    try:
        yield correlation_id
    finally:
        reset_correlation_id(token)


def redact(fields: dict[str, Any]) -> dict[str, Any]:
    """Mask secret-bearing fields and truncate raw provider bodies."""
    cleaned = {}
    for key, value in fields.items():
        if key.lower() in SENSITIVE_FIELDS:
            cleaned[key] = REDACTED
        elif key == "raw_body" and isinstance(value, str) and len(value) > MAX_RAW_BODY_CHARS:
            cleaned[key] = value[:MAX_RAW_BODY_CHARS] + "...[truncated]"
        elif isinstance(value, dict):
            cleaned[key] = redact(value)
        else:
            cleaned[key] = value
    return cleaned


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter with correlation ID support."""

    def __init__(
        self,
        service: str = "payments",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service = service
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            log_data["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
            }
            if self.include_stack_trace and exc_tb is not None:
                log_data["exception"]["stack_trace"] = traceback.format_exception(
                    exc_type, exc_value, exc_tb
                )

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_FIELDS
        }
        if extra:
            log_data["extra"] = redact(extra)

        return json.dumps(log_data, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamps every record with the current correlation ID."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
    service: str = "payments",
) -> None:
    """Configure the root logger with a single stdout handler.

    Args:
        level: Log level name
        json_format: Emit StructuredFormatter JSON instead of plain text
        include_stack_trace: Attach formatted tracebacks to error records
        service: Value of the "service" field in JSON records
    """
    log_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(
            StructuredFormatter(service=service, include_stack_trace=include_stack_trace)
        )
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"
        ))
    root_logger.addHandler(handler)

    # Library loggers that would otherwise echo request bodies or SQL
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _with_correlation(extra: dict[str, Any]) -> dict[str, Any]:
    extra["correlation_id"] = get_correlation_id()
    return extra


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log an error with correlation ID and optional exception.

    Args:
        logger: Logger instance
        message: Error message
        exception: Exception whose type, message and traceback are attached
        **extra: Additional context fields
    """
    if exception is not None:
        extra.setdefault("error_type", type(exception).__name__)
        logger.error(message, exc_info=exception, extra=_with_correlation(extra))
    else:
        logger.error(message, extra=_with_correlation(extra))


def log_warning(logger: logging.Logger, message: str, **extra: Any) -> None:
    logger.warning(message, extra=_with_correlation(extra))


def log_info(logger: logging.Logger, message: str, **extra: Any) -> None:
    logger.info(message, extra=_with_correlation(extra))
