"""FastAPI middleware for request correlation and logging."""

import logging
import re
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import correlation_scope

logger = logging.getLogger("app.requests")

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Caller-supplied ids end up in every log line; accept only plain tokens
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

# Gateway callback paths, used to tag request logs with the provider
_CALLBACK_PATH_RE = re.compile(r"/payments/(?P<gateway>telebirr|stripe)/(callback|webhook)$")

_QUIET_PATHS = frozenset({"/health"})


def resolve_correlation_id(header_value: Optional[str]) -> str:
    """Use the caller's correlation id if well formed, else mint one."""
    if header_value and _CORRELATION_ID_RE.match(header_value):
        return header_value
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Runs each request under its own correlation ID and echoes it back."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        with correlation_scope(correlation_id):
            response = await call_next(request)
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs request start, completion and failure.

    Request bodies are never logged; gateway callbacks carry signatures
    and customer data. Callback requests are tagged with their gateway.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in _QUIET_PATHS:
            return await call_next(request)

        context = {"method": request.method, "path": path}
        match = _CALLBACK_PATH_RE.search(path)
        if match:
            context["callback_gateway"] = match.group("gateway")

        start_time = time.perf_counter()
        logger.info(
            "Request started",
            extra={**context, "client_ip": request.client.host if request.client else None},
        )

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "Request failed",
                extra={**context, "duration_ms": _elapsed_ms(start_time)},
                exc_info=True,
            )
            raise

        logger.info(
            "Request completed",
            extra={
                **context,
                "status_code": response.status_code,
                "duration_ms": _elapsed_ms(start_time),
            },
        )
        return response


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)
