"""Request-logging middleware for the settlement control plane."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any
from urllib.parse import parse_qsl, urlencode

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

# Query parameters and headers whose values must be masked in log output.
_SENSITIVE_PARAMS: frozenset[str] = frozenset({"secret"})
_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie"})
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"


def safe_query(query: str) -> str | None:
    """Return *query* with sensitive parameter values masked."""
    if not query:
        return None
    pairs = [
        (key, _MASK if key.lower() in _SENSITIVE_PARAMS else value)
        for key, value in parse_qsl(query, keep_blank_values=True)
    ]
    return urlencode(pairs, safe="*")


def _safe_headers(request: Request) -> dict[str, str]:
    return {key: _MASK if key.lower() in _SENSITIVE_HEADERS else value for key, value in request.headers.items()}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration.

    The admin secret travels as a query parameter, so the logged query
    string always has it masked.  Each request is tagged with a
    ``correlation_id`` that is echoed back as a response header.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER.lower()) or str(uuid.uuid4())

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            status_code = response.status_code if response is not None else 500
            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": safe_query(request.url.query),
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "headers": _safe_headers(request),
            }
            if status_code >= 500:
                logger.error("request completed", extra={"request": log_payload})
            elif status_code >= 400:
                logger.warning("request completed", extra={"request": log_payload})
            else:
                logger.info("request completed", extra={"request": log_payload})
