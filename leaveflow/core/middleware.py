"""
Request context middleware: tags every request with an id.

The id is bound into structlog's context so every log line emitted while
serving the request carries it, and is echoed back in X-Request-ID.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

REQUEST_ID_HEADER = "X-Request-ID"

# Paths that are not worth a log line
QUIET_PATHS = {"/", "/docs", "/redoc", "/openapi.json", "/api/health"}


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        if request.url.path not in QUIET_PATHS and request.method != "OPTIONS":
            structlog.get_logger(__name__).info("request_served", status_code=response.status_code)
        return response
