"""
Request logging middleware.

Binds a request id into structlog's context so every log line emitted
while handling the request (rule evaluation, action dispatch, delivery
creation) carries it, and feeds the HTTP request metrics.
"""
import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from alertrelay.routes.metrics import track_request

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs method, path, status and duration for every request.

    Authorization headers are never logged.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
                error=str(e),
            )
            raise

        duration = time.perf_counter() - start
        # Route template keeps metric label cardinality bounded
        route = request.scope.get("route")
        track_request(request.method, getattr(route, "path", "unmatched"), response.status_code, duration)

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )
        return response
