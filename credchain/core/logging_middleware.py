"""
Request logging middleware.

One structured log line per request with timing; the request id is taken
from X-Request-Id (or generated), exposed on ``request.state`` for error
responses and echoed back in the response headers.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("credchain.requests")


def client_ip(request: Request) -> str:
    """Client address, respecting proxy headers."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    if request.client:
        return request.client.host
    return "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    # Probes would drown everything else
    EXCLUDE_PATHS = {"/healthz", "/readyz"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        path = request.url.path
        if path in self.EXCLUDE_PATHS:
            response = await call_next(request)
            response.headers["X-Request-Id"] = request_id
            return response

        start_time = time.perf_counter()
        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "client_ip": client_ip(request),
        }

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                "Request failed: %s %s -> 500 (%.2fms) - %s",
                request.method, path, duration_ms, str(e),
                extra={**log_data, "status_code": 500, "duration_ms": round(duration_ms, 2)},
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        log_data.update({"status_code": response.status_code, "duration_ms": round(duration_ms, 2)})
        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        else:
            log = logger.info
        log(
            "Request completed: %s %s -> %d (%.2fms)",
            request.method, path, response.status_code, duration_ms,
            extra=log_data,
        )

        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response
