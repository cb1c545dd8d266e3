"""
Timeouts for Credchain.

- Deadline: a remaining-time budget shared by nested external calls
- with_timeout: run a coroutine under a budget, raising OperationTimeout
- TimeoutMiddleware: returns 504 for requests exceeding the timeout
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from credchain.core.errors import OperationTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:
    """
    Time budget that composes by subtraction.

    A caller holding a 30s deadline that spends 12s on storage hands the
    ledger call ``deadline.remaining()`` rather than a fresh 30s.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def cap(self, seconds: float) -> float:
        """The smaller of ``seconds`` and the time left."""
        return min(seconds, self.remaining())


async def with_timeout(
    awaitable: Awaitable[T],
    seconds: float,
    operation: str,
    deadline: Optional[Deadline] = None,
) -> T:
    """Await ``awaitable`` for at most ``seconds`` (and never past ``deadline``)."""
    budget = deadline.cap(seconds) if deadline is not None else seconds
    try:
        return await asyncio.wait_for(awaitable, timeout=budget)
    except asyncio.TimeoutError:
        raise OperationTimeout(operation, budget) from None


class TimeoutMiddleware(BaseHTTPMiddleware):
    """
    Middleware to enforce request timeout.

    Usage:
        app.add_middleware(TimeoutMiddleware, timeout=120.0)
    """

    # Registration uploads and re-check downloads are slow
    EXTENDED_TIMEOUT_PATHS = {
        "/api/documents/register": 300.0,
    }

    def __init__(self, app, timeout: float = 120.0, extended: Optional[dict[str, float]] = None):
        super().__init__(app)
        self.default_timeout = timeout
        self.extended_paths = {**self.EXTENDED_TIMEOUT_PATHS, **(extended or {})}

    def _get_timeout(self, path: str) -> float:
        for prefix, timeout in self.extended_paths.items():
            if path.startswith(prefix):
                return timeout
        return self.default_timeout

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        timeout = self._get_timeout(request.url.path)
        try:
            return await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Request timeout: %s %s exceeded %.1fs",
                request.method,
                request.url.path,
                timeout,
                extra={"path": request.url.path, "method": request.method},
            )
            return JSONResponse(
                status_code=504,
                content={
                    "error": "timeout",
                    "message": f"Request exceeded {timeout:.0f}s timeout",
                    "request_id": request.headers.get("X-Request-Id"),
                },
            )
