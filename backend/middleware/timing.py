"""
Request timing middleware.

Adds an X-Response-Time header and warns about slow calls. Slow telemetry
acknowledgements are worth knowing about since the sender may redeliver.
"""

import logging
import time
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("smartcharge.timing")

SLOW_REQUEST_THRESHOLD_MS = 2000


class TimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response: Response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers["X-Response-Time"] = f"{elapsed_ms:.2f}ms"
        if elapsed_ms >= SLOW_REQUEST_THRESHOLD_MS:
            logger.warning(
                "Slow request: %s %s took %.0fms (status %s)",
                request.method,
                request.url.path,
                elapsed_ms,
                response.status_code,
            )
        return response
