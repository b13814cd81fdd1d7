"""Request context middleware: client metadata and timing."""

from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Captures client metadata for assignment records and times the request.

    ``request.state.client_metadata`` holds the user agent, origin and
    referrer headers (only those present). The request duration is returned
    in ``X-Request-Duration-Ms``.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.perf_counter()
        request.state.client_metadata = {
            key: value
            for key, value in (
                ("user_agent", request.headers.get("user-agent")),
                ("origin", request.headers.get("origin")),
                ("referrer", request.headers.get("referer")),
            )
            if value
        }

        response = await call_next(request)

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Request-Duration-Ms"] = str(duration_ms)
        logger.debug(
            "request completed: %s %s %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response
