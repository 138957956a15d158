"""Request logging middleware."""
from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable, Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .metrics import record_request

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log one line per request, tag it with a request id and record metrics.

    Paths in ``quiet_paths`` (probes and scrapes) are logged at debug level.
    """

    def __init__(self, app: Callable, quiet_paths: Iterable[str] = ("/admin/health", "/admin/metrics")) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("imagemin.request")
        self.quiet_paths = frozenset(quiet_paths)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        method = request.method
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            record_request(method, self._route_path(request), 500, duration)
            self.logger.exception(
                "HTTP %s %s raised an unhandled exception request_id=%s", method, request.url.path, request_id
            )
            raise

        duration = time.perf_counter() - start
        route_path = self._route_path(request)
        level = logging.DEBUG if request.url.path in self.quiet_paths else logging.INFO
        self.logger.log(
            level,
            "HTTP %s %s status=%s client=%s duration=%.3f request_id=%s",
            method,
            route_path,
            response.status_code,
            request.client.host if request.client else "unknown",
            duration,
            request_id,
        )
        record_request(method, route_path, response.status_code, duration)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        response.headers.setdefault("X-Process-Time", f"{duration:.6f}")
        return response

    @staticmethod
    def _route_path(request: Request) -> str:
        # The matched route is only known once the router ran.
        route = request.scope.get("route")
        return getattr(route, "path", request.url.path)
