"""Shared SlowAPI rate limiter configuration."""
from __future__ import annotations

import logging
from typing import Callable

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)


def _caller_key(request: Request) -> str:
    """Bucket callbacks by the calling service address.

    The callback usually reaches us through a reverse proxy, so the first
    ``X-Forwarded-For`` hop wins over the socket peer.
    """

    forwarded = request.headers.get("X-Forwarded-For", "")
    first_hop = forwarded.split(",", 1)[0].strip()
    if first_hop:
        return first_hop
    return get_remote_address(request)


limiter = Limiter(key_func=_caller_key)


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return a JSON response when a rate limit is exceeded."""

    logger.warning(
        "Rate limit exceeded for path=%s key=%s limit=%s", request.url.path, _caller_key(request), exc.detail
    )
    return JSONResponse(
        {"detail": {"code": "image_optimization_rate_limited", "message": f"Rate limit exceeded: {exc.detail}"}},
        status_code=429,
    )


RateLimitHandler = Callable[[Request, RateLimitExceeded], JSONResponse]
