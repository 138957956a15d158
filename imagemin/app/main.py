"""FastAPI application entry point for the image optimization service."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .api import routes_admin, routes_callback, routes_status
from .core.config import settings
from .core.middleware import RequestLoggingMiddleware
from .core.rate_limiter import limiter, rate_limit_handler
from .optimization.file_manager import FileManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if settings.IMAGE_OPTIMIZATION_ENABLED:
        FileManager.from_settings(settings).create_dirs()
    else:
        logger.info("Image optimization is disabled; background tasks will idle")
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(routes_admin.router, prefix="/admin", tags=["admin"])
    app.include_router(routes_callback.router, prefix="/api/imagemin", tags=["imagemin"])
    app.include_router(routes_status.router, prefix="/api/imagemin", tags=["imagemin"])

    return app


app = create_app()
