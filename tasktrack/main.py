"""
Main application entry point for the TaskTrack service core.

This module builds the FastAPI application shell that owns the shared Redis
connection. The lifespan opens the backend, wires the cache service, rate
limiter and request gate onto ``app.state``, and closes the backend on
shutdown. Business routers are mounted by the caller.

An unreachable Redis at startup does not stop the service: the failure is
logged, cache reads miss and rate limits fail open until the server is back.

Usage:
    - Direct: python -m tasktrack.main
    - ASGI server: uvicorn --factory tasktrack.main:create_app
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from tasktrack import __version__
from tasktrack.common.cache import CacheService, SerializationFormat, set_default_cache_service
from tasktrack.common.config import AppConfig, get_config
from tasktrack.common.error_handling import (
    BackendError,
    ErrorCode,
    RateLimitError,
    TaskTrackError,
    error_response,
    log_error
)
from tasktrack.common.logger import configure_logger, get_logger
from tasktrack.common.rate_limiter import RateLimiter
from tasktrack.common.redis import RedisBackend
from tasktrack.middleware.rate_limit import RateLimitPolicies, RequestGate, default_policies

# Setup module logger
logger = get_logger(__name__)

ERROR_STATUS_CODES = {
    ErrorCode.RATE_LIMIT_ERROR: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.BACKEND_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}

async def handle_tasktrack_error(request: Request, exc: TaskTrackError) -> JSONResponse:
    """Render an unhandled TaskTrackError as a standard error response."""
    status_code = ERROR_STATUS_CODES.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    log_error(
        exc,
        level=logging.WARNING if status_code < 500 else logging.ERROR,
        context={"path": request.url.path}
    )

    headers = None
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(status_code=status_code, content=error_response(exc), headers=headers)

def create_app(
    config: Optional[AppConfig] = None,
    backend: Optional[RedisBackend] = None,
    policies: Optional[RateLimitPolicies] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        config: Application configuration (defaults to get_config())
        backend: Redis backend to own (defaults to one built from config)
        policies: Rate limit policy table (defaults to default_policies())

    Returns:
        Configured FastAPI application
    """
    config = config or get_config()
    backend = backend or RedisBackend(config.redis)

    configure_logger(
        level=config.logging.level,
        use_json=config.logging.json_format,
        log_file=config.logging.file_path
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            await backend.open()
        except BackendError as e:
            log_error(e, context={"stage": "startup"})
            logger.warning("Starting without Redis: cache reads will miss and rate limits fail open")

        cache = CacheService(
            backend,
            default_ttl=config.cache.default_ttl,
            serialization=SerializationFormat(config.cache.serialization)
        )
        set_default_cache_service(cache)

        app.state.backend = backend
        app.state.cache = cache
        app.state.limiter = RateLimiter(backend, prefix=config.rate_limit.key_prefix)
        app.state.gate = None
        if config.rate_limit.enabled:
            app.state.gate = RequestGate(
                app.state.limiter,
                policies if policies is not None else default_policies(),
                block_duration=config.rate_limit.block_duration,
                trust_forwarded_for=config.rate_limit.trust_forwarded_for
            )

        logger.info("Application startup complete")
        try:
            yield
        finally:
            set_default_cache_service(None)
            await backend.close()
            logger.info("Application shutdown complete")

    app = FastAPI(
        title=f"{config.app_name} API",
        version=__version__,
        lifespan=lifespan
    )
    app.add_exception_handler(TaskTrackError, handle_tasktrack_error)

    return app

# Entry point for running the application directly
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
