"""
Distributed Caching System

This package provides the Redis-backed TTL cache used by the TaskTrack
service, key-building conventions, and a decorator for read-through caching
of async function results.
"""

import functools
from typing import Any, Callable, Optional, TypeVar, cast

from tasktrack.common.cache.key_builder import KeyBuilder, TaskCacheKeys
from tasktrack.common.cache.service import (
    DEFAULT_TTL,
    CacheService,
    CacheStats,
    SerializationFormat,
    get_cache_service,
    set_default_cache_service
)
from tasktrack.common.error_handling import TaskTrackError
from tasktrack.common.logger import get_logger

# Set up logging
logger = get_logger(__name__)

# Public API
__all__ = [
    'CacheService',
    'CacheStats',
    'SerializationFormat',
    'DEFAULT_TTL',
    'KeyBuilder',
    'TaskCacheKeys',
    'get_cache_service',
    'set_default_cache_service',
    'cached',
]

# Type variables for the decorator
F = TypeVar('F', bound=Callable[..., Any])

def cached(
    ttl: Optional[float] = None,
    namespace: Optional[str] = None,
    key_builder: Optional[Callable[..., str]] = None,
    cache: Optional[CacheService] = None
) -> Callable[[F], F]:
    """
    Decorator for read-through caching of async function results.

    A cached value is returned as-is. On a miss the function is called and its
    result written back; a failed write is logged and the result still returned.

    Args:
        ttl: Time to live for the cached result in seconds (service default if None)
        namespace: Optional namespace for the cache key
        key_builder: Optional function to build custom cache keys from the call arguments
        cache: Cache service to use (defaults to get_cache_service())

    Returns:
        Decorated function that uses the cache
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            service = cache or get_cache_service()

            if key_builder:
                cache_key = key_builder(*args, **kwargs)
            else:
                cache_key = KeyBuilder.function_key(func, args, kwargs)

            result = await service.get(cache_key, namespace=namespace)
            if result is not None:
                logger.debug(f"Cache hit for {func.__name__} with key {cache_key}")
                return result

            logger.debug(f"Cache miss for {func.__name__} with key {cache_key}")
            result = await func(*args, **kwargs)

            try:
                await service.set(cache_key, result, ttl=ttl, namespace=namespace)
            except TaskTrackError as e:
                logger.warning(f"Error storing in cache: {e}")

            return result

        return cast(F, wrapper)

    return decorator
