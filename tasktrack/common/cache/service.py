"""
Cache Service Module

This module provides the namespaced TTL cache used by the business layer.
Redis is the only store: the service keeps no in-process copy of any value.

Error policy is deliberately asymmetric:
- reads (get, mget, has, get_stats) degrade to a miss/empty result;
- writes (set, mset) raise BackendError so callers know nothing was stored;
- delete and clear are best-effort and report failure through their result.
"""

import json
import pickle
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from tasktrack.common.cache.key_builder import KeyBuilder
from tasktrack.common.error_handling import BackendError, CacheSerializationError
from tasktrack.common.logger import get_logger
from tasktrack.common.redis import RedisBackend

# Setup logging
logger = get_logger(__name__)

DEFAULT_TTL = 300  # 5 minutes

class SerializationFormat(str, Enum):
    """Enum for cache serialization formats."""
    JSON = "json"
    PICKLE = "pickle"

@dataclass
class CacheStats:
    """
    Best-effort cache usage statistics.

    Attributes:
        total_keys: Number of keys in the namespace, or in the whole database
        memory_usage: Memory used by the Redis server in bytes
        hit_rate: Server-wide keyspace hit ratio, None when there were no lookups
    """
    total_keys: int = 0
    memory_usage: int = 0
    hit_rate: Optional[float] = None

# Global default cache service
_default_cache_service = None

def get_cache_service() -> "CacheService":
    """
    Get the default cache service instance.

    Returns:
        The default cache service, or raises an exception if not set
    """
    if _default_cache_service is None:
        raise RuntimeError("Default cache service has not been set. Call set_default_cache_service first.")
    return _default_cache_service

def set_default_cache_service(service: Optional["CacheService"]) -> None:
    """
    Set the default cache service instance.

    Args:
        service: The cache service to set as default, or None to unset it
    """
    global _default_cache_service
    _default_cache_service = service

class CacheService:
    """
    Namespaced TTL cache on top of the Redis backend.

    Keys are stored as ``namespace:key`` when a namespace is given, or as the
    bare key otherwise.

    Examples:
        cache = CacheService(backend)
        await cache.set("task:1", {"title": "Write report"}, ttl=300)
        task = await cache.get("task:1")
        await cache.clear("tasks")
    """

    def __init__(
        self,
        backend: RedisBackend,
        default_ttl: float = DEFAULT_TTL,
        serialization: SerializationFormat = SerializationFormat.JSON
    ):
        """
        Initialize the cache service.

        Args:
            backend: Open Redis backend shared with the rest of the service
            default_ttl: TTL in seconds used when a write does not give one
            serialization: Serialization format for stored values
        """
        self._backend = backend
        self._default_ttl = default_ttl
        self._serialization = SerializationFormat(serialization)

    @staticmethod
    def build_key(key: str, namespace: Optional[str] = None) -> str:
        """
        Build the storage key for a cache entry.

        Args:
            key: The cache key
            namespace: Optional namespace

        Returns:
            ``namespace:key`` or the bare key
        """
        return f"{namespace}:{key}" if namespace else key

    def _serialize(self, key: str, value: Any) -> bytes:
        try:
            if self._serialization == SerializationFormat.JSON:
                return json.dumps(value).encode('utf-8')
            return pickle.dumps(value)
        except (TypeError, ValueError, AttributeError, pickle.PicklingError) as e:
            raise CacheSerializationError(key, cause=e) from e

    def _deserialize(self, key: str, data: bytes) -> Any:
        if self._serialization == SerializationFormat.JSON:
            try:
                return json.loads(data.decode('utf-8'))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"JSON deserialization failed for cache key {key}: {e}")
                return None
        try:
            return pickle.loads(data)
        except Exception as e:
            logger.warning(f"Pickle deserialization failed for cache key {key}: {e}")
            return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        namespace: Optional[str] = None
    ) -> None:
        """
        Store a value in the cache.

        Args:
            key: The cache key
            value: The value to cache
            ttl: Time-to-live in seconds, or None to use the default TTL
            namespace: Optional namespace

        Raises:
            BackendError: If the write did not reach Redis
            CacheSerializationError: If the value cannot be serialized
        """
        final_key = self.build_key(key, namespace)
        data = self._serialize(final_key, value)
        try:
            await self._backend.set(final_key, data, ttl if ttl is not None else self._default_ttl)
        except BackendError as e:
            logger.error(f"Error setting cache key {final_key}: {e}")
            raise

    async def get(self, key: str, namespace: Optional[str] = None) -> Optional[Any]:
        """
        Get a value from the cache.

        Args:
            key: The cache key
            namespace: Optional namespace

        Returns:
            The cached value, or None on a miss or backend failure
        """
        final_key = self.build_key(key, namespace)
        try:
            data = await self._backend.get(final_key)
        except BackendError as e:
            logger.error(f"Error getting cache key {final_key}: {e}")
            return None

        if data is None:
            return None
        return self._deserialize(final_key, data)

    async def delete(self, key: str, namespace: Optional[str] = None) -> bool:
        """
        Delete a value from the cache.

        Args:
            key: The cache key
            namespace: Optional namespace

        Returns:
            True if a key was removed, False if it was absent or the backend failed
        """
        final_key = self.build_key(key, namespace)
        try:
            return await self._backend.delete(final_key) == 1
        except BackendError as e:
            logger.error(f"Error deleting cache key {final_key}: {e}")
            return False

    async def clear(self, namespace: Optional[str] = None) -> bool:
        """
        Clear a namespace, or the whole database when no namespace is given.

        Namespace clearing enumerates ``namespace:*`` and then deletes the
        matches. The two steps are not atomic: keys written in between survive.
        Use delete() on a known key when invalidation must be strict.

        Args:
            namespace: Optional namespace to clear

        Returns:
            True if the clear completed, False if the backend failed
        """
        try:
            if namespace:
                keys = await self._backend.keys_matching(KeyBuilder.namespace_pattern(namespace))
                if keys:
                    await self._backend.delete(*keys)
                logger.debug(f"Cleared {len(keys)} keys from cache namespace {namespace}")
            else:
                await self._backend.flush()
                logger.debug("Cleared entire cache database")
            return True
        except BackendError as e:
            logger.error(f"Error clearing cache namespace {namespace or '*'}: {e}")
            return False

    async def has(self, key: str, namespace: Optional[str] = None) -> bool:
        """
        Check if a key exists in the cache.

        Args:
            key: The cache key
            namespace: Optional namespace

        Returns:
            True if the key exists, False if it does not or the backend failed
        """
        final_key = self.build_key(key, namespace)
        try:
            return await self._backend.exists(final_key)
        except BackendError as e:
            logger.error(f"Error checking cache key {final_key}: {e}")
            return False

    async def mset(
        self,
        entries: Dict[str, Any],
        ttl: Optional[float] = None,
        namespace: Optional[str] = None
    ) -> None:
        """
        Store multiple values through a single pipelined write.

        Args:
            entries: Dictionary mapping keys to values
            ttl: Time-to-live in seconds, or None to use the default TTL
            namespace: Optional namespace

        Raises:
            BackendError: If the batch failed; no per-key result is reported
            CacheSerializationError: If any value cannot be serialized
        """
        payload = {}
        for key, value in entries.items():
            final_key = self.build_key(key, namespace)
            payload[final_key] = self._serialize(final_key, value)

        try:
            await self._backend.set_many(payload, ttl if ttl is not None else self._default_ttl)
        except BackendError as e:
            logger.error(f"Error in bulk set operation: {e}")
            raise

    async def mget(self, keys: List[str], namespace: Optional[str] = None) -> List[Optional[Any]]:
        """
        Get multiple values in a single operation.

        Args:
            keys: A list of cache keys
            namespace: Optional namespace

        Returns:
            Values aligned with keys; None for misses, all None on backend failure
        """
        final_keys = [self.build_key(key, namespace) for key in keys]
        try:
            values = await self._backend.get_many(final_keys)
        except BackendError as e:
            logger.error(f"Error in bulk get operation: {e}")
            return [None] * len(keys)

        return [
            self._deserialize(final_key, data) if data is not None else None
            for final_key, data in zip(final_keys, values)
        ]

    async def get_stats(self, namespace: Optional[str] = None) -> CacheStats:
        """
        Get statistics about the cache.

        Args:
            namespace: Optional namespace to count keys in

        Returns:
            CacheStats, zeroed if the backend failed
        """
        try:
            if namespace:
                total_keys = len(await self._backend.keys_matching(KeyBuilder.namespace_pattern(namespace)))
            else:
                total_keys = await self._backend.dbsize()
            info = await self._backend.info()
        except BackendError as e:
            logger.error(f"Error getting cache statistics: {e}")
            return CacheStats()

        hits = int(info.get('keyspace_hits', 0))
        misses = int(info.get('keyspace_misses', 0))
        lookups = hits + misses

        return CacheStats(
            total_keys=total_keys,
            memory_usage=int(info.get('used_memory', 0)),
            hit_rate=hits / lookups if lookups > 0 else None
        )
