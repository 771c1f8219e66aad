"""
Redis Backend Adapter

This module provides the single owned Redis connection used by the cache layer
and the rate limiter. It exposes the small, fixed vocabulary of commands those
components need and translates every Redis failure into a BackendError, so
callers can apply their own fail-open or fail-closed policy.

The adapter keeps no state of its own beyond the client handle and whether
its last connection check succeeded; everything lives in Redis.
"""

import asyncio
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from redis.asyncio import Redis
from redis.commands.core import AsyncScript
from redis.exceptions import RedisError

from tasktrack.common.config import RedisConfig
from tasktrack.common.error_handling import BackendError
from tasktrack.common.logger import get_logger

# Setup logging
logger = get_logger(__name__)

# Value stored for marker keys such as block records
MARKER_VALUE = b"1"

# Increments a window counter and gives it an expiry if it has none.
# Runs atomically on the server.
INCREMENT_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if ttl == -1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


def to_milliseconds(seconds: float) -> int:
    """
    Convert a duration in seconds to a positive millisecond count.

    Args:
        seconds: Duration in seconds (fractions allowed)

    Returns:
        Duration in milliseconds, at least 1
    """
    return max(1, int(round(seconds * 1000)))


class RedisBackend:
    """
    Owned Redis connection with an explicit lifecycle.

    One instance is created per process, opened on service startup, injected
    into CacheService and RateLimiter, and closed on shutdown.

    Examples:
        backend = RedisBackend(RedisConfig(host="redis.local"))
        await backend.open()
        await backend.set("task:1", b"{}", ttl_seconds=300)
        await backend.close()
    """

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        client: Optional[Redis] = None
    ):
        """
        Initialize the backend.

        Args:
            config: Connection settings (defaults to RedisConfig())
            client: Optional pre-built client, used instead of connecting from config
        """
        self._config = config or RedisConfig()
        self._client: Optional[Redis] = client
        self._connected = False
        self._window_script: Optional[AsyncScript] = None

    @property
    def is_open(self) -> bool:
        """Whether the last connection check succeeded and the backend is not closed."""
        return self._client is not None and self._connected

    @property
    def client(self) -> Redis:
        """The underlying Redis client."""
        return self._require_client()

    async def open(self) -> None:
        """
        Create the client if needed and verify the connection.

        The client is kept when the check fails: it reconnects on its own, so
        later commands succeed once the server is reachable again.

        Raises:
            BackendError: If the server cannot be reached
        """
        if self._client is None:
            self._client = Redis(
                host=self._config.host,
                port=self._config.port,
                db=self._config.db,
                password=self._config.password,
                ssl=self._config.use_ssl,
                socket_timeout=self._config.socket_timeout,
                socket_connect_timeout=self._config.connect_timeout,
                max_connections=self._config.max_connections,
                decode_responses=False  # Values are handled as bytes
            )

        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            self._connected = False
            raise BackendError(
                "ping",
                message=f"Redis at {self._config.host}:{self._config.port} is unreachable",
                cause=e
            ) from e

        self._connected = True
        logger.info(f"Connected to Redis at {self._config.host}:{self._config.port}")

    async def close(self) -> None:
        """
        Close the client, waiting at most drain_timeout seconds.

        Errors while closing are logged rather than raised so shutdown can proceed.
        """
        if self._client is None:
            return

        client, self._client = self._client, None
        self._connected = False
        self._window_script = None
        try:
            await asyncio.wait_for(client.aclose(), timeout=self._config.drain_timeout)
            logger.info("Redis connection closed gracefully")
        except asyncio.TimeoutError:
            logger.warning(f"Redis connection did not close within {self._config.drain_timeout}s")
        except (RedisError, OSError) as e:
            logger.error(f"Error closing Redis connection: {e}")

    def _require_client(self) -> Redis:
        if self._client is None:
            raise BackendError("connect", message="Redis backend is not open")
        return self._client

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except RedisError as e:
            raise BackendError(operation, cause=e) from e

    async def get(self, key: str) -> Optional[bytes]:
        """Get the raw value stored under key, or None if absent."""
        client = self._require_client()
        with self._translate_errors("get"):
            return await client.get(key)

    async def set(self, key: str, data: bytes, ttl_seconds: float) -> None:
        """Store data under key with an expiry."""
        client = self._require_client()
        with self._translate_errors("set"):
            await client.set(key, data, px=to_milliseconds(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        """
        Delete keys.

        Returns:
            Number of keys actually removed
        """
        if not keys:
            return 0
        client = self._require_client()
        with self._translate_errors("delete"):
            return int(await client.delete(*keys))

    async def exists(self, key: str) -> bool:
        """Check whether key exists."""
        client = self._require_client()
        with self._translate_errors("exists"):
            return bool(await client.exists(key))

    async def keys_matching(self, pattern: str) -> List[str]:
        """
        Enumerate keys matching a glob pattern.

        The result is a point-in-time snapshot, not a live view.
        """
        client = self._require_client()
        with self._translate_errors("keys"):
            keys = await client.keys(pattern)
        return [k.decode("utf-8") if isinstance(k, bytes) else k for k in keys]

    async def flush(self) -> None:
        """Remove every key in the current database."""
        client = self._require_client()
        with self._translate_errors("flushdb"):
            await client.flushdb()

    async def get_many(self, keys: List[str]) -> List[Optional[bytes]]:
        """Get several raw values, aligned with keys."""
        if not keys:
            return []
        client = self._require_client()
        with self._translate_errors("mget"):
            return list(await client.mget(keys))

    async def set_many(self, entries: Dict[str, bytes], ttl_seconds: float) -> None:
        """
        Store several values with the same expiry in one transactional pipeline.

        A failure of any command fails the whole batch.
        """
        if not entries:
            return
        client = self._require_client()
        ttl_ms = to_milliseconds(ttl_seconds)
        with self._translate_errors("mset"):
            async with client.pipeline(transaction=True) as pipe:
                for key, data in entries.items():
                    pipe.set(key, data, px=ttl_ms)
                await pipe.execute()

    async def increment_and_get_ttl(self, key: str) -> Tuple[int, int]:
        """
        Increment a counter and read its remaining TTL in one round trip.

        The increment does not set an expiry.

        Returns:
            Tuple of (new count, remaining TTL in ms; negative when none is set)
        """
        client = self._require_client()
        with self._translate_errors("incr"):
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.pttl(key)
                count, ttl = await pipe.execute()
        return int(count), int(ttl)

    async def increment_window(self, key: str, ttl_seconds: float) -> Tuple[int, int]:
        """
        Increment a window counter, ensuring it carries an expiry.

        The increment and the expiry run in one server-side script, so no
        client can observe the counter without its expiry. An expiry that is
        already set is left untouched.

        Returns:
            Tuple of (new count, remaining TTL in ms)
        """
        client = self._require_client()
        if self._window_script is None:
            self._window_script = client.register_script(INCREMENT_WINDOW_SCRIPT)
        with self._translate_errors("incr"):
            count, ttl = await self._window_script(keys=[key], args=[to_milliseconds(ttl_seconds)])
        return int(count), int(ttl)

    async def expire(self, key: str, ttl_seconds: float) -> bool:
        """Set the expiry of an existing key."""
        client = self._require_client()
        with self._translate_errors("expire"):
            return bool(await client.pexpire(key, to_milliseconds(ttl_seconds)))

    async def set_marker(self, key: str, ttl_seconds: float) -> None:
        """Write a marker key with its own expiry."""
        client = self._require_client()
        with self._translate_errors("set"):
            await client.set(key, MARKER_VALUE, px=to_milliseconds(ttl_seconds))

    async def info(self, section: Optional[str] = None) -> Dict[str, Any]:
        """Return server information as a dictionary."""
        client = self._require_client()
        with self._translate_errors("info"):
            if section:
                return await client.info(section)
            return await client.info()

    async def dbsize(self) -> int:
        """Return the number of keys in the current database."""
        client = self._require_client()
        with self._translate_errors("dbsize"):
            return int(await client.dbsize())
