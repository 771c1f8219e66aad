"""
Rate Limiter Module

This module provides distributed fixed-window rate limiting backed by Redis.

Each key gets one counter per window, stored as ``<prefix><key>:<window>``
where the window index is ``floor(now_ms / duration_ms)``. Counters expire with
their window. When a key overshoots its limit and a block duration is given, a
separate ``<prefix><key>:blocked`` marker rejects it until the marker expires.

Window boundaries are hard wall-clock cutoffs, so a burst straddling a
boundary can admit up to twice the limit in a short span.

Every Redis failure fails open: the request is allowed.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from tasktrack.common.error_handling import BackendError
from tasktrack.common.logger import get_logger
from tasktrack.common.redis import RedisBackend, to_milliseconds

# Setup logging
logger = get_logger(__name__)

DEFAULT_PREFIX = "ratelimit:"

@dataclass(frozen=True)
class RateLimitResult:
    """
    Result of a consume operation.

    Attributes:
        success: Whether the request fits within the limit
        remaining_points: Requests left in the current window (0 when exhausted)
        ms_before_next: Milliseconds until the current window resets
    """
    success: bool
    remaining_points: int
    ms_before_next: int

# Returned whenever Redis cannot be consulted
FAIL_OPEN_RESULT = RateLimitResult(success=True, remaining_points=1, ms_before_next=0)

class RateLimiter:
    """
    Fixed-window request counter with overflow blocking.

    Counter correctness relies on Redis' atomic INCR; no in-process locking is
    used, so any number of workers may share the same keys.

    Examples:
        limiter = RateLimiter(backend)

        if not await limiter.is_blocked(key):
            result = await limiter.consume(key, points=10, duration=60, block_duration=60)
            if result.success:
                ...
    """

    def __init__(
        self,
        backend: RedisBackend,
        prefix: str = DEFAULT_PREFIX,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the rate limiter.

        Args:
            backend: Open Redis backend shared with the rest of the service
            prefix: Key prefix for Redis storage
            clock: Time source returning UNIX time in seconds
        """
        self._backend = backend
        self.prefix = prefix
        self._clock = clock

    def window_key(self, key: str, duration: float, now: Optional[float] = None) -> str:
        """
        Build the Redis key of the window containing ``now``.

        Args:
            key: Rate limit key
            duration: Window length in seconds
            now: UNIX time in seconds (defaults to the clock)

        Returns:
            The prefixed window key
        """
        now_ms = int((self._clock() if now is None else now) * 1000)
        window_index = math.floor(now_ms / (duration * 1000))
        return f"{self.prefix}{key}:{window_index}"

    def block_key(self, key: str) -> str:
        """Build the Redis key of the block marker for ``key``."""
        return f"{self.prefix}{key}:blocked"

    async def is_blocked(self, key: str) -> bool:
        """
        Check whether a key is currently blocked.

        Args:
            key: Rate limit key

        Returns:
            True if a live block marker exists; False otherwise or if Redis fails
        """
        try:
            return await self._backend.exists(self.block_key(key))
        except BackendError as e:
            logger.error(f"Error checking blocked status for key {key}: {e}")
            return False

    async def consume(
        self,
        key: str,
        points: int,
        duration: float,
        block_duration: Optional[float] = None
    ) -> RateLimitResult:
        """
        Consume one request from the key's budget in the current window.

        Args:
            key: Rate limit key
            points: Requests allowed per window
            duration: Window length in seconds
            block_duration: Seconds to block the key once it exceeds the limit

        Returns:
            RateLimitResult describing the decision

        Raises:
            ValueError: If the key is empty or points/duration are invalid
        """
        if not key:
            raise ValueError("key must be a non-empty string")
        if points < 1:
            raise ValueError("points must be >= 1")
        if duration <= 0:
            raise ValueError("duration must be > 0")

        result_key = self.window_key(key, duration)

        try:
            consumed, ttl = await self._backend.increment_window(result_key, duration)

            is_first_request = consumed == 1
            remaining_points = max(points - consumed, 0)
            if is_first_request or ttl < 0:
                ms_before_next = to_milliseconds(duration)
            else:
                ms_before_next = ttl

            if consumed > points and block_duration:
                await self._backend.set_marker(self.block_key(key), block_duration)
                logger.info(f"Blocked rate limit key {key} for {block_duration}s")

            return RateLimitResult(
                success=consumed <= points,
                remaining_points=remaining_points,
                ms_before_next=ms_before_next
            )
        except BackendError as e:
            logger.error(f"Rate limiting error for key {key}: {e}")
            return FAIL_OPEN_RESULT
