"""
Rate Limit Gate

This module connects the rate limiter to the HTTP layer.

Policies are declared in an explicit table mapping an operation name to a
``RateLimitPolicy``; operations absent from the table are not limited. For a
limited operation the gate hashes the caller's address, user agent and route
path into the limiter key, so no raw identifying data reaches Redis, then
checks the block marker and consumes one request from the current window.

Usage:
    @router.post("/tasks", dependencies=[Depends(rate_limit("tasks.create"))])
    async def create_task(...):
        ...
"""

import hashlib
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import HTTPException, Request, Response, status

from tasktrack.common.error_handling import RateLimitError
from tasktrack.common.logger import get_logger
from tasktrack.common.rate_limiter import RateLimiter

# Setup module logger
logger = get_logger(__name__)

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_MS = 60000  # 1 minute
DEFAULT_BLOCK_DURATION = 60  # seconds

@dataclass(frozen=True)
class RateLimitPolicy:
    """
    Rate limit attached to one operation.

    A zero limit or window falls back to the defaults.

    Attributes:
        limit: Requests allowed per window
        window_ms: Window length in milliseconds
    """
    limit: int = DEFAULT_LIMIT
    window_ms: int = DEFAULT_WINDOW_MS

    def __post_init__(self):
        if not self.limit:
            object.__setattr__(self, "limit", DEFAULT_LIMIT)
        if not self.window_ms:
            object.__setattr__(self, "window_ms", DEFAULT_WINDOW_MS)
        if self.limit < 1 or self.window_ms < 1:
            raise ValueError(f"Invalid rate limit policy: limit={self.limit}, window_ms={self.window_ms}")

    @property
    def window_seconds(self) -> float:
        """Window length in seconds."""
        return self.window_ms / 1000

class RateLimitPolicies:
    """
    Table of rate limit policies keyed by operation name.

    Examples:
        policies = RateLimitPolicies({"tasks.create": RateLimitPolicy(limit=10)})
        policies.resolve("tasks.create")   # RateLimitPolicy(limit=10, window_ms=60000)
        policies.resolve("health")         # None, no limit
    """

    def __init__(self, policies: Optional[Dict[str, RateLimitPolicy]] = None):
        self._policies: Dict[str, RateLimitPolicy] = dict(policies or {})

    def register(self, operation: str, policy: RateLimitPolicy) -> None:
        """
        Register or replace the policy of an operation.

        Args:
            operation: Operation name
            policy: Policy to apply
        """
        if operation in self._policies:
            logger.warning(f"Rate limit policy for '{operation}' already registered, overwriting")
        self._policies[operation] = policy

    def resolve(self, operation: str) -> Optional[RateLimitPolicy]:
        """
        Look up the policy of an operation.

        Args:
            operation: Operation name

        Returns:
            The policy, or None when the operation is not limited
        """
        return self._policies.get(operation)

    def __contains__(self, operation: str) -> bool:
        return operation in self._policies

    def __len__(self) -> int:
        return len(self._policies)

def default_policies() -> RateLimitPolicies:
    """
    Build the policy table for the task API.

    Creation is the most restrictive, single lookups the most permissive.
    """
    return RateLimitPolicies({
        "tasks.create": RateLimitPolicy(limit=10, window_ms=60000),
        "tasks.list": RateLimitPolicy(limit=100, window_ms=60000),
        "tasks.get": RateLimitPolicy(limit=200, window_ms=60000),
    })

@dataclass(frozen=True)
class GateDecision:
    """
    Informational metadata for an allowed request.

    Attributes:
        limit: Requests allowed per window
        remaining: Requests left in the current window
        reset_at: When the current window resets
    """
    limit: int
    remaining: int
    reset_at: datetime

    def headers(self) -> Dict[str, str]:
        """Response headers describing the rate limit state."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }

class RequestGate:
    """
    Applies rate limit policies to incoming requests.

    The gate checks the block marker first; a blocked caller is rejected
    without touching the window counter.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        policies: Optional[RateLimitPolicies] = None,
        block_duration: Optional[float] = DEFAULT_BLOCK_DURATION,
        clock: Callable[[], float] = time.time,
        trust_forwarded_for: bool = False
    ):
        """
        Initialize the gate.

        Args:
            limiter: Rate limiter to consult
            policies: Policy table (defaults to default_policies())
            block_duration: Seconds to block a caller that exceeds its limit
            clock: Time source returning UNIX time in seconds
            trust_forwarded_for: Identify callers by the first X-Forwarded-For
                address instead of the socket peer
        """
        self.limiter = limiter
        self.policies = policies if policies is not None else default_policies()
        self.block_duration = block_duration
        self._clock = clock
        self.trust_forwarded_for = trust_forwarded_for

    @staticmethod
    def build_key(client_ip: str, user_agent: str, path: str) -> str:
        """
        Derive the limiter key for a caller.

        Args:
            client_ip: Network address of the caller
            user_agent: User-Agent header value (may be empty)
            path: Route path of the operation

        Returns:
            SHA-256 hex digest of the combined identifiers
        """
        return hashlib.sha256(f"{client_ip}:{user_agent}:{path}".encode()).hexdigest()

    async def check(
        self,
        operation: str,
        client_ip: str,
        user_agent: str,
        path: str
    ) -> Optional[GateDecision]:
        """
        Decide whether a request may proceed.

        Args:
            operation: Operation name used to resolve the policy
            client_ip: Network address of the caller
            user_agent: User-Agent header value
            path: Route path of the operation

        Returns:
            GateDecision for an allowed request, or None when the operation has no policy

        Raises:
            RateLimitError: If the caller is blocked or over its limit
        """
        policy = self.policies.resolve(operation)
        if policy is None:
            return None

        key = self.build_key(client_ip, user_agent, path)

        if await self.limiter.is_blocked(key):
            logger.warning(f"Rejected blocked caller {key[:16]} on {operation}")
            raise RateLimitError()

        result = await self.limiter.consume(
            key,
            points=policy.limit,
            duration=policy.window_seconds,
            block_duration=self.block_duration
        )

        decision = GateDecision(
            limit=policy.limit,
            remaining=result.remaining_points,
            reset_at=datetime.fromtimestamp(
                self._clock() + result.ms_before_next / 1000, tz=timezone.utc
            )
        )

        if not result.success:
            retry_after = math.ceil(result.ms_before_next / 1000)
            logger.warning(
                f"Rate limit exceeded for caller {key[:16]} on {operation}: "
                f"limit={policy.limit}, retry_after={retry_after}s"
            )
            raise RateLimitError(retry_after=retry_after, decision=decision)

        return decision

def _client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    """
    Extract the caller address from a request.

    X-Forwarded-For is client-controlled, so it is read only when the
    deployment declares a trusted proxy in front of the service.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"

def _route_path(request: Request) -> str:
    """Route template of the request, falling back to the URL path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path

def too_many_requests(error: RateLimitError) -> HTTPException:
    """
    Translate a RateLimitError into an HTTP 429 response.

    Args:
        error: The rejection raised by the gate

    Returns:
        HTTPException carrying the rejection body and headers
    """
    detail = {
        "statusCode": status.HTTP_429_TOO_MANY_REQUESTS,
        "message": error.message,
    }
    headers: Dict[str, str] = {}
    if error.decision is not None:
        headers.update(error.decision.headers())
    if error.retry_after is not None:
        detail["retryAfter"] = error.retry_after
        headers["Retry-After"] = str(error.retry_after)

    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=detail,
        headers=headers or None
    )

def rate_limit(operation: str) -> Callable:
    """
    Create a FastAPI dependency enforcing the policy of an operation.

    The gate is read from ``request.app.state.gate``. When no gate is
    configured (rate limiting disabled) the dependency allows everything.

    Args:
        operation: Operation name used to resolve the policy

    Returns:
        FastAPI dependency function
    """
    async def dependency(request: Request, response: Response) -> None:
        gate: Optional[RequestGate] = getattr(request.app.state, "gate", None)
        if gate is None:
            return

        try:
            decision = await gate.check(
                operation,
                client_ip=_client_ip(request, gate.trust_forwarded_for),
                user_agent=request.headers.get("user-agent", ""),
                path=_route_path(request)
            )
        except RateLimitError as e:
            raise too_many_requests(e) from e

        if decision is not None:
            for name, value in decision.headers().items():
                response.headers[name] = value

    return dependency
