"""
Fixed-window rate limiting on top of the tiered cache.

Each (identifier, client) pair owns one counter record ``{count, reset_at}``
with both cache TTLs equal to the window. Counters race under concurrency
and a client can burst up to twice the limit across a window boundary; both
are accepted trade-offs of the fixed-window scheme.
"""

import math
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog
from fastapi import Depends, Request, Response

from .cache import CacheOptions, TieredCache
from .dependencies import get_rate_limiter
from .exceptions import RateLimitError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Limit configuration for one group of endpoints."""

    max_requests: int
    window_seconds: int
    identifier: Optional[str] = None
    message: str = "Too many requests, please try again later."
    key_func: Optional[Callable[[Request], str]] = None
    skip: Optional[Callable[[Request], bool]] = None


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    limit: int


AUTH_RATE_LIMIT = RateLimitPolicy(
    max_requests=5,
    window_seconds=15 * 60,
    identifier="auth",
    message="Too many authentication attempts. Please try again in 15 minutes.",
)

REGISTRATION_RATE_LIMIT = RateLimitPolicy(
    max_requests=3,
    window_seconds=60 * 60,
    identifier="registration",
    message="Too many registration attempts. Please try again later.",
)

PASSWORD_RESET_RATE_LIMIT = RateLimitPolicy(
    max_requests=3,
    window_seconds=60 * 60,
    identifier="password-reset",
    message="Too many password reset attempts. Please try again later.",
)

API_RATE_LIMIT = RateLimitPolicy(
    max_requests=100,
    window_seconds=15 * 60,
    identifier="api",
    message="API rate limit exceeded. Please try again later.",
)

SEARCH_RATE_LIMIT = RateLimitPolicy(
    max_requests=30,
    window_seconds=60,
    identifier="search",
    message="Too many search requests. Please slow down.",
)


def user_policy(user_id: Any, policy: RateLimitPolicy) -> RateLimitPolicy:
    """Key a policy on a user id instead of the client IP."""
    return replace(policy, key_func=lambda request: str(user_id))


def get_client_ip(request: Request, trust_proxy: bool = True) -> str:
    """First X-Forwarded-For hop, else the socket peer, else ``unknown``."""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def format_reset(reset_at: float) -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    moment = datetime.fromtimestamp(reset_at, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RateLimiter:
    """Counts requests per key in fixed windows stored in the tiered cache."""

    def __init__(
        self,
        cache: TieredCache,
        enabled: bool = True,
        trust_proxy: bool = True,
        clock: Callable[[], float] = time.time,
        metrics: Any = None,
    ) -> None:
        self.cache = cache
        self.enabled = enabled
        self.trust_proxy = trust_proxy
        self.metrics = metrics
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def key_for(self, request: Request, policy: RateLimitPolicy) -> str:
        identifier = policy.identifier or request.url.path or "api"
        if policy.key_func is not None:
            client = policy.key_func(request)
        else:
            client = get_client_ip(request, self.trust_proxy)
        return f"ratelimit:{identifier}:{client}"

    @staticmethod
    def _options(policy: RateLimitPolicy) -> CacheOptions:
        return CacheOptions(memory_ttl=policy.window_seconds, redis_ttl=policy.window_seconds)

    async def check(self, key: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Count one request against ``key``; fails open on any cache error."""
        now = self.now()
        window = policy.window_seconds
        options = self._options(policy)

        async def seed() -> Dict[str, Any]:
            return {"count": 0, "reset_at": now + window}

        try:
            record = await self.cache.get(key, seed, options)

            if now >= record["reset_at"]:
                record = {"count": 1, "reset_at": now + window}
            else:
                record = {"count": record["count"] + 1, "reset_at": record["reset_at"]}

            await self.cache.set(key, record, options)
        except Exception as e:
            logger.error("Rate limit check failed", key=key, error=str(e), exc_info=True)
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests,
                reset_at=now + window,
                limit=policy.max_requests,
            )

        count = record["count"]
        return RateLimitResult(
            allowed=count <= policy.max_requests,
            remaining=max(0, policy.max_requests - count),
            reset_at=record["reset_at"],
            limit=policy.max_requests,
        )

    async def reset(self, key: str) -> None:
        try:
            await self.cache.delete(key)
        except Exception as e:
            logger.error("Failed to reset rate limit", key=key, error=str(e))

    async def status(self, key: str, policy: RateLimitPolicy) -> Optional[Dict[str, Any]]:
        """Current counter for ``key`` without counting a request."""
        now = self.now()

        async def seed() -> Dict[str, Any]:
            return {"count": 0, "reset_at": now + policy.window_seconds}

        try:
            record = await self.cache.get(key, seed, self._options(policy))
        except Exception as e:
            logger.error("Failed to get rate limit status", key=key, error=str(e))
            return None

        if now >= record["reset_at"]:
            return {"count": 0, "remaining": policy.max_requests, "reset_at": now + policy.window_seconds}
        return {
            "count": record["count"],
            "remaining": max(0, policy.max_requests - record["count"]),
            "reset_at": record["reset_at"],
        }


class RateLimit:
    """
    Route dependency enforcing a ``RateLimitPolicy``.

    Usage::

        @router.post("/signin-attempt", dependencies=[Depends(RateLimit(AUTH_RATE_LIMIT))])
    """

    def __init__(self, policy: RateLimitPolicy) -> None:
        self.policy = policy

    async def __call__(
        self,
        request: Request,
        response: Response,
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        policy = self.policy

        if not limiter.enabled or (policy.skip is not None and policy.skip(request)):
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests,
                reset_at=limiter.now() + policy.window_seconds,
                limit=policy.max_requests,
            )

        key = limiter.key_for(request, policy)
        result = await limiter.check(key, policy)

        headers = {
            "X-RateLimit-Limit": str(policy.max_requests),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": format_reset(result.reset_at),
        }

        if not result.allowed:
            logger.warning(
                "Rate limit exceeded",
                path=request.url.path,
                method=request.method,
                ip=get_client_ip(request, limiter.trust_proxy),
                limit=policy.max_requests,
                window=policy.window_seconds,
            )
            if limiter.metrics is not None:
                limiter.metrics.record_rate_limit_rejection(policy.identifier or "default")

            retry_after = max(1, math.ceil(result.reset_at - limiter.now()))
            raise RateLimitError(message=policy.message, retry_after=retry_after, headers=headers)

        response.headers.update(headers)
        return result
