"""Fixed-window rate limiting on atomic store counters."""

from dataclasses import dataclass

import structlog

from erp_gateway.config import RateLimitPolicyConfig
from erp_gateway.errors import StoreUnavailable
from erp_gateway.metrics import RATE_LIMIT_DECISIONS
from erp_gateway.services.cache import Namespace, cache_key
from erp_gateway.store import KeyValueStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitPolicy:
    """A named window/ceiling pair."""

    name: str
    max_requests: int
    window_seconds: int

    @classmethod
    def from_config(cls, name: str, config: RateLimitPolicyConfig) -> "RateLimitPolicy":
        return cls(name=name, max_requests=config.max_requests, window_seconds=config.window_seconds)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Max requests per window.
        remaining: Requests left in the current window (0 when denied).
        reset_in: Seconds until the window resets, 0 if unknown.
        degraded: The store was unavailable and the request was let through.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_in: int
    degraded: bool = False


class FixedWindowRateLimiter:
    """Counts requests per identifier in fixed windows.

    The first increment of a window arms the key's TTL; later increments leave
    it alone, so the window counts down to a fixed boundary. Store failures
    never block a request.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def key_for(identifier: str) -> str:
        return cache_key(Namespace.RATE_LIMIT, identifier)

    async def check(
        self,
        identifier: str,
        max_requests: int,
        window_seconds: int,
        policy_name: str = "custom",
    ) -> RateLimitResult:
        """Count one request for ``identifier`` and decide whether to allow it."""
        key = self.key_for(identifier)

        try:
            count = await self.store.increment(key)
            if count == 1:
                await self.store.expire(key, window_seconds)
            ttl = await self.store.ttl(key)
            if ttl == -1:
                # Counter survived without an expiry (process died between INCR and EXPIRE)
                await self.store.expire(key, window_seconds)
                ttl = window_seconds
        except StoreUnavailable as e:
            logger.warning(
                "Rate limit check failed, allowing request",
                identifier=identifier,
                policy=policy_name,
                error=e.message,
            )
            RATE_LIMIT_DECISIONS.labels(policy=policy_name, decision="degraded").inc()
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                remaining=max_requests,
                reset_in=0,
                degraded=True,
            )

        allowed = count <= max_requests
        RATE_LIMIT_DECISIONS.labels(policy=policy_name, decision="allow" if allowed else "deny").inc()
        if not allowed:
            logger.info("Rate limit exceeded", identifier=identifier, policy=policy_name, count=count)

        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_in=ttl if ttl > 0 else 0,
        )

    async def check_policy(self, policy: RateLimitPolicy, identifier: str) -> RateLimitResult:
        return await self.check(identifier, policy.max_requests, policy.window_seconds, policy.name)

    async def get_remaining(self, identifier: str, max_requests: int) -> RateLimitResult:
        """Report the current window without counting a request."""
        key = self.key_for(identifier)
        try:
            raw = await self.store.get(key)
            ttl = await self.store.ttl(key)
        except StoreUnavailable as e:
            logger.warning("Rate limit status unavailable", identifier=identifier, error=e.message)
            return RateLimitResult(True, max_requests, max_requests, 0, degraded=True)

        count = int(raw) if raw else 0
        return RateLimitResult(
            allowed=count < max_requests,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_in=ttl if ttl > 0 else 0,
        )

    async def reset(self, identifier: str) -> None:
        """Clear the counter for an identifier."""
        await self.store.delete(self.key_for(identifier))
