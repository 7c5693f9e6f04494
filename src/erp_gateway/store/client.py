"""Typed command wrapper over the shared Redis connection."""

from typing import Awaitable, Callable, TypeVar

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from erp_gateway.errors import StoreUnavailable
from erp_gateway.metrics import STORE_ERRORS
from erp_gateway.store.connection import StoreConnection

logger = structlog.get_logger()

T = TypeVar("T")

# Keys fetched per SCAN round trip
SCAN_BATCH = 500


class KeyValueStore:
    """String-in, string-out access to the key-value store.

    Values are opaque text; encoding is the caller's concern. Any transport
    failure surfaces as :class:`StoreUnavailable` and each caller decides
    whether that is fatal.
    """

    def __init__(self, connection: StoreConnection):
        self.connection = connection

    async def _call(self, operation: str, command: Callable[[Redis], Awaitable[T]]) -> T:
        client = await self.connection.connect()
        try:
            return await command(client)
        except RedisError as e:
            STORE_ERRORS.labels(operation=operation).inc()
            self.connection.mark_unavailable(e)
            raise StoreUnavailable(f"Redis {operation} failed: {e}") from e

    async def get(self, key: str) -> str | None:
        return await self._call("get", lambda r: r.get(key))

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value that expires after ``ttl_seconds``."""
        if ttl_seconds <= 0:
            raise ValueError(f"TTL must be positive, got {ttl_seconds}")
        await self._call("set", lambda r: r.set(key, value, ex=ttl_seconds))

    async def set(self, key: str, value: str) -> None:
        """Store a value with no expiry."""
        await self._call("set", lambda r: r.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._call("delete", lambda r: r.delete(*keys))

    async def keys(self, pattern: str) -> list[str]:
        """Enumerate keys matching a glob pattern.

        Uses SCAN so a large keyspace does not block the server.
        """

        async def scan(client: Redis) -> list[str]:
            return [key async for key in client.scan_iter(match=pattern, count=SCAN_BATCH)]

        return await self._call("scan", scan)

    async def delete_by_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern``; returns how many were removed."""
        keys = await self.keys(pattern)
        deleted = 0
        for start in range(0, len(keys), SCAN_BATCH):
            deleted += await self.delete(*keys[start:start + SCAN_BATCH])
        if deleted:
            logger.debug("Deleted keys by pattern", pattern=pattern, count=deleted)
        return deleted

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", lambda r: r.exists(key)))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._call("expire", lambda r: r.expire(key, ttl_seconds)))

    async def ttl(self, key: str) -> int:
        """Seconds until expiry, -1 if the key has no TTL, -2 if it does not exist."""
        return int(await self._call("ttl", lambda r: r.ttl(key)))

    async def increment(self, key: str, amount: int = 1) -> int:
        """Atomically add ``amount`` to an integer counter, creating it at 0."""
        return int(await self._call("incrby", lambda r: r.incrby(key, amount)))

    async def flush_all(self) -> None:
        """Remove every key in the configured database."""
        await self._call("flushdb", lambda r: r.flushdb())
        logger.warning("Redis database flushed", db=self.connection.db)

    async def ping(self) -> bool:
        """Round-trip liveness probe; never raises."""
        try:
            return bool(await self._call("ping", lambda r: r.ping()))
        except StoreUnavailable as e:
            logger.warning("Redis ping failed", error=str(e))
            return False
