"""Cache-aside engine over the key-value store."""

import json
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Protocol, TypeVar

import structlog
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from erp_gateway.errors import InternalError, SerializationError, StoreUnavailable
from erp_gateway.metrics import CACHE_LOOKUPS
from erp_gateway.store import KeyValueStore

logger = structlog.get_logger()

T = TypeVar("T")


class Namespace(str, Enum):
    """Key prefixes owned by the gateway."""

    USER = "user:"
    USERS_ALL = "users:all"
    USERS_ACTIVE = "users:active"
    SESSION = "session:"
    TOKEN_BLACKLIST = "token:blacklist:"
    RATE_LIMIT = "ratelimit:"


def cache_key(namespace: Namespace, identifier: Any = None) -> str:
    """Build ``prefix + identifier``; list namespaces take no identifier."""
    if identifier is None:
        return namespace.value
    return f"{namespace.value}{identifier}"


def _namespace_label(key: str) -> str:
    for namespace in Namespace:
        if key.startswith(namespace.value):
            return namespace.name.lower()
    return "other"


class Codec(Protocol[T]):
    """Encode/decode pair used to move values in and out of the store."""

    def encode(self, value: T) -> str: ...

    def decode(self, raw: str) -> T: ...


class JsonCodec:
    """Plain JSON; unknown types are stringified."""

    def encode(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def decode(self, raw: str) -> Any:
        try:
            return json.loads(raw)
        except ValueError as e:
            raise SerializationError(f"Cached value is not valid JSON: {e}") from e


class ModelCodec(Generic[T]):
    """Typed codec backed by a pydantic TypeAdapter (models, lists of models, ...)."""

    def __init__(self, type_: Any):
        self._adapter = TypeAdapter(type_)

    def encode(self, value: T) -> str:
        return self._adapter.dump_json(value).decode()

    def decode(self, raw: str) -> T:
        try:
            return self._adapter.validate_json(raw)
        except (PydanticValidationError, ValueError) as e:
            raise SerializationError(f"Cached value does not match expected shape: {e}") from e


class CacheEngine:
    """Namespaced caching with per-namespace TTLs.

    Store failures are fatal here: reads and writes raise ``InternalError``
    rather than silently bypassing the cache, so a store outage cannot turn
    into unbounded load on the ERP.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_table: dict[str, int] | None = None,
        default_ttl: int = 300,
        codec: Codec | None = None,
    ):
        """Initialize cache engine.

        Args:
            store: Key-value store wrapper.
            ttl_table: Default TTL in seconds keyed by namespace prefix.
            default_ttl: TTL for keys outside any configured namespace.
            codec: Codec used when a call does not pass its own.
        """
        self.store = store
        self.ttl_table = ttl_table or {}
        self.default_ttl = default_ttl
        self.codec = codec or JsonCodec()

    def ttl_for(self, key: str) -> int:
        """Resolve the default TTL for a key from its namespace prefix."""
        for prefix, ttl in self.ttl_table.items():
            if key.startswith(prefix):
                return ttl
        return self.default_ttl

    async def set(self, key: str, value: Any, ttl: int | None = None, codec: Codec | None = None) -> None:
        raw = (codec or self.codec).encode(value)
        try:
            await self.store.set_with_ttl(key, raw, ttl or self.ttl_for(key))
        except StoreUnavailable as e:
            raise InternalError(f"Failed to cache {key}") from e

    async def get(self, key: str, codec: Codec | None = None) -> Any | None:
        """Return the decoded value, or None on a miss.

        Raises:
            SerializationError: The stored value cannot be decoded.
            InternalError: The store is unavailable.
        """
        try:
            raw = await self.store.get(key)
        except StoreUnavailable as e:
            raise InternalError(f"Failed to read {key}") from e

        label = _namespace_label(key)
        if raw is None:
            CACHE_LOOKUPS.labels(namespace=label, result="miss").inc()
            logger.debug("Cache miss", key=key)
            return None

        CACHE_LOOKUPS.labels(namespace=label, result="hit").inc()
        logger.debug("Cache hit", key=key)
        return (codec or self.codec).decode(raw)

    async def delete(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except StoreUnavailable as e:
            raise InternalError(f"Failed to delete {key}") from e

    async def cache_value(
        self,
        namespace: Namespace,
        identifier: Any,
        value: Any,
        ttl: int | None = None,
        codec: Codec | None = None,
    ) -> None:
        await self.set(cache_key(namespace, identifier), value, ttl, codec)

    async def get_cached_value(
        self,
        namespace: Namespace,
        identifier: Any,
        codec: Codec | None = None,
    ) -> Any | None:
        return await self.get(cache_key(namespace, identifier), codec)

    async def invalidate(self, namespace: Namespace, identifier: Any = None) -> None:
        """Delete exactly one key."""
        await self.delete(cache_key(namespace, identifier))

    async def invalidate_all_matching(self, pattern: str) -> int:
        """Bulk delete by glob pattern, e.g. ``user:*``."""
        try:
            deleted = await self.store.delete_by_pattern(pattern)
        except StoreUnavailable as e:
            raise InternalError(f"Failed to invalidate {pattern}") from e
        logger.info("Cache invalidated", pattern=pattern, deleted=deleted)
        return deleted

    async def invalidate_all_user_caches(self) -> int:
        """Drop every single-user entry and every user list."""
        deleted = await self.invalidate_all_matching(f"{Namespace.USER.value}*")
        deleted += await self.invalidate_all_matching("users:*")
        return deleted

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl: int | None = None,
        codec: Codec | None = None,
    ) -> T:
        """Serve ``key`` from cache, or compute, store and return it.

        ``compute`` is not invoked on a hit. Concurrent misses on the same key
        may each call ``compute``; the last write wins. Exceptions raised by
        ``compute`` propagate unchanged and nothing is cached.
        """
        try:
            cached = await self.get(key, codec)
        except SerializationError as e:
            logger.warning("Discarding undecodable cache entry", key=key, error=e.message)
            await self.delete(key)
            cached = None

        if cached is not None:
            return cached

        value = await compute()
        await self.set(key, value, ttl, codec)
        return value

    async def clear_all(self) -> None:
        """Flush the whole store database."""
        try:
            await self.store.flush_all()
        except StoreUnavailable as e:
            raise InternalError("Failed to flush cache") from e
