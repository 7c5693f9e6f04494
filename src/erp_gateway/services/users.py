"""Cached ERP user lookups."""

import structlog

from erp_gateway.services.cache import CacheEngine, ModelCodec, Namespace, cache_key
from erp_gateway.services.erp import ErpUser, UserDirectory

logger = structlog.get_logger()

_user_codec = ModelCodec(ErpUser)
_user_list_codec = ModelCodec(list[ErpUser])


class UserService:
    """Serves ERP user records from cache, falling back to the directory on a miss."""

    def __init__(
        self,
        directory: UserDirectory,
        cache: CacheEngine,
        user_ttl: int = 3600,
        list_ttl: int = 300,
    ):
        self.directory = directory
        self.cache = cache
        self.user_ttl = user_ttl
        self.list_ttl = list_ttl

    async def get_user(self, user_id: int) -> ErpUser:
        """Raises UserNotFound when the ERP has no such user; misses are not cached."""
        return await self.cache.get_or_compute(
            cache_key(Namespace.USER, user_id),
            lambda: self.directory.get_user(user_id),
            ttl=self.user_ttl,
            codec=_user_codec,
        )

    async def list_users(self) -> list[ErpUser]:
        return await self.cache.get_or_compute(
            cache_key(Namespace.USERS_ALL),
            lambda: self.directory.list_users(),
            ttl=self.list_ttl,
            codec=_user_list_codec,
        )

    async def list_active_users(self) -> list[ErpUser]:
        return await self.cache.get_or_compute(
            cache_key(Namespace.USERS_ACTIVE),
            lambda: self.directory.list_users(active_only=True),
            ttl=self.list_ttl,
            codec=_user_list_codec,
        )

    async def find_by_email(self, email: str) -> list[ErpUser]:
        return await self.directory.find_by_email(email)

    async def authenticate(self, login: str, password: str) -> ErpUser | None:
        """Verify credentials with the ERP and warm the user cache on success."""
        user = await self.directory.authenticate(login, password)
        if user is not None:
            await self.cache.cache_value(Namespace.USER, user.id, user, ttl=self.user_ttl, codec=_user_codec)
        return user

    async def invalidate_user(self, user_id: int) -> None:
        await self.cache.invalidate(Namespace.USER, user_id)

    async def invalidate_all(self) -> int:
        deleted = await self.cache.invalidate_all_user_caches()
        logger.info("User caches invalidated", deleted=deleted)
        return deleted
