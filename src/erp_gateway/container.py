"""Process-scoped service handles, built once at startup and injected."""

from dataclasses import dataclass

from redis.asyncio import Redis

from erp_gateway.config import Settings
from erp_gateway.services.cache import CacheEngine
from erp_gateway.services.erp import OdooUserDirectory, UserDirectory
from erp_gateway.services.rate_limiter import FixedWindowRateLimiter, RateLimitPolicy
from erp_gateway.services.sessions import SessionStore
from erp_gateway.services.tokens import TokenService
from erp_gateway.services.users import UserService
from erp_gateway.store import KeyValueStore, StoreConnection


@dataclass
class Container:
    settings: Settings
    connection: StoreConnection
    store: KeyValueStore
    cache: CacheEngine
    sessions: SessionStore
    rate_limiter: FixedWindowRateLimiter
    users: UserService
    tokens: TokenService

    @classmethod
    def build(
        cls,
        settings: Settings,
        redis_client: Redis | None = None,
        directory: UserDirectory | None = None,
    ) -> "Container":
        connection = StoreConnection.from_settings(settings, client=redis_client)
        store = KeyValueStore(connection)
        cache = CacheEngine(store, ttl_table=settings.ttl_table(), default_ttl=settings.cache_ttl_users_list)
        return cls(
            settings=settings,
            connection=connection,
            store=store,
            cache=cache,
            sessions=SessionStore(cache, session_ttl=settings.session_ttl),
            rate_limiter=FixedWindowRateLimiter(store),
            users=UserService(
                directory or OdooUserDirectory.from_settings(settings),
                cache,
                user_ttl=settings.cache_ttl_user,
                list_ttl=settings.cache_ttl_users_list,
            ),
            tokens=TokenService.from_settings(settings),
        )

    def policy(self, name: str) -> RateLimitPolicy:
        return RateLimitPolicy.from_config(name, self.settings.rate_limit_policies[name])

    async def startup(self) -> None:
        await self.connection.connect()

    async def shutdown(self) -> None:
        await self.connection.close()
