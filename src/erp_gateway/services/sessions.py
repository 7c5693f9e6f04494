"""Session records and the token blacklist."""

from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from erp_gateway.errors import InternalError, SerializationError, StoreUnavailable
from erp_gateway.services.cache import CacheEngine, ModelCodec, Namespace, cache_key

logger = structlog.get_logger()

BLACKLIST_SENTINEL = "1"


class SessionRecord(BaseModel):
    """Session payload; extra fields supplied at creation are preserved."""

    model_config = ConfigDict(extra="allow")

    user_id: int | str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


_session_codec = ModelCodec(SessionRecord)


class SessionStore:
    """Sessions under ``session:<id>`` and revoked tokens under ``token:blacklist:<token>``."""

    def __init__(self, cache: CacheEngine, session_ttl: int = 86400):
        self.cache = cache
        self.store = cache.store
        self.session_ttl = session_ttl

    async def create_session(
        self,
        session_id: str,
        user_id: int | str,
        extra: dict[str, Any] | None = None,
    ) -> SessionRecord:
        record = SessionRecord(**{**(extra or {}), "user_id": user_id})
        await self.cache.cache_value(
            Namespace.SESSION, session_id, record, ttl=self.session_ttl, codec=_session_codec
        )
        logger.info("Session created", session_id=session_id, user_id=user_id)
        return record

    async def get_session(self, session_id: str) -> SessionRecord | None:
        return await self.cache.get_cached_value(Namespace.SESSION, session_id, codec=_session_codec)

    async def delete_session(self, session_id: str) -> None:
        await self.cache.invalidate(Namespace.SESSION, session_id)
        logger.info("Session deleted", session_id=session_id)

    async def delete_all_sessions_for_user(self, user_id: int | str) -> int:
        """Delete every session owned by ``user_id``.

        Scans all session keys, so cost grows with the number of live sessions.
        """
        prefix = Namespace.SESSION.value
        try:
            keys = await self.store.keys(f"{prefix}*")
        except StoreUnavailable as e:
            raise InternalError("Failed to enumerate sessions") from e

        deleted = 0
        for key in keys:
            try:
                record = await self.cache.get(key, codec=_session_codec)
            except SerializationError as e:
                logger.warning("Skipping undecodable session", key=key, error=e.message)
                continue
            if record is not None and str(record.user_id) == str(user_id):
                await self.cache.delete(key)
                deleted += 1

        logger.info("User sessions deleted", user_id=user_id, count=deleted)
        return deleted

    async def blacklist_token(self, token: str, expires_in: int) -> None:
        """Revoke ``token`` for the rest of its natural lifetime.

        ``expires_in`` must come from the token's own expiry claim so the entry
        never disappears while the token is still valid.
        """
        if expires_in <= 0:
            logger.debug("Token already expired, not blacklisting")
            return
        key = cache_key(Namespace.TOKEN_BLACKLIST, token)
        try:
            await self.store.set_with_ttl(key, BLACKLIST_SENTINEL, expires_in)
        except StoreUnavailable as e:
            raise InternalError("Failed to revoke token") from e
        logger.info("Token blacklisted", expires_in=expires_in)

    async def is_blacklisted(self, token: str) -> bool:
        """Check revocation; a store outage counts as not blacklisted."""
        try:
            return await self.store.exists(cache_key(Namespace.TOKEN_BLACKLIST, token))
        except StoreUnavailable as e:
            logger.warning("Blacklist check failed, treating token as not revoked", error=e.message)
            return False
