"""JWT issue/verify for gateway access tokens."""

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from erp_gateway.config import Settings
from erp_gateway.errors import AuthenticationError
from erp_gateway.services.erp import ErpUser


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    email: str | None
    session_id: str
    expires_at: datetime | None


@dataclass(frozen=True)
class IssuedToken:
    token: str
    session_id: str
    expires_at: datetime
    expires_in: int


class TokenService:
    """Signs and verifies access tokens; the blacklist TTL comes from ``exp``."""

    def __init__(self, secret: str, algorithm: str = "HS256", expire_seconds: int = 7 * 24 * 3600):
        self._secret = secret
        self.algorithm = algorithm
        self.expire_seconds = expire_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(settings.jwt_secret, settings.jwt_algorithm, settings.jwt_expire_seconds)

    def issue(self, user: ErpUser) -> IssuedToken:
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=self.expire_seconds)
        session_id = uuid.uuid4().hex
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "sid": session_id,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._secret, algorithm=self.algorithm)
        return IssuedToken(token, session_id, expires_at, self.expire_seconds)

    def verify(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as e:
            raise AuthenticationError("Token expired") from e
        except JWTError as e:
            raise AuthenticationError("Invalid token") from e

        try:
            user_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError) as e:
            raise AuthenticationError("Invalid token") from e

        exp = payload.get("exp")
        return TokenClaims(
            user_id=user_id,
            email=payload.get("email"),
            session_id=payload.get("sid", ""),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
        )

    @staticmethod
    def remaining_lifetime(claims: TokenClaims, fallback: int, now: datetime | None = None) -> int:
        """Seconds until ``verify`` stops accepting the token; ``fallback`` without an expiry claim.

        jose compares ``exp`` against the current whole second, so a token is
        still accepted during the second that starts at ``exp``.
        """
        if claims.expires_at is None:
            return fallback
        now = now or datetime.now(timezone.utc)
        rejected_from = claims.expires_at.replace(microsecond=0) + timedelta(seconds=1)
        return max(0, math.ceil((rejected_from - now).total_seconds()))
