"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Iterable, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitPolicyConfig(BaseModel):
    """Window/ceiling pair for a named rate limit policy."""

    max_requests: int
    window_seconds: int


def _default_policies() -> dict[str, RateLimitPolicyConfig]:
    return {
        "login": RateLimitPolicyConfig(max_requests=5, window_seconds=900),
        "standard": RateLimitPolicyConfig(max_requests=100, window_seconds=60),
        "strict": RateLimitPolicyConfig(max_requests=10, window_seconds=60),
    }


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="erp-gateway")
    app_env: Literal["development", "staging", "production"] = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    workers: int = Field(default=1)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    cors_allow_credentials: bool = Field(default=True)

    # Redis
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_password: str | None = Field(default=None)
    redis_socket_timeout: float = Field(default=5.0, description="Per-command deadline in seconds")
    redis_max_retries: int = Field(default=10, description="Connection attempts before giving up")
    redis_backoff_step_ms: int = Field(default=50)
    redis_backoff_cap_ms: int = Field(default=3000)
    redis_reconnect_cooldown_ms: int = Field(
        default=5000,
        description="After the retry budget is spent, fail fast for this long before reconnecting again",
    )

    # Cache TTLs (seconds)
    cache_ttl_user: int = Field(default=3600)
    cache_ttl_users_list: int = Field(default=300)
    session_ttl: int = Field(default=86400)
    token_blacklist_ttl: int = Field(
        default=604800,
        description="Upper bound for blacklist entries of tokens without an exp claim",
    )

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_policies: dict[str, RateLimitPolicyConfig] = Field(default_factory=_default_policies)
    rate_limit_default_policy: str = Field(default="standard")
    rate_limit_exclude_paths: list[str] = Field(
        default_factory=lambda: ["/health", "/metrics", "/docs", "/openapi.json", "/redoc"]
    )
    trust_forwarded_for: bool = Field(
        default=False,
        description="Derive the client address from X-Forwarded-For (only behind a trusted proxy)",
    )

    # Tokens
    jwt_secret: str = Field(default="")
    jwt_algorithm: str = Field(default="HS256")
    jwt_expire_seconds: int = Field(default=7 * 24 * 3600)

    # ERP
    erp_url: str = Field(default="")
    erp_db: str = Field(default="")
    erp_user: str = Field(default="")
    erp_password: str = Field(default="")
    erp_timeout: float = Field(default=10.0)

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def redis_url(self) -> str:
        """Connection URL without credentials, for logging."""
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def effective_cors_origins(self) -> list[str]:
        """Get CORS origins based on environment."""
        if self.is_production:
            return [o for o in self.cors_origins if o != "*"]
        return self.cors_origins

    def ttl_table(self) -> dict[str, int]:
        """Default TTL per cache namespace prefix."""
        return {
            "user:": self.cache_ttl_user,
            "users:all": self.cache_ttl_users_list,
            "users:active": self.cache_ttl_users_list,
            "session:": self.session_ttl,
            "token:blacklist:": self.token_blacklist_ttl,
        }

    def validate_startup_settings(self, required_policies: Iterable[str] = ()) -> list[str]:
        """Collect configuration problems that must stop the service from starting.

        Args:
            required_policies: Policy names that route guards look up at request time.
        """
        errors = []

        required = {
            "ERP_URL": self.erp_url,
            "ERP_DB": self.erp_db,
            "ERP_USER": self.erp_user,
            "ERP_PASSWORD": self.erp_password,
            "JWT_SECRET": self.jwt_secret,
        }
        for name, value in required.items():
            if not value:
                errors.append(f"{name} is required")

        if self.is_production and self.jwt_secret and len(self.jwt_secret) < 32:
            errors.append("JWT_SECRET must be at least 32 characters in production")

        if self.rate_limit_enabled:
            if self.rate_limit_default_policy not in self.rate_limit_policies:
                errors.append(
                    f"RATE_LIMIT_DEFAULT_POLICY '{self.rate_limit_default_policy}' is not a defined policy"
                )
            for name in required_policies:
                if name not in self.rate_limit_policies:
                    errors.append(f"RATE_LIMIT_POLICIES must define the '{name}' policy")

        for name, policy in self.rate_limit_policies.items():
            if policy.max_requests <= 0 or policy.window_seconds <= 0:
                errors.append(f"Rate limit policy '{name}' needs a positive ceiling and window")

        for name, ttl in self.ttl_table().items():
            if ttl <= 0:
                errors.append(f"TTL for '{name}' must be positive")

        if self.redis_max_retries < 1:
            errors.append("REDIS_MAX_RETRIES must be at least 1")

        if self.redis_reconnect_cooldown_ms < 0:
            errors.append("REDIS_RECONNECT_COOLDOWN_MS must not be negative")

        return errors


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache():
    """Clear the settings cache (for testing)."""
    get_settings.cache_clear()
