"""Tests for settings loading and startup validation."""

from erp_gateway.config import Settings, clear_settings_cache, get_settings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.redis_host == "localhost"
    assert settings.redis_port == 6379
    assert settings.rate_limit_policies["login"].max_requests == 5
    assert settings.rate_limit_policies["login"].window_seconds == 900
    assert settings.rate_limit_policies["standard"].max_requests == 100
    assert settings.rate_limit_policies["strict"].max_requests == 10
    assert settings.trust_forwarded_for is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("REDIS_HOST", "cache.internal")
    monkeypatch.setenv("REDIS_PORT", "6380")
    monkeypatch.setenv("CACHE_TTL_USER", "120")
    clear_settings_cache()

    try:
        settings = get_settings()
        assert settings.redis_host == "cache.internal"
        assert settings.redis_port == 6380
        assert settings.ttl_table()["user:"] == 120
    finally:
        clear_settings_cache()


def test_redis_url_has_no_credentials():
    settings = Settings(_env_file=None, redis_password="hunter2", redis_db=3)

    assert settings.redis_url == "redis://localhost:6379/3"


def test_valid_settings(settings):
    assert settings.validate_startup_settings() == []


def test_missing_required_settings():
    errors = Settings(_env_file=None).validate_startup_settings()

    for name in ("ERP_URL", "ERP_DB", "ERP_USER", "ERP_PASSWORD", "JWT_SECRET"):
        assert f"{name} is required" in errors


def test_short_secret_rejected_in_production(settings):
    production = settings.model_copy(update={"app_env": "production", "jwt_secret": "short"})

    assert "JWT_SECRET must be at least 32 characters in production" in production.validate_startup_settings()


def test_unknown_default_policy(settings):
    broken = settings.model_copy(update={"rate_limit_default_policy": "missing"})

    assert any("missing" in e for e in broken.validate_startup_settings())


def test_non_positive_ttl(settings):
    broken = settings.model_copy(update={"session_ttl": 0})

    assert "TTL for 'session:' must be positive" in broken.validate_startup_settings()


def test_production_drops_wildcard_origin(settings):
    production = settings.model_copy(update={"app_env": "production", "cors_origins": ["*", "https://erp.example.com"]})

    assert production.effective_cors_origins == ["https://erp.example.com"]


def test_policies_needed_by_route_guards(settings):
    standard_only = settings.model_copy(
        update={"rate_limit_policies": {"standard": settings.rate_limit_policies["standard"]}}
    )

    errors = standard_only.validate_startup_settings(required_policies=("login", "standard"))

    assert errors == ["RATE_LIMIT_POLICIES must define the 'login' policy"]


def test_guard_policies_ignored_when_rate_limiting_disabled(settings):
    disabled = settings.model_copy(update={"rate_limit_enabled": False, "rate_limit_policies": {}})

    assert disabled.validate_startup_settings(required_policies=("login",)) == []


def test_retry_budget_and_cooldown_bounds(settings):
    broken = settings.model_copy(update={"redis_max_retries": 0, "redis_reconnect_cooldown_ms": -1})

    errors = broken.validate_startup_settings()

    assert "REDIS_MAX_RETRIES must be at least 1" in errors
    assert "REDIS_RECONNECT_COOLDOWN_MS must not be negative" in errors
