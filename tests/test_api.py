"""Tests for the FastAPI endpoints."""

import pytest
from fastapi.testclient import TestClient

from erp_gateway.api.app import create_app
from erp_gateway.errors import ConfigurationError, StoreUnavailable


class TestHealthEndpoints:
    """Tests for health and monitoring endpoints."""

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"] == {"store": "healthy"}
        assert "version" in data

    def test_health_reports_store_outage(self, client, fake_redis):
        fake_redis.fail = True

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["services"]["store"] == "unavailable"

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_metrics_endpoint(self, client):
        client.post("/api/auth/verify")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "gateway_rate_limit_decisions_total" in response.text

    def test_login_attempts_counted(self, client):
        client.post("/api/auth/login", json={"email": "alice@example.com", "password": "wrong"})
        response = client.get("/metrics")

        assert 'gateway_login_attempts_total{outcome="rejected"}' in response.text

    def test_health_not_rate_limited(self, client):
        response = client.get("/health")

        assert "X-RateLimit-Limit" not in response.headers


class TestStartup:
    """Tests for fail-fast startup."""

    def test_missing_configuration_stops_startup(self, settings, fake_redis, directory):
        broken = settings.model_copy(update={"jwt_secret": "", "erp_url": ""})
        app = create_app(broken, redis_client=fake_redis, directory=directory)

        with pytest.raises(ConfigurationError) as exc_info:
            with TestClient(app):
                pass

        assert "JWT_SECRET is required" in exc_info.value.problems
        assert "ERP_URL is required" in exc_info.value.problems

    def test_unreachable_store_stops_startup(self, settings, fake_redis, directory):
        fake_redis.fail = True
        app = create_app(settings, redis_client=fake_redis, directory=directory)

        with pytest.raises(StoreUnavailable):
            with TestClient(app):
                pass

    def test_policy_used_by_route_guard_must_be_defined(self, settings, fake_redis, directory):
        standard_only = settings.model_copy(
            update={"rate_limit_policies": {"standard": settings.rate_limit_policies["standard"]}}
        )
        app = create_app(standard_only, redis_client=fake_redis, directory=directory)

        with pytest.raises(ConfigurationError) as exc_info:
            with TestClient(app):
                pass

        assert exc_info.value.problems == ["RATE_LIMIT_POLICIES must define the 'login' policy"]


class TestAuthEndpoints:
    """Tests for login, verify and logout."""

    def test_login_success(self, client, fake_redis):
        response = client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "alice-pw"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["token"]
        assert data["user"] == {"id": 1, "name": "Alice Admin", "email": "alice@example.com"}

    def test_login_creates_session_and_warms_cache(self, client, fake_redis):
        client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "alice-pw"},
        )

        keys = [k for k in fake_redis._data]
        assert any(k.startswith("session:") for k in keys)
        assert "user:1" in keys

    def test_login_invalid_credentials(self, client):
        response = client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "wrong"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "authentication"

    def test_login_validation_error(self, client):
        response = client.post("/api/auth/login", json={"email": "alice@example.com"})

        assert response.status_code == 422

    def test_login_attempts_are_rate_limited(self, client):
        payload = {"email": "alice@example.com", "password": "wrong"}

        statuses = [client.post("/api/auth/login", json=payload).status_code for _ in range(4)]
        assert statuses == [401, 401, 401, 429]

        response = client.post("/api/auth/login", json=payload)
        assert response.status_code == 429
        assert 0 < int(response.headers["Retry-After"]) <= 900
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.json()["success"] is False

    def test_login_erp_outage(self, client, directory):
        directory.fail = True

        response = client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "alice-pw"},
        )

        assert response.status_code == 503
        assert response.json()["error"] == "upstream_failure"

    def test_verify_token(self, client, auth_headers):
        response = client.post("/api/auth/verify", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["user"]["id"] == 1

    def test_verify_rejects_garbage_token(self, client):
        response = client.post("/api/auth/verify", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token"

    def test_verify_requires_token(self, client):
        response = client.post("/api/auth/verify")

        assert response.status_code == 401
        assert response.json()["message"] == "Access token required"

    def test_logout_revokes_token(self, client, auth_headers, fake_redis):
        response = client.post("/api/auth/logout", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["sessions_deleted"] == 1

        token = auth_headers["Authorization"].split(" ")[1]
        ttl = fake_redis._data[f"token:blacklist:{token}"][1] - fake_redis.now
        assert 0 < ttl <= 7 * 24 * 3600 + 1

        response = client.get("/api/users/me", headers=auth_headers)
        assert response.status_code == 401
        assert response.json()["message"] == "Token has been revoked"

    def test_logout_all_deletes_every_session(self, client, auth_headers, fake_redis):
        client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": "alice-pw"},
        )
        assert sum(1 for k in fake_redis._data if k.startswith("session:")) == 2

        response = client.post("/api/auth/logout-all", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["sessions_deleted"] == 2
        assert not any(k.startswith("session:") for k in fake_redis._data)

    def test_revoked_token_accepted_during_store_outage(self, client, auth_headers, fake_redis, directory):
        client.post("/api/auth/logout", headers=auth_headers)
        fake_redis.fail = True

        # blacklist check fails open; the user lookup itself then fails closed
        response = client.get("/api/users/me", headers=auth_headers)

        assert response.status_code == 500
        assert response.json()["error"] == "internal"


class TestUserEndpoints:
    """Tests for cached ERP user lookups."""

    def test_users_require_authentication(self, client):
        assert client.get("/api/users").status_code == 401

    def test_list_users_is_cached(self, client, auth_headers, directory):
        first = client.get("/api/users", headers=auth_headers)
        second = client.get("/api/users", headers=auth_headers)

        assert first.status_code == second.status_code == 200
        assert first.json()["count"] == 3
        assert first.json() == second.json()
        assert directory.calls["list_users"] == 1

    def test_list_active_users(self, client, auth_headers):
        response = client.get("/api/users/active", headers=auth_headers)

        assert response.status_code == 200
        assert [u["id"] for u in response.json()["data"]] == [1, 2]

    def test_get_user_by_id(self, client, auth_headers, directory):
        response = client.get("/api/users/2", headers=auth_headers)
        client.get("/api/users/2", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Bob Builder"
        assert directory.calls["get_user"] == 1

    def test_get_current_user_served_from_login_cache(self, client, auth_headers, directory):
        response = client.get("/api/users/me", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["data"]["login"] == "alice@example.com"
        assert directory.calls["get_user"] == 0

    def test_unknown_user(self, client, auth_headers):
        response = client.get("/api/users/999", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_invalid_user_id(self, client, auth_headers):
        assert client.get("/api/users/abc", headers=auth_headers).status_code == 422

    def test_search_by_email(self, client, auth_headers):
        response = client.post(
            "/api/users/search",
            headers=auth_headers,
            json={"email": "bob@example.com"},
        )

        assert response.status_code == 200
        assert response.json()["count"] == 1
        assert response.json()["data"][0]["id"] == 2

    def test_rate_limit_headers_on_authenticated_route(self, client, auth_headers):
        response = client.get("/api/users", headers=auth_headers)

        assert response.headers["X-RateLimit-Limit"] == "50"
        assert int(response.headers["X-RateLimit-Remaining"]) < 50

    def test_invalidate_user_cache(self, client, auth_headers, directory):
        client.get("/api/users", headers=auth_headers)

        response = client.delete("/api/cache/users", headers=auth_headers)
        client.get("/api/users", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["deleted"] >= 2
        assert directory.calls["list_users"] == 2


class TestGlobalRateLimit:
    """Tests for the default per-address policy."""

    def test_default_policy_denies_past_ceiling(self, settings, fake_redis, directory):
        tight = settings.model_copy(
            update={
                "rate_limit_policies": {
                    **settings.rate_limit_policies,
                    "strict": settings.rate_limit_policies["login"].model_copy(
                        update={"max_requests": 2, "window_seconds": 60}
                    ),
                },
                "rate_limit_default_policy": "strict",
            }
        )
        app = create_app(tight, redis_client=fake_redis, directory=directory)

        with TestClient(app) as client:
            statuses = [client.post("/api/auth/verify").status_code for _ in range(3)]
            denied = client.post("/api/auth/verify")

        assert statuses == [401, 401, 429]
        assert denied.json()["retryAfter"] > 0
        assert denied.headers["X-RateLimit-Limit"] == "2"

    def test_rate_limiter_fails_open(self, client, fake_redis):
        fake_redis.fail = True

        response = client.post("/api/auth/verify")

        # Rejected by authentication, not by the limiter
        assert response.status_code == 401

    def test_store_outage_does_not_stall_requests(self, client, fake_redis, settings):
        client.get("/api/users")
        fake_redis.fail = True
        pings_before = fake_redis.calls["ping"]

        statuses = [client.post("/api/auth/verify").status_code for _ in range(5)]

        assert statuses == [401] * 5
        # One spent reconnect budget; later requests fail fast during the cooldown
        assert fake_redis.calls["ping"] - pings_before <= settings.redis_max_retries
