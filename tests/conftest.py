"""Pytest fixtures for the ERP gateway tests."""

import fnmatch
import math
from collections import Counter

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError, ResponseError

from erp_gateway.api.app import create_app
from erp_gateway.config import Settings
from erp_gateway.errors import ErpConnectionError, UserNotFound
from erp_gateway.services.cache import CacheEngine
from erp_gateway.services.erp import ErpUser
from erp_gateway.services.rate_limiter import FixedWindowRateLimiter
from erp_gateway.services.sessions import SessionStore
from erp_gateway.store import KeyValueStore, LinearCappedBackoff, StoreConnection


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` with a manual clock.

    Only the commands the gateway issues are implemented. Set ``fail`` to make
    every command raise a transport error.
    """

    def __init__(self):
        self.now = 1_000_000.0
        self.fail = False
        self.calls = Counter()
        self._data: dict[str, tuple[str, float | None]] = {}

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _check(self, command: str) -> None:
        self.calls[command] += 1
        if self.fail:
            raise ConnectionError("Connection refused")

    def _live(self, key: str) -> tuple[str, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self.now >= expires_at:
            del self._data[key]
            return None
        return entry

    async def ping(self):
        self._check("ping")
        return True

    async def get(self, key):
        self._check("get")
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key, value, ex=None):
        self._check("set")
        self._data[key] = (str(value), self.now + ex if ex else None)
        return True

    async def delete(self, *keys):
        self._check("delete")
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                deleted += 1
        return deleted

    async def exists(self, key):
        self._check("exists")
        return 1 if self._live(key) is not None else 0

    async def expire(self, key, seconds):
        self._check("expire")
        entry = self._live(key)
        if entry is None:
            return False
        self._data[key] = (entry[0], self.now + seconds)
        return True

    async def ttl(self, key):
        self._check("ttl")
        entry = self._live(key)
        if entry is None:
            return -2
        if entry[1] is None:
            return -1
        return math.ceil(entry[1] - self.now)

    async def incrby(self, key, amount=1):
        self._check("incrby")
        entry = self._live(key)
        value, expires_at = entry if entry else ("0", None)
        try:
            new_value = int(value) + amount
        except ValueError:
            raise ResponseError("value is not an integer or out of range")
        self._data[key] = (str(new_value), expires_at)
        return new_value

    async def scan_iter(self, match=None, count=None):
        self._check("scan")
        for key in list(self._data):
            if self._live(key) is None:
                continue
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def flushdb(self):
        self._check("flushdb")
        self._data.clear()
        return True

    async def aclose(self):
        self.calls["aclose"] += 1


class InMemoryDirectory:
    """ERP user directory double that records how often it is queried."""

    def __init__(self, users: list[ErpUser], passwords: dict[str, str]):
        self.users = {u.id: u for u in users}
        self.passwords = passwords
        self.calls = Counter()
        self.fail = False

    def _check(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.fail:
            raise ErpConnectionError()

    async def authenticate(self, login, password):
        self._check("authenticate")
        if self.passwords.get(login) != password:
            return None
        return next(u for u in self.users.values() if u.login == login)

    async def get_user(self, user_id):
        self._check("get_user")
        if user_id not in self.users:
            raise UserNotFound(user_id)
        return self.users[user_id]

    async def list_users(self, active_only=False):
        self._check("list_users")
        return [u for u in self.users.values() if u.active or not active_only]

    async def find_by_email(self, email):
        self._check("find_by_email")
        return [u for u in self.users.values() if u.email == email]


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        app_env="development",
        debug=False,
        erp_url="http://erp.test",
        erp_db="test",
        erp_user="service",
        erp_password="service-password",
        jwt_secret="test-secret-with-enough-length-for-hs256",
        redis_max_retries=2,
        redis_backoff_step_ms=0,
        redis_backoff_cap_ms=0,
        rate_limit_policies={
            "login": {"max_requests": 3, "window_seconds": 900},
            "standard": {"max_requests": 50, "window_seconds": 60},
        },
        rate_limit_default_policy="standard",
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def connection(fake_redis):
    return StoreConnection(
        client=fake_redis,
        max_retries=2,
        backoff=LinearCappedBackoff(step=0, cap=0),
        reconnect_cooldown=5,
        clock=lambda: fake_redis.now,
    )


@pytest.fixture
def store(connection):
    return KeyValueStore(connection)


@pytest.fixture
def cache(store, settings):
    return CacheEngine(store, ttl_table=settings.ttl_table())


@pytest.fixture
def sessions(cache, settings):
    return SessionStore(cache, session_ttl=settings.session_ttl)


@pytest.fixture
def rate_limiter(store):
    return FixedWindowRateLimiter(store)


@pytest.fixture
def erp_users():
    return [
        ErpUser(
            id=1,
            name="Alice Admin",
            login="alice@example.com",
            email="alice@example.com",
            partner_id=(10, "Alice Admin"),
            company_id=(1, "Example Co"),
        ),
        ErpUser(id=2, name="Bob Builder", login="bob@example.com", email="bob@example.com"),
        ErpUser(id=3, name="Carol Former", login="carol@example.com", email=None, active=False),
    ]


@pytest.fixture
def directory(erp_users):
    return InMemoryDirectory(
        erp_users,
        passwords={"alice@example.com": "alice-pw", "bob@example.com": "bob-pw"},
    )


@pytest.fixture
def client(settings, fake_redis, directory):
    """Create a test client wired to the fake Redis and directory."""
    app = create_app(settings, redis_client=fake_redis, directory=directory)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers(client):
    """Log Alice in and return her bearer header."""
    response = client.post(
        "/api/auth/login",
        json={"email": "alice@example.com", "password": "alice-pw"},
    )
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}
