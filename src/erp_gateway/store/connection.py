"""Redis connection management."""

import asyncio
import time
from typing import Callable

import structlog
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import AbstractBackoff, NoBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from erp_gateway.config import Settings
from erp_gateway.errors import StoreUnavailable

logger = structlog.get_logger()


class LinearCappedBackoff(AbstractBackoff):
    """Reconnect delay growing by a fixed step per failure, up to a cap.

    With the defaults this yields 50ms, 100ms, 150ms, ... capped at 3s.
    """

    def __init__(self, step: float = 0.05, cap: float = 3.0):
        self._step = step
        self._cap = cap

    def compute(self, failures: int) -> float:
        return min(failures * self._step, self._cap)


class StoreConnection:
    """Owns the single shared Redis client for the process.

    The client is created lazily on the first ``connect()`` and reused by every
    component. Only this class changes connection state; higher layers issue
    commands through :class:`~erp_gateway.store.client.KeyValueStore`.

    Reconnect attempts happen only here. The redis client itself is built
    without retries, so one ``connect()`` costs at most ``max_retries``
    socket attempts. Once that budget is spent, further ``connect()`` calls
    fail immediately until ``reconnect_cooldown`` seconds have passed.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: str | None = None,
        socket_timeout: float = 5.0,
        max_retries: int = 10,
        backoff: AbstractBackoff | None = None,
        reconnect_cooldown: float = 5.0,
        client: Redis | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize connection handle.

        Args:
            host: Redis host.
            port: Redis port.
            db: Redis database index.
            password: Optional Redis password.
            socket_timeout: Deadline for a single command; expiry counts as a transport failure.
            max_retries: Connection attempts made before surfacing StoreUnavailable.
            backoff: Delay policy between attempts.
            reconnect_cooldown: Seconds to fail fast after the budget is spent.
            client: Pre-built client (used by tests and embedding applications).
            clock: Monotonic time source for the cooldown.
        """
        self.host = host
        self.port = port
        self.db = db
        self._password = password
        self.socket_timeout = socket_timeout
        self.max_retries = max(1, max_retries)
        self._backoff = backoff or LinearCappedBackoff()
        # Retry counts re-attempts after the first call
        self._retry = Retry(self._backoff, self.max_retries - 1, supported_errors=(ConnectionError, TimeoutError))
        self.reconnect_cooldown = reconnect_cooldown
        self._clock = clock
        self._failed_at: float | None = None
        self._client = client
        self._lock = asyncio.Lock()
        self.connected = False

    @classmethod
    def from_settings(cls, settings: Settings, client: Redis | None = None) -> "StoreConnection":
        return cls(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password,
            socket_timeout=settings.redis_socket_timeout,
            max_retries=settings.redis_max_retries,
            backoff=LinearCappedBackoff(
                step=settings.redis_backoff_step_ms / 1000,
                cap=settings.redis_backoff_cap_ms / 1000,
            ),
            reconnect_cooldown=settings.redis_reconnect_cooldown_ms / 1000,
            client=client,
        )

    def _build_client(self) -> Redis:
        return Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self._password,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
            retry=Retry(NoBackoff(), 0),
        )

    def _cooling_down(self) -> bool:
        return self._failed_at is not None and self._clock() - self._failed_at < self.reconnect_cooldown

    def _unavailable(self) -> StoreUnavailable:
        return StoreUnavailable(f"Redis unavailable at {self.host}:{self.port}")

    async def connect(self) -> Redis:
        """Return the live client, establishing the connection if needed.

        Concurrent callers wait on the same attempt instead of opening
        duplicate connections.
        """
        if self._client is not None and self.connected:
            return self._client
        if self._cooling_down():
            raise self._unavailable()

        async with self._lock:
            if self._client is not None and self.connected:
                return self._client
            # Callers queued behind a failed attempt must not start another one
            if self._cooling_down():
                raise self._unavailable()

            if self._client is None:
                self._client = self._build_client()
            client = self._client

            try:
                await self._retry.call_with_retry(client.ping, self._on_attempt_failed)
            except RedisError as e:
                self.connected = False
                self._failed_at = self._clock()
                logger.error(
                    "Redis unreachable, giving up",
                    host=self.host,
                    port=self.port,
                    attempts=self.max_retries,
                    retry_in=self.reconnect_cooldown,
                    error=str(e),
                )
                raise self._unavailable() from e

            self.connected = True
            self._failed_at = None
            logger.info("Redis connected", host=self.host, port=self.port, db=self.db)
            return client

    async def _on_attempt_failed(self, error: Exception) -> None:
        self.connected = False
        logger.warning("Redis connection attempt failed", host=self.host, error=str(error))

    def mark_unavailable(self, error: Exception) -> None:
        """Record a transport failure so the next command reconnects first."""
        if self.connected:
            logger.warning("Redis connection lost", host=self.host, error=str(error))
        self.connected = False

    async def close(self) -> None:
        """Close the client; a later ``connect()`` starts over."""
        async with self._lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
                logger.info("Redis disconnected", host=self.host)
            self.connected = False
            self._failed_at = None
