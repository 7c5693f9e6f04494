"""FastAPI application for the ERP gateway."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import Depends, FastAPI, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import generate_latest
from redis.asyncio import Redis
from starlette.responses import Response

from erp_gateway import __version__
from erp_gateway.config import Settings, get_settings
from erp_gateway.container import Container
from erp_gateway.errors import AuthenticationError, ConfigurationError, GatewayError, RateLimitExceeded
from erp_gateway.logging_setup import configure_logging
from erp_gateway.metrics import LOGIN_ATTEMPTS
from erp_gateway.middleware.rate_limit import (
    RateLimitGuard,
    RateLimitMiddleware,
    login_identifier,
    user_identifier,
)
from erp_gateway.schemas import (
    EmailLookupRequest,
    HealthResponse,
    InvalidationResponse,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    UserListResponse,
    UserResponse,
    UserSummary,
    VerifyResponse,
)
from erp_gateway.services.erp import UserDirectory
from erp_gateway.services.tokens import TokenClaims

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate config, build the service container, connect to Redis."""
    settings: Settings = app.state.settings
    configure_logging(settings)

    errors = settings.validate_startup_settings(
        required_policies=(login_rate_limit.policy_name, user_rate_limit.policy_name)
    )
    if errors:
        for error in errors:
            logger.error("Configuration problem", issue=error)
        raise ConfigurationError(errors)

    container = Container.build(
        settings,
        redis_client=app.state.redis_client,
        directory=app.state.directory,
    )
    # Fails fast once the reconnect budget is spent
    await container.startup()
    app.state.container = container
    app.state.started_at = datetime.now(timezone.utc)

    logger.info(
        "Application started",
        version=__version__,
        environment=settings.app_env,
        redis=settings.redis_url,
    )

    yield

    await container.shutdown()
    logger.info("Application shutting down")


def get_container(request: Request) -> Container:
    return request.app.state.container


bearer_scheme = HTTPBearer(auto_error=False)


async def current_claims(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> TokenClaims:
    """Authenticate the bearer token and reject revoked ones."""
    if credentials is None:
        raise AuthenticationError("Access token required")

    container = get_container(request)
    claims = container.tokens.verify(credentials.credentials)
    if await container.sessions.is_blacklisted(credentials.credentials):
        raise AuthenticationError("Token has been revoked")

    request.state.user_id = claims.user_id
    request.state.token = credentials.credentials
    return claims


login_rate_limit = RateLimitGuard("login", key_func=login_identifier)
user_rate_limit = RateLimitGuard("standard", key_func=user_identifier)


def create_app(
    settings: Settings | None = None,
    *,
    redis_client: Redis | None = None,
    directory: UserDirectory | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use instead of the environment.
        redis_client: Pre-built Redis client instead of one from settings.
        directory: ERP user directory instead of the Odoo XML-RPC client.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="ERP Gateway",
        description="Authentication gateway in front of the ERP with Redis caching and rate limiting.",
        version=__version__,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.redis_client = redis_client
    app.state.directory = directory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.effective_cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            policy_name=settings.rate_limit_default_policy,
            exclude_paths=settings.rate_limit_exclude_paths,
        )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"success": False, "message": exc.detail, "retryAfter": exc.retry_after},
            headers=exc.headers,
        )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                path=request.url.path,
                method=request.method,
                kind=exc.kind.value,
                error=exc.message,
            )
        content = {"success": False, "message": exc.message, "error": exc.kind.value}
        if exc.status_code == 500 and not settings.debug:
            content["message"] = "Internal server error"
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Internal server error"},
        )

    _setup_routes(app)

    return app


def _setup_routes(app: FastAPI):
    """Set up all API routes."""

    authenticated = [Depends(current_claims), Depends(user_rate_limit)]

    # ============== Health & Monitoring ==============

    @app.get("/health", response_model=HealthResponse, tags=["monitoring"])
    async def health_check(request: Request, container: Container = Depends(get_container)):
        """Health check including a Redis round trip."""
        started_at = request.app.state.started_at
        now = datetime.now(timezone.utc)
        store_healthy = await container.store.ping()

        return HealthResponse(
            status="healthy" if store_healthy else "degraded",
            version=__version__,
            uptime_seconds=(now - started_at).total_seconds(),
            timestamp=now,
            services={"store": "healthy" if store_healthy else "unavailable"},
        )

    @app.get("/health/live", tags=["monitoring"])
    async def liveness_check():
        """Liveness probe - checks if app is alive."""
        return {"status": "alive"}

    @app.get("/metrics", tags=["monitoring"])
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(), media_type="text/plain")

    # ============== Auth ==============

    @app.post(
        "/api/auth/login",
        response_model=LoginResponse,
        dependencies=[Depends(login_rate_limit)],
        tags=["auth"],
    )
    async def login(payload: LoginRequest, container: Container = Depends(get_container)):
        """Authenticate against the ERP and issue an access token."""
        user = await container.users.authenticate(payload.email, payload.password)
        if user is None:
            LOGIN_ATTEMPTS.labels(outcome="rejected").inc()
            raise AuthenticationError("Invalid email or password")

        issued = container.tokens.issue(user)
        await container.sessions.create_session(
            issued.session_id,
            user.id,
            {"email": user.email, "login": user.login},
        )
        LOGIN_ATTEMPTS.labels(outcome="success").inc()
        logger.info("User logged in", user_id=user.id)

        return LoginResponse(
            token=issued.token,
            expires_at=issued.expires_at,
            user=UserSummary(id=user.id, name=user.name, email=user.email),
        )

    @app.post("/api/auth/verify", response_model=VerifyResponse, tags=["auth"])
    async def verify_token(
        claims: TokenClaims = Depends(current_claims),
        container: Container = Depends(get_container),
    ):
        """Verify the bearer token and confirm the user still exists in the ERP."""
        user = await container.users.get_user(claims.user_id)
        return VerifyResponse(user=UserSummary(id=user.id, name=user.name, email=user.email))

    @app.post("/api/auth/logout", response_model=LogoutResponse, tags=["auth"])
    async def logout(
        request: Request,
        claims: TokenClaims = Depends(current_claims),
        container: Container = Depends(get_container),
    ):
        """Revoke the bearer token for the rest of its lifetime."""
        expires_in = container.tokens.remaining_lifetime(claims, container.settings.token_blacklist_ttl)
        await container.sessions.blacklist_token(request.state.token, expires_in)
        deleted = 0
        if claims.session_id:
            await container.sessions.delete_session(claims.session_id)
            deleted = 1
        return LogoutResponse(sessions_deleted=deleted)

    @app.post("/api/auth/logout-all", response_model=LogoutResponse, tags=["auth"])
    async def logout_all(
        request: Request,
        claims: TokenClaims = Depends(current_claims),
        container: Container = Depends(get_container),
    ):
        """Revoke the bearer token and end every session of its user."""
        expires_in = container.tokens.remaining_lifetime(claims, container.settings.token_blacklist_ttl)
        await container.sessions.blacklist_token(request.state.token, expires_in)
        deleted = await container.sessions.delete_all_sessions_for_user(claims.user_id)
        return LogoutResponse(sessions_deleted=deleted)

    # ============== Users ==============

    @app.get("/api/users", response_model=UserListResponse, dependencies=authenticated, tags=["users"])
    async def list_users(container: Container = Depends(get_container)):
        """All ERP users (cached)."""
        users = await container.users.list_users()
        return UserListResponse(count=len(users), data=users)

    @app.get("/api/users/active", response_model=UserListResponse, dependencies=authenticated, tags=["users"])
    async def list_active_users(container: Container = Depends(get_container)):
        """Active ERP users (cached)."""
        users = await container.users.list_active_users()
        return UserListResponse(count=len(users), data=users)

    @app.get("/api/users/me", response_model=UserResponse, dependencies=authenticated, tags=["users"])
    async def get_current_user(
        claims: TokenClaims = Depends(current_claims),
        container: Container = Depends(get_container),
    ):
        return UserResponse(data=await container.users.get_user(claims.user_id))

    @app.post("/api/users/search", response_model=UserListResponse, dependencies=authenticated, tags=["users"])
    async def find_users_by_email(payload: EmailLookupRequest, container: Container = Depends(get_container)):
        users = await container.users.find_by_email(payload.email)
        return UserListResponse(count=len(users), data=users)

    @app.get("/api/users/{user_id}", response_model=UserResponse, dependencies=authenticated, tags=["users"])
    async def get_user(user_id: int, container: Container = Depends(get_container)):
        return UserResponse(data=await container.users.get_user(user_id))

    # ============== Admin ==============

    @app.delete("/api/cache/users", response_model=InvalidationResponse, dependencies=authenticated, tags=["admin"])
    async def invalidate_user_cache(container: Container = Depends(get_container)):
        """Drop every cached user record and list."""
        return InvalidationResponse(deleted=await container.users.invalidate_all())


# Create default application
app = create_app()
