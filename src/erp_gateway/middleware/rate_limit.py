"""Maps inbound requests to rate limit identifiers and enforces policies."""

from typing import Callable

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from erp_gateway.container import Container
from erp_gateway.errors import RateLimitExceeded
from erp_gateway.services.rate_limiter import RateLimitResult

logger = structlog.get_logger()


def _container(request: Request) -> Container:
    return request.app.state.container


def client_address(request: Request, trust_forwarded_for: bool = False) -> str:
    """Best-effort client address; X-Forwarded-For only when the proxy is trusted."""
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def ip_identifier(request: Request) -> str:
    return client_address(request, _container(request).settings.trust_forwarded_for)


def user_identifier(request: Request) -> str:
    """Authenticated user id when known, else the client address."""
    user_id = getattr(request.state, "user_id", None)
    if user_id is not None:
        return f"user:{user_id}"
    return ip_identifier(request)


def login_identifier(request: Request) -> str:
    return f"login:{ip_identifier(request)}"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_in),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies one policy by client address to every non-excluded path."""

    def __init__(
        self,
        app,
        policy_name: str = "standard",
        exclude_paths: list[str] | None = None,
    ):
        super().__init__(app)
        self.policy_name = policy_name
        self.exclude_paths = exclude_paths or ["/health", "/metrics", "/docs", "/openapi.json"]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request through rate limiter."""
        if any(request.url.path.startswith(p) for p in self.exclude_paths):
            return await call_next(request)

        container = _container(request)
        identifier = ip_identifier(request)
        result = await container.rate_limiter.check_policy(container.policy(self.policy_name), identifier)

        if not result.allowed:
            logger.warning("Rate limit exceeded", path=request.url.path, client=identifier)
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "message": "Too many requests, please try again later",
                    "retryAfter": result.reset_in,
                },
                headers={"Retry-After": str(result.reset_in), **rate_limit_headers(result)},
            )

        response = await call_next(request)
        # Route guards set their own, narrower headers
        for name, value in rate_limit_headers(result).items():
            response.headers.setdefault(name, value)
        return response


class RateLimitGuard:
    """Per-route policy enforced as a FastAPI dependency.

    Usage::

        login_limit = RateLimitGuard("login", key_func=login_identifier)

        @app.post("/login", dependencies=[Depends(login_limit)])
    """

    def __init__(self, policy_name: str, key_func: Callable[[Request], str] = ip_identifier):
        self.policy_name = policy_name
        self.key_func = key_func

    async def __call__(self, request: Request, response: Response) -> RateLimitResult:
        container = _container(request)
        if not container.settings.rate_limit_enabled:
            return RateLimitResult(True, 0, 0, 0)

        policy = container.policy(self.policy_name)
        result = await container.rate_limiter.check_policy(policy, self.key_func(request))

        if not result.allowed:
            raise RateLimitExceeded(retry_after=result.reset_in, limit=result.limit)

        for name, value in rate_limit_headers(result).items():
            response.headers[name] = value
        return result
