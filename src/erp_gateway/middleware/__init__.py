"""Middleware package for request processing."""

from erp_gateway.middleware.rate_limit import (
    RateLimitGuard,
    RateLimitMiddleware,
    client_address,
    ip_identifier,
    login_identifier,
    user_identifier,
)

__all__ = [
    "RateLimitGuard",
    "RateLimitMiddleware",
    "client_address",
    "ip_identifier",
    "login_identifier",
    "user_identifier",
]
