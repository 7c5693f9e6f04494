"""Error taxonomy shared by the store, cache and HTTP layers.

Every error carries an ``ErrorKind`` tag so call sites can decide explicitly
whether a failure is fatal (fail closed) or advisory (fail open).
"""

from enum import Enum

from fastapi import HTTPException


class ErrorKind(str, Enum):
    """Tag set for gateway errors."""

    STORE_UNAVAILABLE = "store_unavailable"
    SERIALIZATION = "serialization"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_FAILURE = "upstream_failure"
    INTERNAL = "internal"
    NOT_FOUND = "not_found"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"


class GatewayError(Exception):
    """Base class for errors raised by the gateway."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class StoreUnavailable(GatewayError):
    """Key-value store unreachable after the retry budget, or a command failed in transport."""

    kind = ErrorKind.STORE_UNAVAILABLE
    status_code = 503


class SerializationError(GatewayError):
    """A stored value could not be decoded into the expected shape."""

    kind = ErrorKind.SERIALIZATION


class InternalError(GatewayError):
    """Fail-closed wrapper for store failures on correctness-critical paths."""

    kind = ErrorKind.INTERNAL


class UpstreamComputeFailure(GatewayError):
    """The origin collaborator behind a cache lookup failed."""

    kind = ErrorKind.UPSTREAM_FAILURE
    status_code = 502


class ErpConnectionError(UpstreamComputeFailure):
    """The ERP system could not be reached."""

    status_code = 503

    def __init__(self, message: str = "Failed to connect to ERP system"):
        super().__init__(message)


class NotFoundError(GatewayError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class UserNotFound(NotFoundError):
    def __init__(self, user_id: int | str):
        super().__init__(f"User {user_id} not found in ERP")
        self.user_id = user_id


class AuthenticationError(GatewayError):
    kind = ErrorKind.AUTHENTICATION
    status_code = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)


class ConfigurationError(GatewayError):
    """Startup configuration is incomplete or inconsistent."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, problems: list[str]):
        super().__init__("Invalid configuration: " + "; ".join(problems))
        self.problems = problems


class RateLimitExceeded(HTTPException):
    """Denial signal raised when a client exhausts its window."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, retry_after: int, limit: int, remaining: int = 0):
        super().__init__(
            status_code=429,
            detail="Too many requests, please try again later",
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": str(remaining),
                "X-RateLimit-Reset": str(retry_after),
            },
        )
        self.retry_after = retry_after
