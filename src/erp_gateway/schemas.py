"""Pydantic schemas for API request/response validation."""

from datetime import datetime

from pydantic import BaseModel, Field

from erp_gateway.services.erp import ErpUser


class LoginRequest(BaseModel):
    """Credentials checked against the ERP."""

    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1)


class UserSummary(BaseModel):
    id: int
    name: str
    email: str | None = None


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    expires_at: datetime
    user: UserSummary


class VerifyResponse(BaseModel):
    success: bool = True
    user: UserSummary


class LogoutResponse(BaseModel):
    success: bool = True
    sessions_deleted: int = 0


class EmailLookupRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=254)


class UserResponse(BaseModel):
    success: bool = True
    data: ErpUser


class UserListResponse(BaseModel):
    success: bool = True
    count: int
    data: list[ErpUser]


class InvalidationResponse(BaseModel):
    success: bool = True
    deleted: int


class HealthResponse(BaseModel):
    """Schema for health check response."""

    status: str
    version: str
    uptime_seconds: float
    timestamp: datetime
    services: dict[str, str]
