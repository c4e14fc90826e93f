from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from piauth.service.errors import AuthErrorKind

_VALID_ERROR_CODES = {kind.value for kind in AuthErrorKind} | {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "server_error",
    "service_unavailable",
}


class ErrorBody(BaseModel):
    """Error envelope body with a stable code and a bilingual message."""

    code: str = Field(..., description="Stable error code")
    message: str
    message_ar: Optional[str] = None
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response body."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LocationIn(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class LoginRequest(BaseModel):
    pi_id: str = Field(..., min_length=1, max_length=128)
    access_token: str = Field(..., min_length=1, max_length=4096)
    location: Optional[LocationIn] = None

    @field_validator("pi_id")
    @classmethod
    def _strip_pi_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("pi_id must not be blank")
        return value


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_in: int
    session_id: str
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)


class ClaimsResponse(BaseModel):
    user_id: str
    pi_id: str
    roles: List[str]
    is_merchant: bool
    permissions: List[str]
    session_id: str
    scheme_version: str
    issued_at: int
    expires_at: int
    token_id: str
    kind: str


class LogoutResponse(BaseModel):
    message: str
    message_ar: str


__all__ = [
    "ErrorBody",
    "Envelope",
    "LocationIn",
    "LoginRequest",
    "RefreshRequest",
    "TokenPairResponse",
    "ClaimsResponse",
    "LogoutResponse",
]
