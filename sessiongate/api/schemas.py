from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sessiongate.service.auth import LogoutReason

MAX_TOKEN_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("username must not be blank")
        return value


class RefreshRequest(BaseModel):
    # Falls back to the refresh cookie when omitted
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    logout_all_devices: bool = False
    reason: LogoutReason = LogoutReason.USER


class IdentityResponse(BaseModel):
    id: str
    role: str
    name: str = ""
    username: str = ""
    email: str = ""
    permissions: List[str] = Field(default_factory=list)


class AuthResponse(BaseModel):
    user: IdentityResponse
    session_id: str
    session_expires_at: datetime
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"


class SessionResponse(BaseModel):
    user: IdentityResponse
    session_id: str
    token_expires_at: datetime


class SessionInfo(BaseModel):
    id: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    ip_address: str = ""
    user_agent: str = ""
    browser: str = "Unknown"
    current: bool = False


class LogoutResponse(BaseModel):
    message: str
    all_devices: bool = False
    sessions_revoked: int = 0
    failures: int = 0


class SecurityEventResponse(BaseModel):
    id: str
    kind: str
    actor_id: str
    actor_role: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: str = ""
    user_agent: str = ""
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SweepResponse(BaseModel):
    scanned: int
    removed: int
    failed: int
