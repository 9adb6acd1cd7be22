from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - service_unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` is a stable machine-readable tag for logs and audit events.
    """
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthorized"


class MissingCredentialError(AuthError):
    reason = "missing_credential"


class MalformedTokenError(AuthError):
    reason = "malformed_token"


class InvalidSignatureError(MalformedTokenError):
    reason = "invalid_signature"


class ExpiredTokenError(AuthError):
    reason = "token_expired"


class WrongTokenClassError(AuthError):
    reason = "wrong_token_class"


class BlacklistedTokenError(AuthError):
    reason = "token_blacklisted"


class RevokedSessionError(AuthError):
    """Session is revoked, inactive, or no longer present."""
    reason = "session_revoked"


class SessionMismatchError(AuthError):
    """Presented token no longer matches the digest stored on the session."""
    reason = "session_mismatch"


class InactiveIdentityError(AuthError):
    reason = "identity_inactive"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role or capability (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class InfrastructureUnavailableError(ServiceError):
    """Backing store unreachable; callers must fail closed (503)."""
    status_code = 503
    error_code = "service_unavailable"
    reason = "infrastructure_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthError",
    "MissingCredentialError",
    "MalformedTokenError",
    "InvalidSignatureError",
    "ExpiredTokenError",
    "WrongTokenClassError",
    "BlacklistedTokenError",
    "RevokedSessionError",
    "SessionMismatchError",
    "InactiveIdentityError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "InfrastructureUnavailableError",
    "ServerError",
]
