from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidSignatureError as JWTSignatureError
from jwt.exceptions import PyJWTError

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.errors import (
    ExpiredTokenError,
    InvalidSignatureError,
    MalformedTokenError,
    MissingCredentialError,
    WrongTokenClassError,
)
from sessiongate.storage.models import TokenClass

logger = get_logger(__name__)

ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["exp", "iat", "iss", "sub", "jti", "sid", "token_type"]


class TokenCodec:
    """Sign and verify access/refresh JWTs; never touches the store.

    Each token class has its own signing secret so a leaked refresh secret
    cannot mint access tokens and vice versa.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secrets = {
            TokenClass.ACCESS: settings.jwt_access_secret,
            TokenClass.REFRESH: settings.jwt_refresh_secret,
        }

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue(
        self, claims: Dict[str, Any], token_class: TokenClass, ttl: timedelta
    ) -> str:
        token_class = TokenClass(token_class)
        now = self._now()
        payload = dict(claims)
        payload.update(
            {
                "token_type": token_class.value,
                "jti": uuid.uuid4().hex,
                "iat": int(now.timestamp()),
                "exp": int((now + ttl).timestamp()),
                "iss": self.settings.jwt_issuer,
                "sub": str(claims["sub"]),
            }
        )
        return jwt.encode(payload, self._secrets[token_class], algorithm=ALGORITHM)

    def verify(
        self,
        token: Optional[str],
        expected_class: TokenClass,
        *,
        allow_expired: bool = False,
    ) -> Dict[str, Any]:
        """Return verified claims or raise an :class:`AuthError` subclass.

        ``allow_expired`` still checks the signature; logout uses it to identify
        the session behind a token that has already lapsed.
        """
        if not token:
            raise MissingCredentialError("no token presented")
        expected_class = TokenClass(expected_class)
        unverified = self.decode_unsafe(token)
        if unverified is None:
            raise MalformedTokenError("token could not be parsed")
        if unverified.get("token_type") != expected_class.value:
            raise WrongTokenClassError(
                f"expected {expected_class.value} token",
                detail={"token_type": unverified.get("token_type")},
            )
        try:
            claims = jwt.decode(
                token,
                self._secrets[expected_class],
                algorithms=[ALGORITHM],
                issuer=self.settings.jwt_issuer,
                leeway=self.settings.clock_skew_leeway_seconds,
                options={"require": _REQUIRED_CLAIMS, "verify_exp": not allow_expired},
            )
        except ExpiredSignatureError as exc:
            raise ExpiredTokenError("token expired") from exc
        except JWTSignatureError as exc:
            raise InvalidSignatureError("token signature invalid") from exc
        except PyJWTError as exc:
            raise MalformedTokenError("token invalid", detail={"error": str(exc)}) from exc
        if claims.get("token_type") != expected_class.value:
            raise WrongTokenClassError(f"expected {expected_class.value} token")
        return claims

    @staticmethod
    def decode_unsafe(token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Parse claims WITHOUT verifying the signature or expiry.

        Only for deny-side pre-checks that need the session id early; never a
        basis for granting access.
        """
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                options={"verify_signature": False, "verify_exp": False},
                algorithms=[ALGORITHM],
            )
        except PyJWTError:
            return None
        return claims if isinstance(claims, dict) else None

    def remaining_ttl(self, claims: Dict[str, Any]) -> int:
        """Seconds until the token's own ``exp``; 0 when already expired."""
        try:
            exp = int(claims.get("exp", 0))
        except (TypeError, ValueError):
            return 0
        return max(0, exp - int(self._now().timestamp()))
