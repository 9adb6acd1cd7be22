from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sessiongate.logging import get_logger
from sessiongate.service.background import BackgroundTasks
from sessiongate.service.errors import (
    AuthError,
    BlacklistedTokenError,
    InactiveIdentityError,
    InfrastructureUnavailableError,
    RevokedSessionError,
    SessionMismatchError,
)
from sessiongate.service.identity import IdentityStore
from sessiongate.service.revocation import RevocationManager
from sessiongate.service.tokens import TokenCodec
from sessiongate.storage.common import token_digest
from sessiongate.storage.errors import StoreUnavailableError
from sessiongate.storage.models import Identity, Role, TokenClass, format_dt, utcnow
from sessiongate.storage.sessions import SessionRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Authenticated principal behind one request."""

    identity: Identity
    session_id: str
    token_id: str
    token_class: TokenClass
    expires_at: datetime

    @property
    def user_id(self) -> str:
        return self.identity.id

    @property
    def role(self) -> Role:
        return self.identity.role


class Verifier:
    """Request-path token check.

    ``verify`` never raises: every failure, including an unreachable store,
    collapses to ``None`` (fail closed).
    """

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionRepository,
        revocations: RevocationManager,
        identities: IdentityStore,
        *,
        background: Optional[BackgroundTasks] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.revocations = revocations
        self.identities = identities
        self.background = background or BackgroundTasks()
        self._clock = clock

    async def verify(
        self, token: Optional[str], token_class: TokenClass = TokenClass.ACCESS
    ) -> Optional[AuthContext]:
        try:
            return await self._verify(token, TokenClass(token_class))
        except AuthError as exc:
            logger.info(
                "token_rejected",
                reason=exc.reason,
                token_class=TokenClass(token_class).value,
                message=exc.message,
            )
        except (StoreUnavailableError, InfrastructureUnavailableError) as exc:
            logger.warning(
                "token_verification_unavailable",
                token_class=TokenClass(token_class).value,
                error=str(exc),
            )
        except Exception as exc:
            logger.error(
                "token_verification_error",
                token_class=TokenClass(token_class).value,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
        return None

    async def _verify(self, token: Optional[str], token_class: TokenClass) -> AuthContext:
        claims = self.codec.verify(token, token_class)
        session_id = str(claims.get("sid") or "")
        if not session_id:
            raise RevokedSessionError("token carries no session")

        # Independent reads issued together; evaluated in order below
        blacklisted, revoked, session = await asyncio.gather(
            self.revocations.is_blacklisted(token, token_class),
            self.revocations.is_session_revoked(session_id),
            self.sessions.get(session_id),
        )
        if blacklisted:
            raise BlacklistedTokenError("token has been revoked")
        if revoked:
            raise RevokedSessionError("session has been revoked")
        if session is None:
            raise RevokedSessionError("session not found")
        if not session.is_active:
            raise RevokedSessionError("session is no longer active")
        if session.user_id != str(claims.get("sub")):
            raise SessionMismatchError("token subject does not own session")
        stored_hash = (
            session.access_token_hash
            if token_class is TokenClass.ACCESS
            else session.refresh_token_hash
        )
        if not hmac.compare_digest(stored_hash, token_digest(token)):
            raise SessionMismatchError("token superseded by rotation")

        identity = self.identities.get_identity(session.role, session.user_id)
        if identity is None or not identity.is_active:
            raise InactiveIdentityError("identity is no longer active")

        if token_class is TokenClass.ACCESS:
            self.background.spawn(
                self._touch(session_id), name=f"session_touch:{session_id}"
            )
        return AuthContext(
            identity=identity,
            session_id=session_id,
            token_id=str(claims.get("jti", "")),
            token_class=token_class,
            expires_at=_claim_time(claims, "exp"),
        )

    async def _touch(self, session_id: str) -> None:
        # Conditional on is_active so a racing logout is never undone
        await self.sessions.patch(
            session_id,
            {"last_used_at": format_dt(self._clock())},
            require={"is_active": True},
        )

    async def quick_revocation_check(self, token: Optional[str]) -> bool:
        """Deny-side pre-filter: False if the session is known to be revoked.

        The signature is not checked, so True never grants access on its own.
        """
        claims = self.codec.decode_unsafe(token)
        session_id = str((claims or {}).get("sid") or "")
        if not session_id:
            return False
        try:
            if await self.revocations.is_session_revoked(session_id):
                return False
            session = await self.sessions.get(session_id)
        except StoreUnavailableError as exc:
            logger.warning("quick_revocation_check_unavailable", error=str(exc))
            return False
        return bool(session and session.is_active)


def _claim_time(claims: Dict[str, Any], name: str) -> datetime:
    return datetime.fromtimestamp(int(claims.get(name, 0)), tz=timezone.utc)
