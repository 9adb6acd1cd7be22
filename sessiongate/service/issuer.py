from __future__ import annotations

import asyncio
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.cutoff import next_cutoff, seconds_until
from sessiongate.service.errors import (
    BlacklistedTokenError,
    InactiveIdentityError,
    InfrastructureUnavailableError,
    RevokedSessionError,
    SessionMismatchError,
)
from sessiongate.service.identity import IdentityStore, identity_claims
from sessiongate.service.revocation import RevocationManager
from sessiongate.service.tokens import TokenCodec
from sessiongate.storage.common import token_digest
from sessiongate.storage.errors import StoreUnavailableError
from sessiongate.storage.models import (
    DeviceInfo,
    Identity,
    Session,
    TokenClass,
    format_dt,
    utcnow,
)
from sessiongate.storage.sessions import SessionRepository

logger = get_logger(__name__)


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    session_id: str
    session: Session


@dataclass
class RotatedTokens:
    access_token: str
    session_id: str
    identity: Identity
    expires_at: datetime
    # Set only when refresh tokens rotate as well
    refresh_token: Optional[str] = None


def new_session_id() -> str:
    return secrets.token_hex(16)


class TokenIssuer:
    """Creates sessions with their token pair and rotates access tokens."""

    def __init__(
        self,
        settings: Settings,
        codec: TokenCodec,
        sessions: SessionRepository,
        revocations: RevocationManager,
        identities: IdentityStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.codec = codec
        self.sessions = sessions
        self.revocations = revocations
        self.identities = identities
        self._clock = clock

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def _expiry(self) -> tuple[datetime, datetime, int]:
        now = self._clock()
        expires_at = next_cutoff(now, self.settings.cutoff_time, self.settings.tz)
        return now, expires_at, seconds_until(expires_at, now)

    def _claims(self, identity: Identity, session_id: str) -> Dict[str, Any]:
        claims = identity_claims(identity)
        claims["sid"] = session_id
        return claims

    async def issue_session_tokens(
        self, identity: Identity, device: Optional[DeviceInfo] = None
    ) -> IssuedTokens:
        if not identity.is_active:
            raise InactiveIdentityError("identity is not active")
        device = device or DeviceInfo()
        session_id = new_session_id()
        claims = self._claims(identity, session_id)
        access_token = self.codec.issue(claims, TokenClass.ACCESS, self.access_ttl)
        refresh_token = self.codec.issue(claims, TokenClass.REFRESH, self.refresh_ttl)

        now, expires_at, ttl = self._expiry()
        session = Session(
            id=session_id,
            user_id=identity.id,
            role=identity.role,
            access_token_hash=token_digest(access_token),
            refresh_token_hash=token_digest(refresh_token),
            created_at=now,
            last_used_at=now,
            expires_at=expires_at,
            user_agent=device.user_agent,
            ip_address=device.ip_address,
        )
        try:
            # Independent keys, written concurrently; no multi-key transaction
            await asyncio.gather(
                self.sessions.put(session, ttl),
                self.sessions.add_id_to_user_index(
                    identity.role, identity.id, session_id, ttl
                ),
            )
        except StoreUnavailableError as exc:
            logger.error(
                "session_create_failed",
                user_id=identity.id,
                session_id=session_id,
                error=str(exc),
            )
            raise InfrastructureUnavailableError("session store unavailable") from exc

        logger.info(
            "session_created",
            user_id=identity.id,
            role=identity.role.value,
            session_id=session_id,
            expires_at=format_dt(expires_at),
        )
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session_id,
            session=session,
        )

    async def rotate_access_token(self, refresh_token: str) -> RotatedTokens:
        """Mint a new access token for the session behind ``refresh_token``.

        Raises an :class:`AuthError` subclass on any denial and
        :class:`InfrastructureUnavailableError` when the store cannot answer.
        """
        claims = self.codec.verify(refresh_token, TokenClass.REFRESH)
        session_id = str(claims.get("sid") or "")
        if not session_id:
            raise RevokedSessionError("token carries no session")
        try:
            return await self._rotate(refresh_token, claims, session_id)
        except StoreUnavailableError as exc:
            logger.error("token_rotation_store_failed", session_id=session_id, error=str(exc))
            raise InfrastructureUnavailableError("session store unavailable") from exc

    async def _rotate(
        self, refresh_token: str, claims: Dict[str, Any], session_id: str
    ) -> RotatedTokens:
        blacklisted, revoked, session = await asyncio.gather(
            self.revocations.is_blacklisted(refresh_token, TokenClass.REFRESH),
            self.revocations.is_session_revoked(session_id),
            self.sessions.get(session_id),
        )
        if blacklisted:
            raise BlacklistedTokenError("refresh token has been revoked")
        if revoked:
            raise RevokedSessionError("session has been revoked")
        if session is None or not session.is_active:
            raise RevokedSessionError("session is no longer active")
        presented_hash = token_digest(refresh_token)
        if session.user_id != str(claims.get("sub")) or not hmac.compare_digest(
            session.refresh_token_hash, presented_hash
        ):
            raise SessionMismatchError("refresh token does not match session")

        identity = self._load_identity(session)
        new_claims = self._claims(identity, session_id)
        access_token = self.codec.issue(new_claims, TokenClass.ACCESS, self.access_ttl)
        now, expires_at, ttl = self._expiry()
        updates: Dict[str, Any] = {
            "access_token_hash": token_digest(access_token),
            "last_used_at": format_dt(now),
            "expires_at": format_dt(expires_at),
        }
        new_refresh: Optional[str] = None
        if self.settings.rotate_refresh_tokens:
            new_refresh = self.codec.issue(new_claims, TokenClass.REFRESH, self.refresh_ttl)
            updates["refresh_token_hash"] = token_digest(new_refresh)

        # Guarded on the presented refresh hash so a concurrent logout or
        # rotation wins and the inactive flag is never overwritten
        applied = await self.sessions.patch(
            session_id,
            updates,
            require={"is_active": True, "refresh_token_hash": presented_hash},
            ttl_seconds=ttl,
        )
        if not applied:
            raise SessionMismatchError("session changed during rotation")
        await self.sessions.touch_user_index(session.role, session.user_id, ttl)

        if new_refresh is not None:
            await self.revocations.blacklist_token(
                refresh_token, TokenClass.REFRESH, self.codec.remaining_ttl(claims)
            )

        logger.info(
            "access_token_rotated",
            user_id=session.user_id,
            session_id=session_id,
            refresh_rotated=new_refresh is not None,
        )
        return RotatedTokens(
            access_token=access_token,
            session_id=session_id,
            identity=identity,
            expires_at=expires_at,
            refresh_token=new_refresh,
        )

    def _load_identity(self, session: Session) -> Identity:
        try:
            identity = self.identities.get_identity(session.role, session.user_id)
        except Exception as exc:
            logger.error(
                "identity_lookup_failed",
                user_id=session.user_id,
                role=session.role.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InfrastructureUnavailableError("identity store unavailable") from exc
        if identity is None or not identity.is_active:
            raise InactiveIdentityError("identity is no longer active")
        return identity
