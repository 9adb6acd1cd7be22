from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.errors import (
    AuthError,
    InfrastructureUnavailableError,
    NotFoundError,
    RateLimitedError,
)
from sessiongate.service.identity import IdentityStore
from sessiongate.service.issuer import IssuedTokens, RotatedTokens, TokenIssuer
from sessiongate.service.rate_limit import LoginRateLimiter
from sessiongate.service.revocation import RevocationManager
from sessiongate.service.security_log import SecurityEventKind, SecurityEventLogger
from sessiongate.service.tokens import TokenCodec
from sessiongate.service.verifier import AuthContext, Verifier
from sessiongate.storage.errors import StoreUnavailableError
from sessiongate.storage.models import (
    DeviceInfo,
    Identity,
    Role,
    SecurityEvent,
    Session,
    TokenClass,
    utcnow,
)
from sessiongate.storage.sessions import SessionRepository

logger = get_logger(__name__)

ANONYMOUS_ACTOR = "anonymous"


class LogoutReason(str, Enum):
    USER = "user_logout"
    SECURITY = "security_logout"
    ADMIN = "admin_logout"


@dataclass
class LoginResult:
    identity: Identity
    tokens: IssuedTokens


@dataclass
class LogoutResult:
    role: Optional[Role] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    all_devices: bool = False
    tokens_blacklisted: int = 0
    sessions_revoked: int = 0
    failures: int = 0


def claims_role(claims: Dict[str, Any]) -> Optional[Role]:
    try:
        return Role(claims.get("role"))
    except ValueError:
        return None


def browser_name(user_agent: str) -> str:
    """Coarse browser family for session listings."""
    ua = (user_agent or "").lower()
    if "edg/" in ua:
        return "Edge"
    if "chrome" in ua and "chromium" not in ua:
        return "Chrome"
    if "firefox" in ua:
        return "Firefox"
    if "safari" in ua:
        return "Safari"
    return "Unknown"


class AuthService:
    """Login, refresh, logout and request authentication built on the token core."""

    def __init__(
        self,
        settings: Settings,
        *,
        codec: TokenCodec,
        sessions: SessionRepository,
        identities: IdentityStore,
        issuer: TokenIssuer,
        verifier: Verifier,
        revocations: RevocationManager,
        security_log: SecurityEventLogger,
        rate_limiter: LoginRateLimiter,
    ) -> None:
        self.settings = settings
        self.codec = codec
        self.sessions = sessions
        self.identities = identities
        self.issuer = issuer
        self.verifier = verifier
        self.revocations = revocations
        self.security_log = security_log
        self.rate_limiter = rate_limiter

    @staticmethod
    def extract_token(
        authorization: Optional[str], cookie_token: Optional[str]
    ) -> Optional[str]:
        """Cookie first, ``Authorization: Bearer`` as fallback."""
        if cookie_token:
            return cookie_token
        if authorization:
            scheme, _, credential = authorization.strip().partition(" ")
            if scheme.lower() == "bearer" and credential.strip():
                return credential.strip()
        return None

    async def authenticate(
        self, authorization: Optional[str], cookie_token: Optional[str]
    ) -> Optional[AuthContext]:
        token = self.extract_token(authorization, cookie_token)
        if not token:
            return None
        return await self.verifier.verify(token, TokenClass.ACCESS)

    async def login(
        self, username: str, password: str, device: Optional[DeviceInfo] = None
    ) -> Optional[LoginResult]:
        """Returns None for bad credentials; raises when throttled or the store is down."""
        device = device or DeviceInfo()
        throttle_key = device.ip_address or username.strip().lower()
        try:
            limited = await self.rate_limiter.is_limited(throttle_key)
        except StoreUnavailableError as exc:
            raise InfrastructureUnavailableError("session store unavailable") from exc
        if limited:
            self.security_log.emit(
                SecurityEventKind.LOGIN_THROTTLED,
                ANONYMOUS_ACTOR,
                device=device,
                metadata={"username": username},
            )
            raise RateLimitedError(
                "too many failed login attempts",
                detail={"retry_after_seconds": self.rate_limiter.window_seconds},
            )

        identity = self._check_credentials(username, password)
        if identity is None or not identity.is_active:
            await self._record_failed_login(throttle_key)
            self.security_log.emit(
                SecurityEventKind.FAILED_LOGIN,
                identity.id if identity else ANONYMOUS_ACTOR,
                actor_role=identity.role if identity else None,
                device=device,
                metadata={
                    "username": username,
                    "reason": "inactive" if identity else "invalid_credentials",
                },
            )
            return None

        tokens = await self.issuer.issue_session_tokens(identity, device)
        try:
            await self.rate_limiter.clear(throttle_key)
        except StoreUnavailableError as exc:
            logger.warning("login_throttle_clear_failed", error=str(exc))
        self.security_log.emit(
            SecurityEventKind.LOGIN,
            identity.id,
            actor_role=identity.role,
            session_id=tokens.session_id,
            device=device,
        )
        return LoginResult(identity=identity, tokens=tokens)

    def _check_credentials(self, username: str, password: str) -> Optional[Identity]:
        if not username or not password:
            return None
        try:
            return self.identities.authenticate(username, password)
        except Exception as exc:
            logger.error(
                "credential_check_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InfrastructureUnavailableError("identity store unavailable") from exc

    async def _record_failed_login(self, throttle_key: str) -> None:
        try:
            await self.rate_limiter.record_failure(throttle_key)
        except StoreUnavailableError as exc:
            logger.warning("login_failure_count_failed", error=str(exc))

    async def refresh(
        self, refresh_token: Optional[str], device: Optional[DeviceInfo] = None
    ) -> Optional[RotatedTokens]:
        if not refresh_token:
            return None
        try:
            rotated = await self.issuer.rotate_access_token(refresh_token)
        except AuthError as exc:
            claims = self._signed_claims(refresh_token, TokenClass.REFRESH) or {}
            self.security_log.emit(
                SecurityEventKind.TOKEN_REFRESH_FAILED,
                str(claims.get("sub") or ANONYMOUS_ACTOR),
                actor_role=claims_role(claims),
                session_id=claims.get("sid"),
                device=device,
                metadata={"reason": exc.reason},
            )
            logger.info("token_refresh_denied", reason=exc.reason)
            return None
        except InfrastructureUnavailableError as exc:
            logger.warning("token_refresh_unavailable", error=exc.message)
            return None
        self.security_log.emit(
            SecurityEventKind.TOKEN_REFRESH,
            rotated.identity.id,
            actor_role=rotated.identity.role,
            session_id=rotated.session_id,
            device=device,
            metadata={"refresh_rotated": rotated.refresh_token is not None},
        )
        return rotated

    def _signed_claims(
        self, token: Optional[str], token_class: TokenClass
    ) -> Optional[Dict[str, Any]]:
        """Claims of a token we signed, expired or not; None otherwise."""
        if not token:
            return None
        try:
            return self.codec.verify(token, token_class, allow_expired=True)
        except AuthError:
            return None

    async def logout(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        *,
        all_devices: bool = False,
        reason: LogoutReason = LogoutReason.USER,
        device: Optional[DeviceInfo] = None,
    ) -> LogoutResult:
        """Blacklist the presented tokens and end their session.

        Only tokens with a valid signature are acted on. Store failures are
        counted in the result rather than raised, so the caller can still
        clear client credentials.
        """
        reason = LogoutReason(reason)
        result = LogoutResult(all_devices=all_devices)
        access_claims = self._signed_claims(access_token, TokenClass.ACCESS)
        refresh_claims = self._signed_claims(refresh_token, TokenClass.REFRESH)

        for raw, token_class, claims in (
            (access_token, TokenClass.ACCESS, access_claims),
            (refresh_token, TokenClass.REFRESH, refresh_claims),
        ):
            if raw is None or claims is None:
                continue
            try:
                if await self.revocations.blacklist_token(
                    raw, token_class, self.codec.remaining_ttl(claims)
                ):
                    result.tokens_blacklisted += 1
            except InfrastructureUnavailableError:
                result.failures += 1

        claims = access_claims or refresh_claims
        if claims is None:
            logger.info("logout_without_valid_token")
            return result
        result.role = claims_role(claims)
        result.user_id = str(claims.get("sub"))
        result.session_id = claims.get("sid")

        if result.session_id:
            try:
                if await self.revocations.revoke_session(
                    result.session_id, TokenClass.ACCESS
                ):
                    result.sessions_revoked += 1
            except InfrastructureUnavailableError:
                result.failures += 1

        if all_devices and result.role is None:
            logger.warning("logout_all_without_role", user_id=result.user_id)
            result.failures += 1
        elif all_devices:
            try:
                report = await self.revocations.revoke_all_sessions_for_user(
                    result.role, result.user_id
                )
                result.sessions_revoked = max(result.sessions_revoked, report.revoked)
                result.failures += report.failed + (0 if report.index_cleared else 1)
            except InfrastructureUnavailableError:
                result.failures += 1

        self.security_log.emit(
            SecurityEventKind.LOGOUT_ALL if all_devices else SecurityEventKind.LOGOUT,
            result.user_id,
            actor_role=result.role,
            session_id=result.session_id,
            device=device,
            metadata={
                "reason": reason.value,
                "sessions_revoked": result.sessions_revoked,
                "failures": result.failures,
            },
        )
        return result

    async def list_sessions(self, role: Role, user_id: str) -> List[Session]:
        """Live sessions of one identity, most recently used first."""
        try:
            session_ids = await self.sessions.list_ids_for_user(role, user_id)
            sessions = await self.sessions.get_many(session_ids)
        except StoreUnavailableError as exc:
            raise InfrastructureUnavailableError("session store unavailable") from exc
        now = utcnow()
        live = [
            sess
            for sess in sessions
            if sess.is_active
            and sess.role == role
            and sess.user_id == user_id
            and sess.expires_at > now
        ]
        return sorted(live, key=lambda sess: sess.last_used_at, reverse=True)

    async def revoke_own_session(
        self, ctx: AuthContext, session_id: str, device: Optional[DeviceInfo] = None
    ) -> None:
        """Terminate one of the caller's own sessions (e.g. a lost device)."""
        try:
            session = await self.sessions.get(session_id)
        except StoreUnavailableError as exc:
            raise InfrastructureUnavailableError("session store unavailable") from exc
        # Foreign sessions are reported as missing so ids cannot be enumerated
        if (
            session is None
            or session.role != ctx.role
            or session.user_id != ctx.user_id
        ):
            raise NotFoundError("session not found", detail={"session_id": session_id})
        await self.revocations.revoke_session(
            session_id, TokenClass.REFRESH, role=ctx.role, user_id=ctx.user_id
        )
        self.security_log.emit(
            SecurityEventKind.SESSION_REVOKED,
            ctx.user_id,
            actor_role=ctx.role,
            session_id=session_id,
            device=device,
            metadata={"current_session": session_id == ctx.session_id},
        )

    async def recent_security_events(
        self,
        role: Role,
        user_id: str,
        limit: int = 20,
        *,
        kinds: Optional[List[SecurityEventKind]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[SecurityEvent]:
        try:
            return await self.security_log.recent(
                user_id, limit, role=role, kinds=kinds, since=since, until=until
            )
        except StoreUnavailableError as exc:
            raise InfrastructureUnavailableError("session store unavailable") from exc
