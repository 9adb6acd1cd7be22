from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.cutoff import next_cutoff, seconds_until
from sessiongate.service.errors import InfrastructureUnavailableError
from sessiongate.storage.common import (
    KeyValueStore,
    blacklist_key,
    revocation_marker_key,
)
from sessiongate.storage.errors import StoreUnavailableError
from sessiongate.storage.models import Role, TokenClass, utcnow
from sessiongate.storage.sessions import SessionRepository

logger = get_logger(__name__)

REVOKED_VALUE = "revoked"


@dataclass
class RevocationReport:
    """Outcome of a logout-all-devices batch; partial failures are not rolled back."""

    role: Role
    user_id: str
    session_ids: List[str] = field(default_factory=list)
    revoked: int = 0
    failed: int = 0
    index_cleared: bool = False

    @property
    def complete(self) -> bool:
        return self.failed == 0 and self.index_cleared


class RevocationManager:
    """Marks sessions and individual tokens as invalid."""

    def __init__(
        self,
        store: KeyValueStore,
        sessions: SessionRepository,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self._clock = clock

    def cutoff_ttl(self) -> int:
        """Seconds until the next daily cutoff; used for markers and session records."""
        now = self._clock()
        return seconds_until(
            next_cutoff(now, self.settings.cutoff_time, self.settings.tz), now
        )

    async def revoke_session(
        self,
        session_id: str,
        token_class: TokenClass,
        *,
        role: Optional[Role] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        """Revoke one session; returns whether a live record was touched.

        ``access`` soft-revokes: the record stays with ``is_active=False`` until
        its TTL. ``refresh`` terminates: the record and its index entry go.
        Both are idempotent.
        """
        token_class = TokenClass(token_class)
        try:
            if token_class is TokenClass.ACCESS:
                changed = await self.sessions.patch(session_id, {"is_active": False})
            else:
                session = await self.sessions.get(session_id)
                if session is not None:
                    role, user_id = session.role, session.user_id
                changed = await self.sessions.delete(session_id)
                if role is not None and user_id:
                    await self.sessions.remove_id_from_user_index(role, user_id, session_id)
        except StoreUnavailableError as exc:
            logger.error(
                "session_revoke_failed",
                session_id=session_id,
                token_class=token_class.value,
                error=str(exc),
            )
            raise InfrastructureUnavailableError("session store unavailable") from exc
        logger.info(
            "session_revoked",
            session_id=session_id,
            token_class=token_class.value,
            changed=changed,
        )
        return changed

    async def revoke_all_sessions_for_user(
        self, role: Role, user_id: str
    ) -> RevocationReport:
        """Write a revocation marker per session id, then drop the user's index.

        Session records are not read; the marker alone fails later verifications.
        """
        try:
            session_ids = sorted(await self.sessions.list_ids_for_user(role, user_id))
        except StoreUnavailableError as exc:
            logger.error("revoke_all_list_failed", user_id=user_id, error=str(exc))
            raise InfrastructureUnavailableError("session store unavailable") from exc

        report = RevocationReport(role=Role(role), user_id=user_id, session_ids=session_ids)
        ttl = self.cutoff_ttl()
        results = await asyncio.gather(
            *(
                self.store.set(revocation_marker_key(sid), REVOKED_VALUE, ttl)
                for sid in session_ids
            ),
            return_exceptions=True,
        )
        for sid, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                report.failed += 1
                logger.warning(
                    "revocation_marker_failed",
                    user_id=user_id,
                    session_id=sid,
                    error_type=type(result).__name__,
                    error=str(result),
                )
            else:
                report.revoked += 1

        try:
            await self.sessions.delete_user_index(role, user_id)
            report.index_cleared = True
        except StoreUnavailableError as exc:
            logger.warning("user_index_delete_failed", user_id=user_id, error=str(exc))

        log = logger.info if report.complete else logger.warning
        log(
            "user_sessions_revoked",
            role=Role(role).value,
            user_id=user_id,
            sessions=len(session_ids),
            revoked=report.revoked,
            failed=report.failed,
            index_cleared=report.index_cleared,
        )
        return report

    async def blacklist_token(
        self, raw_token: str, token_class: TokenClass, remaining_ttl: int
    ) -> bool:
        """Deny ``raw_token`` for the rest of its natural life; no-op once expired."""
        if not raw_token or remaining_ttl <= 0:
            return False
        token_class = TokenClass(token_class)
        try:
            await self.store.set(
                blacklist_key(raw_token, token_class), REVOKED_VALUE, int(remaining_ttl)
            )
        except StoreUnavailableError as exc:
            logger.error(
                "token_blacklist_failed", token_class=token_class.value, error=str(exc)
            )
            raise InfrastructureUnavailableError("session store unavailable") from exc
        return True

    async def is_blacklisted(self, raw_token: str, token_class: TokenClass) -> bool:
        return await self.store.exists(blacklist_key(raw_token, TokenClass(token_class)))

    async def is_session_revoked(self, session_id: str) -> bool:
        return await self.store.exists(revocation_marker_key(session_id))
