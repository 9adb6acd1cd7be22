from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sessiongate.logging import AUDIT_EVENT, get_logger
from sessiongate.service.background import BackgroundTasks
from sessiongate.storage.common import (
    KeyValueStore,
    security_event_key,
    user_security_log_key,
)
from sessiongate.storage.models import DeviceInfo, Role, SecurityEvent

logger = get_logger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SecurityEventKind(str, Enum):
    LOGIN = "login"
    FAILED_LOGIN = "failed_login"
    LOGIN_THROTTLED = "login_throttled"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    TOKEN_REFRESH = "token_refresh"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    SESSION_REVOKED = "session_revoked"


class SecurityEventLogger:
    """Append-only audit trail of authentication events.

    Writes never fail the surrounding auth operation: every store error is
    logged and dropped.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_days: int = 30,
        user_index_max: int = 100,
        background: Optional[BackgroundTasks] = None,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_days * 24 * 60 * 60
        self.user_index_max = user_index_max
        self.background = background or BackgroundTasks()

    async def record(self, event: SecurityEvent) -> Optional[str]:
        """Persist ``event``; returns its id, or None if the write failed."""
        logger.info(
            AUDIT_EVENT,
            event_id=event.id,
            kind=event.kind,
            actor_id=event.actor_id,
            actor_role=event.actor_role,
            session_id=event.session_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            metadata=event.metadata,
        )
        try:
            await self.store.set(
                security_event_key(event.id), event.to_json(), self.ttl_seconds
            )
            await self.store.lpush_capped(
                user_security_log_key(event.actor_id, event.actor_role),
                event.id,
                self.user_index_max,
                self.ttl_seconds,
            )
        except Exception as exc:
            logger.warning(
                "security_event_persist_failed",
                event_id=event.id,
                kind=event.kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return event.id

    def emit(
        self,
        kind: SecurityEventKind,
        actor_id: str,
        *,
        actor_role: Optional[Role] = None,
        session_id: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        """Build an event and record it without blocking the caller."""
        device = device or DeviceInfo()
        event = SecurityEvent(
            kind=SecurityEventKind(kind).value,
            actor_id=str(actor_id),
            actor_role=Role(actor_role).value if actor_role is not None else None,
            session_id=session_id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            metadata=dict(metadata or {}),
        )
        self.background.spawn(self.record(event), name=f"security_event:{event.kind}")
        return event

    async def recent(
        self,
        user_id: str,
        limit: int = 20,
        *,
        role: Optional[Role] = None,
        kinds: Optional[Iterable[SecurityEventKind]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[SecurityEvent]:
        """Most recent events for ``user_id``, newest first; skips expired entries.

        ``kinds``, ``since`` and ``until`` narrow the capped per-user list
        before ``limit`` applies. Bounds are inclusive.
        """
        since, until = as_utc(since), as_utc(until)
        limit = max(1, min(limit, self.user_index_max))
        wanted = {SecurityEventKind(kind).value for kind in kinds} if kinds else None
        filtered = wanted is not None or since is not None or until is not None
        fetch = self.user_index_max if filtered else limit
        event_ids = await self.store.lrange(
            user_security_log_key(user_id, role), 0, fetch - 1
        )
        if not event_ids:
            return []
        raws = await asyncio.gather(
            *(self.store.get(security_event_key(eid)) for eid in event_ids)
        )
        events: List[SecurityEvent] = []
        for raw in raws:
            if raw is None:
                continue
            try:
                event = SecurityEvent.from_json(raw)
            except (ValueError, KeyError, TypeError):
                continue
            if wanted is not None and event.kind not in wanted:
                continue
            if since is not None and event.timestamp < since:
                continue
            if until is not None and event.timestamp > until:
                continue
            events.append(event)
            if len(events) >= limit:
                break
        return events
