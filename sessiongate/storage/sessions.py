from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

from sessiongate.logging import get_logger
from sessiongate.storage.common import (
    SESSION_PREFIX,
    KeyValueStore,
    session_key,
    user_sessions_key,
)
from sessiongate.storage.models import Role, Session

logger = get_logger(__name__)


class SessionRepository:
    """CRUD over session records and the per-user session index.

    Holds no policy; issuance, verification and revocation rules live in the
    services that call it.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def get(self, session_id: str) -> Optional[Session]:
        raw = await self.store.get(session_key(session_id))
        if raw is None:
            return None
        try:
            return Session.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            # Corrupted record - treat as missing
            logger.warning("session_record_corrupt", session_id=session_id, error=str(exc))
            return None

    async def get_many(self, session_ids: Iterable[str]) -> List[Session]:
        ids = list(session_ids)
        if not ids:
            return []
        results = await asyncio.gather(*(self.get(sid) for sid in ids))
        return [sess for sess in results if sess is not None]

    async def put(self, session: Session, ttl_seconds: int) -> None:
        await self.store.set(session_key(session.id), session.to_json(), ttl_seconds)

    async def patch(
        self,
        session_id: str,
        updates: Dict[str, Any],
        *,
        require: Optional[Dict[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """Atomically update fields of an existing record; False if absent or a precondition failed."""
        return await self.store.patch_json(
            session_key(session_id), updates, require=require, ttl_seconds=ttl_seconds
        )

    async def delete(self, session_id: str) -> bool:
        return bool(await self.store.delete(session_key(session_id)))

    async def list_ids_for_user(self, role: Role, user_id: str) -> Set[str]:
        return await self.store.smembers(user_sessions_key(role, user_id))

    async def add_id_to_user_index(
        self,
        role: Role,
        user_id: str,
        session_id: str,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        key = user_sessions_key(role, user_id)
        await self.store.sadd(key, session_id)
        if ttl_seconds is not None:
            await self.store.expire(key, ttl_seconds)

    async def touch_user_index(self, role: Role, user_id: str, ttl_seconds: int) -> bool:
        """Extend the index TTL without re-adding members."""
        return await self.store.expire(user_sessions_key(role, user_id), ttl_seconds)

    async def remove_id_from_user_index(
        self, role: Role, user_id: str, session_id: str
    ) -> None:
        await self.store.srem(user_sessions_key(role, user_id), session_id)

    async def delete_user_index(self, role: Role, user_id: str) -> bool:
        return bool(await self.store.delete(user_sessions_key(role, user_id)))

    async def iter_session_ids(self, *, batch_size: int = 500) -> AsyncIterator[str]:
        async for key in self.store.scan_iter(f"{SESSION_PREFIX}*", count=batch_size):
            yield key[len(SESSION_PREFIX):]
