from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List

from sessiongate.logging import get_logger
from sessiongate.storage.errors import StoreUnavailableError
from sessiongate.storage.models import utcnow
from sessiongate.storage.sessions import SessionRepository

logger = get_logger(__name__)


@dataclass
class SweepResult:
    scanned: int = 0
    removed: int = 0
    failed: int = 0


class CleanupSweep:
    """Deletes session records whose ``expires_at`` has passed.

    Store TTLs are the primary expiry mechanism; this corrects drift from
    clock skew or records written with a bad TTL.
    """

    def __init__(
        self,
        sessions: SessionRepository,
        *,
        batch_size: int = 500,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.batch_size = max(1, batch_size)
        self._clock = clock

    async def run(self) -> SweepResult:
        result = SweepResult()
        now = self._clock()
        batch: List[str] = []
        async for session_id in self.sessions.iter_session_ids(batch_size=self.batch_size):
            batch.append(session_id)
            if len(batch) >= self.batch_size:
                await self._sweep_batch(batch, now, result)
                batch = []
        if batch:
            await self._sweep_batch(batch, now, result)
        logger.info(
            "session_sweep_complete",
            scanned=result.scanned,
            removed=result.removed,
            failed=result.failed,
        )
        return result

    async def _sweep_batch(
        self, session_ids: List[str], now: datetime, result: SweepResult
    ) -> None:
        outcomes = await asyncio.gather(
            *(self._sweep_one(sid, now) for sid in session_ids),
            return_exceptions=True,
        )
        result.scanned += len(session_ids)
        for sid, outcome in zip(session_ids, outcomes):
            if isinstance(outcome, StoreUnavailableError):
                result.failed += 1
                logger.warning("session_sweep_item_failed", session_id=sid, error=str(outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome:
                result.removed += 1

    async def _sweep_one(self, session_id: str, now: datetime) -> bool:
        session = await self.sessions.get(session_id)
        if session is None or session.expires_at > now:
            return False
        await self.sessions.delete(session_id)
        await self.sessions.remove_id_from_user_index(
            session.role, session.user_id, session_id
        )
        logger.debug(
            "session_swept",
            session_id=session_id,
            user_id=session.user_id,
            expired_at=session.expires_at.isoformat(),
        )
        return True
