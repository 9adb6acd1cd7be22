from __future__ import annotations

from sessiongate.logging import get_logger
from sessiongate.storage.common import KeyValueStore, login_attempts_key

logger = get_logger(__name__)


class LoginRateLimiter:
    """Failed-login counter kept in the shared store so every instance agrees.

    The window starts at the first failure and the counter self-expires with it.
    """

    def __init__(
        self, store: KeyValueStore, *, max_attempts: int = 5, window_seconds: int = 900
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    async def attempts(self, identifier: str) -> int:
        raw = await self.store.get(login_attempts_key(identifier))
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    async def is_limited(self, identifier: str) -> bool:
        return await self.attempts(identifier) >= self.max_attempts

    async def record_failure(self, identifier: str) -> int:
        count = await self.store.incr(login_attempts_key(identifier), self.window_seconds)
        if count == self.max_attempts:
            logger.warning(
                "login_lockout_started",
                attempts=count,
                window_seconds=self.window_seconds,
            )
        return count

    async def clear(self, identifier: str) -> None:
        await self.store.delete(login_attempts_key(identifier))
