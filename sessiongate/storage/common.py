"""Key namespaces and the store protocol shared by the Redis and memory backends."""

from __future__ import annotations

import hashlib
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Set

from sessiongate.storage.models import Role, TokenClass


class KeyValueStore(Protocol):
    async def ping(self) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def patch_json(
        self,
        key: str,
        updates: Dict[str, Any],
        *,
        require: Optional[Dict[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> bool: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def lpush_capped(
        self, key: str, value: str, max_len: int, ttl_seconds: Optional[int] = None
    ) -> None: ...

    async def lrange(self, key: str, start: int, stop: int) -> List[str]: ...

    async def incr(self, key: str, ttl_seconds: int) -> int: ...

    def scan_iter(self, pattern: str, *, count: int = 500) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


# ============================================================================
# KEY NAMESPACES
# ============================================================================

SESSION_PREFIX = "session:"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


# Identity ids are only unique within a role, so per-identity keys carry it
def user_sessions_key(role: Role, user_id: str) -> str:
    return f"user:{Role(role).value}:{user_id}:sessions"


def revocation_marker_key(session_id: str) -> str:
    return f"revoked:session:{session_id}"


def blacklist_key(raw_token: str, token_class: TokenClass) -> str:
    if TokenClass(token_class) is TokenClass.REFRESH:
        return f"blacklist:refresh:{raw_token}"
    return f"blacklist:{raw_token}"


def security_event_key(event_id: str) -> str:
    return f"security_log:{event_id}"


def user_security_log_key(user_id: str, role: Optional[Role] = None) -> str:
    # Actors without a known identity (failed logins, forged tokens) share one list
    if role is None:
        return f"user:{user_id}:security_log"
    return f"user:{Role(role).value}:{user_id}:security_log"


def login_attempts_key(identifier: str) -> str:
    digest = hashlib.sha256(identifier.encode()).hexdigest()
    return f"ratelimit:login:{digest}"


def token_digest(raw_token: str) -> str:
    """One-way digest stored on the session in place of the raw token."""
    return hashlib.sha256(raw_token.encode()).hexdigest()
