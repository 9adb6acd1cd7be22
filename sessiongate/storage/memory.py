from __future__ import annotations

import fnmatch
import json
import threading
import time
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Set, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from sessiongate.logging import get_logger
from sessiongate.storage.models import Identity, Role


class MemoryKVStore:
    """In-process stand-in for Redis with per-key TTLs.

    Used by tests and local development; mirrors the async surface of
    ``RedisKVStore`` so services never branch on the backend.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        # key -> (value, expires_at epoch seconds or None)
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        # RLock so compound operations can nest helper calls
        self._data_lock = threading.RLock()

    def _deadline(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + max(1, int(ttl_seconds))

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, ``None`` if missing or persistent."""
        with self._data_lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return entry[1] - self._clock()

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry[0], str):
                return None
            return entry[0]

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._data_lock:
            self._data[key] = (value, self._deadline(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._data_lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._data_lock:
            return self._live(key) is not None

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._data_lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._deadline(ttl_seconds))
            return True

    async def patch_json(
        self,
        key: str,
        updates: Dict[str, Any],
        *,
        require: Optional[Dict[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        with self._data_lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry[0], str):
                return False
            doc = json.loads(entry[0])
            for field, expected in (require or {}).items():
                if doc.get(field) != expected:
                    return False
            doc.update(updates)
            expires_at = self._deadline(ttl_seconds) if ttl_seconds is not None else entry[1]
            self._data[key] = (json.dumps(doc, separators=(",", ":")), expires_at)
            return True

    async def sadd(self, key: str, *members: str) -> int:
        with self._data_lock:
            entry = self._live(key)
            current: Set[str] = set(entry[0]) if entry else set()
            before = len(current)
            current.update(members)
            self._data[key] = (current, entry[1] if entry else None)
            return len(current) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._data_lock:
            entry = self._live(key)
            if entry is None:
                return 0
            current: Set[str] = set(entry[0])
            before = len(current)
            current.difference_update(members)
            if current:
                self._data[key] = (current, entry[1])
            else:
                self._data.pop(key, None)
            return before - len(current)

    async def smembers(self, key: str) -> Set[str]:
        with self._data_lock:
            entry = self._live(key)
            return set(entry[0]) if entry else set()

    async def lpush_capped(
        self, key: str, value: str, max_len: int, ttl_seconds: Optional[int] = None
    ) -> None:
        with self._data_lock:
            entry = self._live(key)
            items: List[str] = list(entry[0]) if entry else []
            items.insert(0, value)
            del items[max_len:]
            expires_at = (
                self._deadline(ttl_seconds)
                if ttl_seconds is not None
                else (entry[1] if entry else None)
            )
            self._data[key] = (items, expires_at)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._data_lock:
            entry = self._live(key)
            if entry is None:
                return []
            items = list(entry[0])
            end = None if stop == -1 else stop + 1
            return items[start:end]

    async def incr(self, key: str, ttl_seconds: int) -> int:
        with self._data_lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = ("1", self._deadline(ttl_seconds))
                return 1
            count = int(entry[0]) + 1
            deadline = entry[1] if entry[1] is not None else self._deadline(ttl_seconds)
            self._data[key] = (str(count), deadline)
            return count

    async def scan_iter(self, pattern: str, *, count: int = 500) -> AsyncIterator[str]:
        with self._data_lock:
            keys = [key for key in list(self._data) if self._live(key) is not None]
        for key in keys:
            if fnmatch.fnmatchcase(key, pattern):
                yield key

    async def close(self) -> None:
        return None


class MemoryIdentityStore:
    """Identity lookup backed by process memory, for development and tests."""

    def __init__(self, identities: Iterable[Identity] = ()) -> None:
        self._identities: Dict[Tuple[Role, str], Identity] = {}
        self._passwords: Dict[str, Tuple[Role, str, str]] = {}
        self._lock = threading.Lock()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        for identity in identities:
            self.add(identity)

    def add(self, identity: Identity, password: Optional[str] = None) -> Identity:
        with self._lock:
            self._identities[(identity.role, identity.id)] = identity
            if password is not None and identity.username:
                self._passwords[identity.username.lower()] = (
                    identity.role,
                    identity.id,
                    self._pwd_hasher.hash(password),
                )
        return identity

    def deactivate(self, role: Role, identity_id: str) -> None:
        with self._lock:
            current = self._identities.get((role, identity_id))
            if current:
                self._identities[(role, identity_id)] = replace(current, is_active=False)

    def get_identity(self, role: Role, identity_id: str) -> Optional[Identity]:
        with self._lock:
            return self._identities.get((Role(role), str(identity_id)))

    def authenticate(self, username: str, password: str) -> Optional[Identity]:
        with self._lock:
            record = self._passwords.get(username.strip().lower())
        if not record:
            return None
        role, identity_id, pwd_hash = record
        try:
            self._pwd_hasher.verify(pwd_hash, password)
        except (VerifyMismatchError, InvalidHash):
            return None
        return self.get_identity(role, identity_id)
