from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from sessiongate.logging import get_logger
from sessiongate.storage.errors import StoreUnavailableError

logger = get_logger(__name__)


class RedisKVStore:
    """Thin Redis wrapper used for sessions, markers, blacklists and audit events.

    Every command is bounded by ``operation_timeout``; a timeout or connection
    failure surfaces as :class:`StoreUnavailableError` so callers can fail closed.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # Atomic read-check-merge-write of a JSON document; keeps the TTL unless a new one is given
    _PATCH_JSON_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local doc = cjson.decode(raw)
local required = cjson.decode(ARGV[2])
for k, v in pairs(required) do
  if doc[k] ~= v then
    return 0
  end
end
local updates = cjson.decode(ARGV[1])
for k, v in pairs(updates) do
  doc[k] = v
end
local ttl = tonumber(ARGV[3])
if ttl and ttl > 0 then
  redis.call('SET', KEYS[1], cjson.encode(doc), 'EX', ttl)
else
  redis.call('SET', KEYS[1], cjson.encode(doc), 'KEEPTTL')
end
return 1
"""

    # Counter with a window that starts at the first hit; a key left without a TTL gets one
    _INCR_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    def __init__(
        self,
        redis_url: str,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )
        self._patch_json = self.client.register_script(self._PATCH_JSON_SCRIPT)
        self._incr = self.client.register_script(self._INCR_SCRIPT)

    async def _call(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("store_timeout", op=op, timeout=self.operation_timeout)
            raise StoreUnavailableError(f"redis {op} timed out", {"op": op}) from exc
        except (RedisError, OSError) as exc:
            logger.warning("store_error", op=op, error=str(exc))
            raise StoreUnavailableError(f"redis {op} failed", {"op": op}) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup with a short-lived sync client."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.client.ping()))

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None:
            await self._call("set", self.client.set(key, value, ex=max(1, int(ttl_seconds))))
        else:
            await self._call("set", self.client.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self.client.delete(*keys)))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self.client.exists(key)))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._call("expire", self.client.expire(key, max(1, int(ttl_seconds)))))

    async def patch_json(
        self,
        key: str,
        updates: Dict[str, Any],
        *,
        require: Optional[Dict[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        result = await self._call(
            "patch_json",
            self._patch_json(
                keys=[key],
                args=[
                    json.dumps(updates),
                    json.dumps(require or {}),
                    max(1, int(ttl_seconds)) if ttl_seconds is not None else 0,
                ],
            ),
        )
        return bool(int(result))

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self._call("sadd", self.client.sadd(key, *members)))

    async def srem(self, key: str, *members: str) -> int:
        return int(await self._call("srem", self.client.srem(key, *members)))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self._call("smembers", self.client.smembers(key)))

    async def lpush_capped(
        self, key: str, value: str, max_len: int, ttl_seconds: Optional[int] = None
    ) -> None:
        pipe = self.client.pipeline()
        pipe.lpush(key, value)
        pipe.ltrim(key, 0, max_len - 1)
        if ttl_seconds is not None:
            pipe.expire(key, max(1, int(ttl_seconds)))
        await self._call("lpush_capped", pipe.execute())

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self._call("lrange", self.client.lrange(key, start, stop)))

    async def incr(self, key: str, ttl_seconds: int) -> int:
        result = await self._call(
            "incr", self._incr(keys=[key], args=[max(1, int(ttl_seconds))])
        )
        return int(result)

    async def scan_iter(self, pattern: str, *, count: int = 500) -> AsyncIterator[str]:
        try:
            async for key in self.client.scan_iter(match=pattern, count=count):
                yield key
        except (RedisError, OSError) as exc:
            logger.warning("store_error", op="scan", error=str(exc))
            raise StoreUnavailableError("redis scan failed", {"op": "scan"}) from exc

    async def close(self) -> None:
        await self.client.aclose()
