"""Unit tests for the Redis store wrapper using a mocked client."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sessiongate.storage.errors import StoreUnavailableError
from sessiongate.storage.redis_store import RedisKVStore


@pytest.fixture
def client():
    client = MagicMock()
    client.register_script.return_value = AsyncMock(return_value=1)
    return client


@pytest.fixture
def store(client):
    return RedisKVStore("redis://test", operation_timeout=0.05, client=client)


class TestCommands:
    async def test_set_with_ttl_uses_ex(self, store, client):
        client.set = AsyncMock(return_value=True)

        await store.set("k", "v", ttl_seconds=30)

        client.set.assert_awaited_once_with("k", "v", ex=30)

    async def test_ttl_is_at_least_one_second(self, store, client):
        client.set = AsyncMock(return_value=True)

        await store.set("k", "v", ttl_seconds=0)

        client.set.assert_awaited_once_with("k", "v", ex=1)

    async def test_exists_returns_bool(self, store, client):
        client.exists = AsyncMock(return_value=1)

        assert await store.exists("k") is True

    async def test_patch_json_passes_updates_and_preconditions(self, store, client):
        script = client.register_script.return_value

        applied = await store.patch_json(
            "session:1", {"is_active": False}, require={"is_active": True}
        )

        assert applied is True
        kwargs = script.await_args.kwargs
        assert kwargs["keys"] == ["session:1"]
        updates, require, ttl = kwargs["args"]
        assert json.loads(updates) == {"is_active": False}
        assert json.loads(require) == {"is_active": True}
        assert ttl == 0

    async def test_patch_json_reports_failed_precondition(self, store, client):
        client.register_script.return_value.return_value = 0

        assert await store.patch_json("session:1", {"a": 1}, ttl_seconds=60) is False

    async def test_incr_is_one_script_call(self, store, client):
        script = client.register_script.return_value
        script.return_value = 3
        client.incr = AsyncMock()
        client.expire = AsyncMock()

        assert await store.incr("c", 900) == 3

        assert script.await_args.kwargs == {"keys": ["c"], "args": [900]}
        client.incr.assert_not_called()
        client.expire.assert_not_called()

    async def test_delete_without_keys_skips_round_trip(self, store, client):
        client.delete = AsyncMock()

        assert await store.delete() == 0
        client.delete.assert_not_called()


class TestFailures:
    async def test_timeout_becomes_store_unavailable(self, store, client):
        async def slow_get(key):
            await asyncio.sleep(1)

        client.get = slow_get

        with pytest.raises(StoreUnavailableError):
            await store.get("k")

    async def test_connection_error_becomes_store_unavailable(self, store, client):
        client.exists = AsyncMock(side_effect=RedisConnectionError("refused"))

        with pytest.raises(StoreUnavailableError) as excinfo:
            await store.exists("k")

        assert excinfo.value.detail == {"op": "exists"}

    async def test_scan_errors_are_wrapped(self, store, client):
        async def broken_scan(**kwargs):
            raise RedisConnectionError("gone")
            yield  # pragma: no cover

        client.scan_iter = broken_scan

        with pytest.raises(StoreUnavailableError):
            async for _ in store.scan_iter("session:*"):
                pass
