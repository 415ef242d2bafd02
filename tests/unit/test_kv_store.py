"""Tests for keyed state store backends."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from redis.exceptions import WatchError

from chatrelay.services.abuse_record import AbuseRecord
from chatrelay.services.kv_store import MemoryKeyValueStore, RedisKeyValueStore, StoreUnavailable
from chatrelay.services.record_store import decode_record


@pytest.fixture
def redis_store():
    """Redis store wired to a mocked client."""
    store = RedisKeyValueStore()
    store._available = True
    store._client = AsyncMock()
    return store


def _pipeline(client, current):
    pipe = MagicMock()
    pipe.watch = AsyncMock()
    pipe.get = AsyncMock(return_value=current)
    pipe.execute = AsyncMock(return_value=[True])
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=pipe)
    context.__aexit__ = AsyncMock(return_value=False)
    client.pipeline = MagicMock(return_value=context)
    return pipe


@pytest.mark.asyncio
async def test_memory_store_get_set():
    store = MemoryKeyValueStore()

    assert await store.get("missing") is None
    await store.set("key", "value")
    assert await store.get("key") == "value"


@pytest.mark.asyncio
async def test_memory_store_compare_and_set():
    store = MemoryKeyValueStore()

    assert await store.compare_and_set("key", None, "v1") is True
    assert await store.compare_and_set("key", None, "v2") is False
    assert await store.compare_and_set("key", "v1", "v2") is True
    assert await store.get("key") == "v2"


@pytest.mark.asyncio
async def test_json_helpers():
    store = MemoryKeyValueStore()

    await store.set_json("list", ["a", "b"])
    assert await store.get_json("list") == ["a", "b"]

    await store.set("broken", "{not json")
    assert await store.get_json("broken") is None


@pytest.mark.asyncio
async def test_redis_store_unavailable_when_not_connected():
    store = RedisKeyValueStore()

    with pytest.raises(StoreUnavailable) as exc_info:
        await store.get("key")
    assert exc_info.value.operation == "read"

    with pytest.raises(StoreUnavailable) as exc_info:
        await store.set("key", "value")
    assert exc_info.value.operation == "write"


@pytest.mark.asyncio
async def test_redis_store_get_absent_is_none(redis_store):
    redis_store._client.get.return_value = None
    assert await redis_store.get("key") is None


@pytest.mark.asyncio
async def test_redis_store_get_decodes_utf8(redis_store):
    redis_store._client.get.return_value = "ключ".encode("utf-8")
    assert await redis_store.get("key") == "ключ"


@pytest.mark.asyncio
async def test_redis_store_invalid_utf8_is_malformed_not_unavailable(redis_store):
    redis_store._client.get.return_value = b"\xff\xfe{\"v\":1}"

    raw = await redis_store.get("record:203.0.113.7")

    assert raw is not None
    assert decode_record(raw) == AbuseRecord()


@pytest.mark.asyncio
async def test_redis_store_set_encodes_bytes(redis_store):
    await redis_store.set("key", "value")
    redis_store._client.set.assert_awaited_once_with("key", b"value")


@pytest.mark.asyncio
async def test_redis_store_get_error_raises(redis_store):
    redis_store._client.get.side_effect = ConnectionError("boom")

    with pytest.raises(StoreUnavailable) as exc_info:
        await redis_store.get("key")
    assert exc_info.value.operation == "read"


@pytest.mark.asyncio
async def test_redis_store_set_error_raises(redis_store):
    redis_store._client.set.side_effect = TimeoutError("slow")

    with pytest.raises(StoreUnavailable) as exc_info:
        await redis_store.set("key", "value")
    assert exc_info.value.operation == "write"


@pytest.mark.asyncio
async def test_redis_compare_and_set_writes_when_unchanged(redis_store):
    pipe = _pipeline(redis_store._client, current=b"old")

    assert await redis_store.compare_and_set("key", "old", "new") is True
    pipe.watch.assert_awaited_once_with("key")
    pipe.multi.assert_called_once()
    pipe.set.assert_called_once_with("key", b"new")
    pipe.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_compare_and_set_rejects_changed_value(redis_store):
    pipe = _pipeline(redis_store._client, current=b"someone-else")

    assert await redis_store.compare_and_set("key", "old", "new") is False
    pipe.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_redis_compare_and_set_watch_error(redis_store):
    pipe = _pipeline(redis_store._client, current=b"old")
    pipe.execute.side_effect = WatchError("changed")

    assert await redis_store.compare_and_set("key", "old", "new") is False


@pytest.mark.asyncio
async def test_redis_connect_failure():
    """Test that connect reports an unreachable server."""
    store = RedisKeyValueStore()
    with patch("chatrelay.services.kv_store.redis.Redis") as mock_redis:
        mock_redis.return_value.ping = AsyncMock(side_effect=Exception("Connection failed"))

        with pytest.raises(StoreUnavailable):
            await store.connect()
    assert store.is_available is False
