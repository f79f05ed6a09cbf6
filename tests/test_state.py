"""
Unit tests for persisted engine state.
"""

import json
from unittest.mock import AsyncMock

import pytest

from shared.state import (
    CACHE_CREATED, LAST_PROCESSED_COMMIT, EngineState, JsonFileStateStore,
    MemoryStateStore, RedisStateStore
)


class TestMemoryStateStore:
    """Test cases for MemoryStateStore."""

    @pytest.mark.asyncio
    async def test_get_set_delete(self):
        store = MemoryStateStore()

        await store.set("key", "value")
        assert await store.get("key") == "value"

        await store.set("key", None)
        assert await store.get("key", "fallback") == "fallback"


class TestJsonFileStateStore:
    """Test cases for JsonFileStateStore."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "state" / "state.json"

        await JsonFileStateStore(str(path)).set(LAST_PROCESSED_COMMIT, "abc1234")

        assert await JsonFileStateStore(str(path)).get(LAST_PROCESSED_COMMIT) == "abc1234"
        assert json.loads(path.read_text())[LAST_PROCESSED_COMMIT] == "abc1234"

    @pytest.mark.asyncio
    async def test_none_removes_key(self, tmp_path):
        store = JsonFileStateStore(str(tmp_path / "state.json"))
        await store.set("key", "value")

        await store.set("key", None)

        assert await store.get("key") is None

    @pytest.mark.asyncio
    async def test_unreadable_file_is_ignored(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")
        store = JsonFileStateStore(str(path))

        assert await store.get("key", "fallback") == "fallback"
        await store.set("key", "value")
        assert await store.get("key") == "value"


class TestRedisStateStore:
    """Test cases for RedisStateStore."""

    @pytest.mark.asyncio
    async def test_prefixed_keys(self):
        redis_client = AsyncMock()
        redis_client.get.return_value = b"abc1234"
        store = RedisStateStore(redis_client, prefix="ct:")

        value = await store.get(LAST_PROCESSED_COMMIT)
        await store.set(LAST_PROCESSED_COMMIT, "def5678")
        await store.set(LAST_PROCESSED_COMMIT, None)
        await store.close()

        assert value == "abc1234"
        redis_client.get.assert_awaited_once_with("ct:lastProcessedCommit")
        redis_client.set.assert_awaited_once_with("ct:lastProcessedCommit", "def5678")
        redis_client.delete.assert_awaited_once_with("ct:lastProcessedCommit")
        redis_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_key(self):
        redis_client = AsyncMock()
        redis_client.get.return_value = None

        assert await RedisStateStore(redis_client).get("key", "fallback") == "fallback"


class TestEngineState:
    """Test cases for EngineState."""

    @pytest.mark.asyncio
    async def test_load_records_cache_created_once(self, state_store):
        state = await EngineState(state_store).load()
        created = state.cache_created

        reloaded = await EngineState(state_store).load()

        assert created is not None
        assert reloaded.cache_created == created
        assert state_store.values[CACHE_CREATED] == created

    @pytest.mark.asyncio
    async def test_advance_persists(self, state_store):
        state = await EngineState(state_store).load()

        await state.advance("abc1234")

        assert state.last_processed_commit == "abc1234"
        assert (await EngineState(state_store).load()).last_processed_commit == "abc1234"

    @pytest.mark.asyncio
    async def test_advance_failure_leaves_memory_untouched(self):
        store = MemoryStateStore()
        state = await EngineState(store).load()
        store.set = AsyncMock(side_effect=OSError("disk full"))

        with pytest.raises(OSError):
            await state.advance("abc1234")

        assert state.last_processed_commit is None

    @pytest.mark.asyncio
    async def test_reset(self, state_store):
        state = await EngineState(state_store).load()
        await state.advance("abc1234")

        await state.reset()

        assert state.last_processed_commit is None
        assert LAST_PROCESSED_COMMIT not in state_store.values
