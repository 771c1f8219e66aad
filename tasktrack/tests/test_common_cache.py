"""
Tests for the cache layer.

Covers the CacheService operations against fakeredis, the error policy under
backend failure, key building conventions and the read-through decorator.
"""

import asyncio
import pickle
import unittest
from unittest.mock import AsyncMock, patch

import pytest

from tasktrack.common.cache import (
    CacheService,
    CacheStats,
    KeyBuilder,
    SerializationFormat,
    TaskCacheKeys,
    cached,
    get_cache_service,
    set_default_cache_service
)
from tasktrack.common.error_handling import BackendError, CacheSerializationError
from tasktrack.common.redis import RedisBackend


class TestKeyBuilder(unittest.TestCase):
    """Test the KeyBuilder conventions."""

    def test_entity_key(self):
        """Entity keys are <type>:<id>."""
        self.assertEqual(KeyBuilder.entity_key("task", 42), "task:42")
        self.assertEqual(TaskCacheKeys.single("abc"), "task:abc")

    def test_query_key_is_order_independent(self):
        """Equal filters produce the same key regardless of order."""
        key_a = KeyBuilder.query_key("tasks", {"status": "open", "page": 1})
        key_b = KeyBuilder.query_key("tasks", {"page": 1, "status": "open"})
        self.assertEqual(key_a, key_b)
        self.assertTrue(key_a.startswith("tasks:"))

    def test_query_key_distinguishes_filters(self):
        """Different filters never collide."""
        self.assertNotEqual(
            TaskCacheKeys.listing({"page": 1}),
            TaskCacheKeys.listing({"page": 2})
        )

    def test_build(self):
        """Parts are joined with colons; complex parts are hashed."""
        self.assertEqual(KeyBuilder.build("a", 1, None, namespace="ns"), "ns:a:1:null")
        key = KeyBuilder.build({"x": 1})
        self.assertEqual(len(key), 10)
        self.assertEqual(key, KeyBuilder.build({"x": 1}))

    def test_function_key(self):
        """Function keys include the qualified name and arguments."""
        def lookup(task_id, include=None):
            return task_id

        key = KeyBuilder.function_key(lookup, (7,), {"include": "comments"})
        self.assertIn("lookup", key)
        self.assertIn(":args:7:kwargs:include:comments", key)

    def test_function_key_namespace_argument(self):
        """A call argument named namespace is part of the key, not its prefix."""
        def lookup(task_id, namespace=None):
            return task_id

        key = KeyBuilder.function_key(lookup, (7,), {"namespace": "archived"})
        self.assertTrue(key.startswith(lookup.__module__))
        self.assertIn(":kwargs:namespace:archived", key)
        self.assertEqual(
            KeyBuilder.function_key(lookup, (7,), {"namespace": "archived"}, namespace="tasks"),
            f"tasks:{key}"
        )

    def test_namespace_pattern_escapes_glob_characters(self):
        self.assertEqual(KeyBuilder.namespace_pattern("tasks"), "tasks:*")
        self.assertEqual(KeyBuilder.namespace_pattern("task*"), "task\\*:*")
        self.assertEqual(KeyBuilder.namespace_pattern("t?[x]"), "t\\?\\[x\\]:*")


class TestBuildKey(unittest.TestCase):
    """Test namespaced storage keys."""

    def test_with_namespace(self):
        self.assertEqual(CacheService.build_key("1", "tasks"), "tasks:1")

    def test_without_namespace(self):
        self.assertEqual(CacheService.build_key("task:1"), "task:1")


@pytest.mark.asyncio
async def test_set_get_round_trip(cache):
    """A stored value is read back deep-equal."""
    value = {"id": "1", "title": "Write report", "tags": ["a", "b"], "done": False}

    await cache.set("task:1", value, ttl=60)

    assert await cache.get("task:1") == value


@pytest.mark.asyncio
async def test_entry_expires_after_ttl(cache):
    """After the TTL elapses the entry is gone."""
    await cache.set("task:1", {"id": "1"}, ttl=0.1)
    assert await cache.get("task:1") == {"id": "1"}

    await asyncio.sleep(0.25)

    assert await cache.get("task:1") is None


@pytest.mark.asyncio
async def test_default_ttl_applied(backend, fake_redis):
    """Writes without a TTL use the service default."""
    service = CacheService(backend, default_ttl=300)

    await service.set("task:1", "value")

    ttl = await fake_redis.pttl("task:1")
    assert 299000 < ttl <= 300000


@pytest.mark.asyncio
async def test_namespace_isolation(cache, fake_redis):
    """Namespaced keys are stored under namespace:key."""
    await cache.set("1", "namespaced", namespace="tasks")

    assert await fake_redis.get("tasks:1") == b'"namespaced"'
    assert await cache.get("1", namespace="tasks") == "namespaced"
    assert await cache.get("1") is None


@pytest.mark.asyncio
async def test_get_missing_returns_none(cache):
    """A missing key is a miss."""
    assert await cache.get("task:unknown") is None


@pytest.mark.asyncio
async def test_has_and_delete(cache):
    """delete reports whether a key was actually removed."""
    await cache.set("task:1", 1)

    assert await cache.has("task:1") is True
    assert await cache.delete("task:1") is True
    assert await cache.delete("task:1") is False
    assert await cache.has("task:1") is False


@pytest.mark.asyncio
async def test_mset_mget(cache):
    """mget is positionally aligned and fills misses with None."""
    await cache.mset({"a": 1, "b": 2})

    assert await cache.mget(["a", "b", "c"]) == [1, 2, None]


@pytest.mark.asyncio
async def test_mset_mget_with_namespace(cache):
    await cache.mset({"a": {"x": 1}}, ttl=60, namespace="tasks")

    assert await cache.mget(["a", "b"], namespace="tasks") == [{"x": 1}, None]


@pytest.mark.asyncio
async def test_clear_namespace_leaves_others(cache):
    """clear(namespace) removes only that namespace's keys."""
    await cache.set(TaskCacheKeys.listing({"page": 1}), [1, 2])
    await cache.set(TaskCacheKeys.listing({"page": 2}), [3])
    await cache.set(TaskCacheKeys.single("1"), {"id": "1"})
    await cache.set("1", "other", namespace="users")

    assert await cache.clear("tasks") is True

    assert await cache.get(TaskCacheKeys.listing({"page": 1})) is None
    assert await cache.get(TaskCacheKeys.listing({"page": 2})) is None
    assert await cache.get(TaskCacheKeys.single("1")) == {"id": "1"}
    assert await cache.get("1", namespace="users") == "other"


@pytest.mark.asyncio
async def test_clear_namespace_with_glob_characters(cache):
    """Glob characters in a namespace match literally."""
    await cache.set("1", "literal", namespace="task*")
    await cache.set("1", "listing", namespace="tasks")
    await cache.set("1", "single", namespace="task")

    assert (await cache.get_stats("task*")).total_keys == 1
    assert await cache.clear("task*") is True

    assert await cache.get("1", namespace="task*") is None
    assert await cache.get("1", namespace="tasks") == "listing"
    assert await cache.get("1", namespace="task") == "single"


@pytest.mark.asyncio
async def test_clear_empty_namespace(cache):
    """Clearing a namespace with no keys succeeds."""
    assert await cache.clear("nothing") is True


@pytest.mark.asyncio
async def test_clear_everything(cache, backend):
    """clear() without a namespace empties the database."""
    await cache.mset({"a": 1, "b": 2})
    await cache.set("1", 1, namespace="tasks")

    assert await cache.clear() is True

    assert await backend.dbsize() == 0


@pytest.mark.asyncio
async def test_set_unserializable_value_raises(cache):
    """JSON serialization failures are surfaced on write."""
    with pytest.raises(CacheSerializationError):
        await cache.set("task:1", {"when": object()})


@pytest.mark.asyncio
async def test_pickle_serialization(backend):
    """The pickle format stores values JSON cannot represent."""
    service = CacheService(backend, serialization=SerializationFormat.PICKLE)
    value = {"ids": {1, 2, 3}}

    await service.set("task:1", value)

    assert await service.get("task:1") == value


@pytest.mark.asyncio
async def test_undecodable_data_is_a_miss(cache, fake_redis):
    """Corrupt data degrades to a miss instead of raising."""
    await fake_redis.set("task:1", pickle.dumps(object))

    assert await cache.get("task:1") is None


@pytest.mark.asyncio
async def test_get_stats_namespace(cache):
    """Namespace stats count the namespace's keys."""
    await cache.mset({"a": 1, "b": 2}, namespace="tasks")
    await cache.set("x", 1, namespace="users")

    with patch.object(RedisBackend, "info", AsyncMock(return_value={
        "used_memory": 2048, "keyspace_hits": 3, "keyspace_misses": 1
    })):
        stats = await cache.get_stats("tasks")

    assert stats == CacheStats(total_keys=2, memory_usage=2048, hit_rate=0.75)


@pytest.mark.asyncio
async def test_get_stats_whole_database(cache):
    """Without a namespace the database size is reported; no lookups means no hit rate."""
    await cache.mset({"a": 1, "b": 2, "c": 3})

    with patch.object(RedisBackend, "info", AsyncMock(return_value={"used_memory": 100})):
        stats = await cache.get_stats()

    assert stats.total_keys == 3
    assert stats.memory_usage == 100
    assert stats.hit_rate is None


class TestBackendFailures(unittest.IsolatedAsyncioTestCase):
    """Error policy of the cache under backend failure."""

    def setUp(self):
        self.backend = AsyncMock(spec=RedisBackend)
        error = BackendError("get", message="connection refused")
        for name in ("get", "set", "delete", "exists", "keys_matching", "flush",
                     "get_many", "set_many", "info", "dbsize"):
            getattr(self.backend, name).side_effect = error
        self.cache = CacheService(self.backend)

    async def test_get_degrades_to_none(self):
        self.assertIsNone(await self.cache.get("task:1"))

    async def test_mget_degrades_to_all_none(self):
        self.assertEqual(await self.cache.mget(["a", "b", "c"]), [None, None, None])

    async def test_has_degrades_to_false(self):
        self.assertFalse(await self.cache.has("task:1"))

    async def test_delete_degrades_to_false(self):
        self.assertFalse(await self.cache.delete("task:1"))

    async def test_clear_degrades_to_false(self):
        self.assertFalse(await self.cache.clear("tasks"))
        self.assertFalse(await self.cache.clear())

    async def test_get_stats_degrades_to_zero(self):
        self.assertEqual(await self.cache.get_stats(), CacheStats(0, 0, None))

    async def test_set_raises(self):
        with self.assertRaises(BackendError):
            await self.cache.set("task:1", {"id": "1"})

    async def test_mset_raises_once_for_batch(self):
        with self.assertRaises(BackendError):
            await self.cache.mset({"a": 1, "b": 2})
        self.backend.set_many.assert_awaited_once()


@pytest.mark.asyncio
async def test_unopened_backend_degrades_reads():
    """A backend that was never opened behaves like an outage."""
    service = CacheService(RedisBackend())

    assert await service.get("task:1") is None
    with pytest.raises(BackendError):
        await service.set("task:1", 1)


@pytest.mark.asyncio
async def test_cached_decorator_reads_through(cache):
    """The decorated function runs once; later calls are served from cache."""
    calls = []

    @cached(ttl=60, namespace="tasks", key_builder=lambda page: f"page:{page}", cache=cache)
    async def list_tasks(page):
        calls.append(page)
        return [{"id": "1"}]

    assert await list_tasks(1) == [{"id": "1"}]
    assert await list_tasks(1) == [{"id": "1"}]
    assert calls == [1]
    assert await cache.get("page:1", namespace="tasks") == [{"id": "1"}]


@pytest.mark.asyncio
async def test_cached_decorator_keys_namespace_argument(cache):
    """A decorated function's own namespace argument is part of its key."""
    calls = []

    @cached(ttl=60, cache=cache)
    async def find(task_id, namespace=None):
        calls.append(namespace)
        return {"id": task_id, "namespace": namespace}

    assert await find(1, namespace="open") == {"id": 1, "namespace": "open"}
    assert await find(1, namespace="archived") == {"id": 1, "namespace": "archived"}
    assert await find(1, namespace="open") == {"id": 1, "namespace": "open"}
    assert calls == ["open", "archived"]


@pytest.mark.asyncio
async def test_cached_decorator_survives_write_failure():
    """A failed write is logged and the computed result is still returned."""
    backend = AsyncMock(spec=RedisBackend)
    backend.get.return_value = None
    backend.set.side_effect = BackendError("set")
    service = CacheService(backend)

    @cached(cache=service)
    async def compute(x):
        return x * 2

    assert await compute(21) == 42


@pytest.mark.asyncio
async def test_cached_decorator_uses_default_service(cache):
    """Without an explicit cache the default service is used."""
    set_default_cache_service(cache)
    try:
        assert get_cache_service() is cache

        @cached(ttl=60)
        async def compute(x):
            return {"value": x}

        assert await compute(5) == {"value": 5}
        assert await compute(5) == {"value": 5}
    finally:
        set_default_cache_service(None)

    with pytest.raises(RuntimeError):
        get_cache_service()
