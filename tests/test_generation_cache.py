"""Tests for GenerationCache keys, TTL, eviction and tier failure handling."""

import pytest

from hairsim.services.generation.cache import (
    FINGERPRINT_SAMPLE_SIZE,
    KEY_PREFIX,
    GenerationCache,
    build_key,
    fingerprint,
)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory subset of redis.asyncio.Redis used by the cache."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        for key in list(self.store):
            if key.startswith(prefix):
                yield key


class BrokenRedis:
    async def get(self, key):
        raise ConnectionError("redis down")

    async def setex(self, key, ttl, value):
        raise ConnectionError("redis down")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return GenerationCache(max_entries=10, default_ttl=60, time_fn=clock)


class TestCacheKeys:
    def test_fingerprint_is_stable(self):
        assert fingerprint("abc") == fingerprint(b"abc")

    def test_fingerprint_samples_head_and_tail_of_large_content(self):
        n = FINGERPRINT_SAMPLE_SIZE
        a = "a" * n + "x" * n + "b" * n
        b = "a" * n + "y" * n + "b" * n

        # Only the middle differs, which is outside the sampled head and tail
        assert fingerprint(a) == fingerprint(b)
        assert fingerprint(a) != fingerprint("c" + a[1:])

    def test_small_content_hashes_everything(self):
        assert fingerprint("a" * 100 + "x") != fingerprint("a" * 100 + "y")

    def test_key_normalizes_inputs(self):
        fp = fingerprint("image")

        assert build_key(fp, " Buzz Cut ", "BLACK", "Replicate", "Male") == build_key(
            fp, "buzz cut", "black", "replicate", "male"
        )

    def test_key_defaults_model_and_gender(self):
        fp = fingerprint("image")

        assert build_key(fp, "bob", "", None, None) == build_key(fp, "bob", "", "replicate", "male")

    def test_key_differs_per_style(self):
        fp = fingerprint("image")

        assert build_key(fp, "bob", "", None, None) != build_key(fp, "mohawk", "", None, None)

    def test_key_has_prefix(self):
        assert build_key(fingerprint("image"), "bob", "", None, None).startswith(KEY_PREFIX)


@pytest.mark.asyncio
class TestLocalTier:
    async def test_put_then_get_returns_stored_entry(self, cache):
        key = cache.key(cache.fingerprint("img"), "bob", "red", "replicate", "female")

        await cache.put(key, "https://cdn/result.jpg", style="bob", color="red", model="replicate")
        entry = await cache.get(key)

        assert entry is not None
        assert entry.result_reference == "https://cdn/result.jpg"
        assert entry.style == "bob"
        assert entry.expires_at == entry.created_at + 60

    async def test_get_after_expiry_returns_none(self, cache, clock):
        await cache.put("hair_sim:k", "https://cdn/result.jpg")
        clock.advance(60)

        assert await cache.get("hair_sim:k") is None
        assert cache.stats()["memoryCacheSize"] == 0

    async def test_counters_and_stats(self, cache):
        await cache.put("hair_sim:k", "https://cdn/result.jpg")
        await cache.get("hair_sim:k")
        await cache.get("hair_sim:k")
        await cache.get("hair_sim:missing")

        stats = cache.stats()

        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["saves"] == 1
        assert stats["hitRate"] == "66.7%"
        assert stats["usingRedis"] is False
        assert stats["estimatedSavings"] == "$0.04"

    async def test_full_cache_evicts_oldest_fifth(self, cache, clock):
        for i in range(10):
            await cache.put(f"hair_sim:{i}", f"https://cdn/{i}.jpg")
            clock.advance(1)

        await cache.put("hair_sim:new", "https://cdn/new.jpg")

        assert cache.stats()["memoryCacheSize"] == 9
        assert await cache.get("hair_sim:0") is None
        assert await cache.get("hair_sim:1") is None
        assert await cache.get("hair_sim:2") is not None
        assert await cache.get("hair_sim:new") is not None

    async def test_overwrite_existing_key_does_not_evict(self, cache):
        for i in range(10):
            await cache.put(f"hair_sim:{i}", f"https://cdn/{i}.jpg")

        await cache.put("hair_sim:5", "https://cdn/5-again.jpg")

        assert cache.stats()["memoryCacheSize"] == 10
        assert (await cache.get("hair_sim:5")).result_reference == "https://cdn/5-again.jpg"

    async def test_invalidate_and_clear_all(self, cache):
        await cache.put("hair_sim:a", "https://cdn/a.jpg")
        await cache.put("hair_sim:b", "https://cdn/b.jpg")

        assert await cache.invalidate("hair_sim:a") is True
        assert await cache.invalidate("hair_sim:a") is False
        await cache.clear_all()

        assert cache.stats()["memoryCacheSize"] == 0

    async def test_sweep_expired_removes_only_expired(self, cache, clock):
        await cache.put("hair_sim:old", "https://cdn/old.jpg", ttl=10)
        await cache.put("hair_sim:fresh", "https://cdn/fresh.jpg", ttl=100)
        clock.advance(50)

        removed = cache.sweep_expired()

        assert removed == 1
        assert await cache.get("hair_sim:fresh") is not None


@pytest.mark.asyncio
class TestRedisTier:
    async def test_round_trip_through_redis(self, clock):
        redis = FakeRedis()
        cache = GenerationCache(redis_client=redis, default_ttl=60, time_fn=clock)

        assert await cache.put("hair_sim:k", "https://cdn/r.jpg", style="bob") is True
        entry = await cache.get("hair_sim:k")

        assert entry is not None
        assert entry.result_reference == "https://cdn/r.jpg"
        assert redis.ttls["hair_sim:k"] == 60
        assert cache.stats()["usingRedis"] is True
        # Local tier is not used while Redis is active
        assert cache.stats()["memoryCacheSize"] == 0

    async def test_clear_all_removes_prefixed_keys(self, clock):
        redis = FakeRedis()
        redis.store["other:key"] = "x"
        cache = GenerationCache(redis_client=redis, time_fn=clock)
        await cache.put("hair_sim:a", "https://cdn/a.jpg")

        await cache.clear_all()

        assert list(redis.store) == ["other:key"]

    async def test_redis_errors_degrade_to_miss(self, clock):
        cache = GenerationCache(redis_client=BrokenRedis(), time_fn=clock)

        assert await cache.put("hair_sim:k", "https://cdn/r.jpg") is False
        assert await cache.get("hair_sim:k") is None
        assert cache.misses == 1
        assert cache.saves == 0
