"""Tests for the fixed-window request throttle and its counter backends."""

import asyncio
import math
import threading
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatekeeper.service.errors import RateLimitedError
from gatekeeper.service.rate_limit import RateLimiter
from gatekeeper.storage.errors import StorageUnavailableError
from gatekeeper.storage.memory import MemoryCounterStore
from gatekeeper.storage.redis_cache import RedisCache, SyncRedisCache

WINDOW_MS = 15 * 60 * 1000


@pytest.fixture
def counters():
    return MemoryCounterStore()


@pytest.fixture
def limiter(counters, clock):
    return RateLimiter(counters, name="login", window_ms=WINDOW_MS, max_requests=3, clock=clock)


class TestRateLimiter:
    """Tests for limiter decisions."""

    async def test_allows_up_to_max(self, limiter):
        decisions = [await limiter.check("10.0.0.1", "a@example.com") for _ in range(3)]

        assert all(d.allowed for d in decisions)
        assert [d.count for d in decisions] == [1, 2, 3]
        assert decisions[-1].remaining == 0

    async def test_rejects_max_plus_one(self, limiter, clock):
        for _ in range(3):
            await limiter.check("10.0.0.1", "a@example.com")
        clock.advance(minutes=5)

        decision = await limiter.check("10.0.0.1", "a@example.com")

        assert not decision.allowed
        assert decision.count == 3
        assert decision.retry_after_seconds == 10 * 60

    async def test_enforce_raises_with_retry_after(self, limiter):
        for _ in range(3):
            await limiter.enforce("10.0.0.1", "a@example.com")

        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.enforce("10.0.0.1", "a@example.com")

        assert excinfo.value.status_code == 429
        assert excinfo.value.retry_after == math.ceil(WINDOW_MS / 1000)
        assert excinfo.value.detail["retry_after"] == excinfo.value.retry_after

    async def test_retry_after_is_at_least_one_second(self, limiter, clock):
        for _ in range(3):
            await limiter.check("10.0.0.1", "a@example.com")
        clock.advance(milliseconds=WINDOW_MS - 100)

        decision = await limiter.check("10.0.0.1", "a@example.com")

        assert decision.retry_after_seconds == 1

    async def test_window_expiry_restarts_count(self, limiter, clock):
        for _ in range(4):
            await limiter.check("10.0.0.1", "a@example.com")
        clock.advance(milliseconds=WINDOW_MS + 1000)

        decision = await limiter.check("10.0.0.1", "a@example.com")

        assert decision.allowed
        assert decision.count == 1

    async def test_keys_are_independent(self, limiter):
        for _ in range(3):
            await limiter.check("10.0.0.1", "a@example.com")

        assert (await limiter.check("10.0.0.2", "a@example.com")).allowed
        assert (await limiter.check("10.0.0.1", "b@example.com")).allowed

    async def test_limiters_do_not_share_buckets(self, counters, clock, limiter):
        other = RateLimiter(counters, name="forgot", window_ms=WINDOW_MS, max_requests=3, clock=clock)
        for _ in range(3):
            await limiter.check("10.0.0.1", "a@example.com")

        assert (await other.check("10.0.0.1", "a@example.com")).allowed

    async def test_reset_clears_bucket(self, limiter):
        for _ in range(3):
            await limiter.check("10.0.0.1", "a@example.com")

        await limiter.reset("10.0.0.1", "a@example.com")

        assert (await limiter.check("10.0.0.1", "a@example.com")).count == 1

    async def test_rejected_hits_are_not_counted(self, limiter, counters):
        for _ in range(10):
            await limiter.check("10.0.0.1", "a@example.com")

        bucket = await counters.get(limiter.bucket_key("10.0.0.1", "a@example.com"))
        assert bucket.count == 3

    def test_concurrent_checks_admit_exactly_max(self, limiter, counters):
        """Racing requests on one key never admit more than the budget."""
        workers = 25
        barrier = threading.Barrier(workers)
        decisions = []
        decisions_lock = threading.Lock()

        def _hit():
            barrier.wait()
            decision = asyncio.run(limiter.check("10.0.0.1", "a@example.com"))
            with decisions_lock:
                decisions.append(decision)

        threads = [threading.Thread(target=_hit) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(decisions) == workers
        assert sum(1 for d in decisions if d.allowed) == 3
        assert sorted(d.count for d in decisions if d.allowed) == [1, 2, 3]
        bucket = asyncio.run(counters.get(limiter.bucket_key("10.0.0.1", "a@example.com")))
        assert bucket.count == 3


def _sync_cache(client) -> SyncRedisCache:
    cache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://test"
    cache._sync_client = client
    cache._fixed_window = MagicMock(return_value=[1, 2, 1_000])
    return cache


class TestRedisCounters:
    """Tests for the Redis counter adapter with the client stubbed out."""

    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("login:10.0.0.1:a@example.com")

        assert key.startswith("rate:")
        assert "@" not in key
        assert key == RedisCache._normalize_rate_key("login:10.0.0.1:a@example.com")

    async def test_increment_passes_window_arguments(self):
        cache = _sync_cache(MagicMock())

        bucket = await cache.increment("login:x", window_ms=WINDOW_MS, limit=5, now_ms=500)

        cache._fixed_window.assert_called_once_with(
            keys=[RedisCache._normalize_rate_key("login:x")], args=[500, WINDOW_MS, 5]
        )
        assert bucket.allowed
        assert bucket.count == 2
        assert bucket.reset_at == 1_000

    async def test_script_denial_maps_to_not_allowed(self):
        cache = _sync_cache(MagicMock())
        cache._fixed_window.return_value = [0, 5, 9_000]

        bucket = await cache.increment("login:x", window_ms=WINDOW_MS, limit=5, now_ms=500)

        assert not bucket.allowed
        assert bucket.count == 5

    async def test_get_missing_bucket(self):
        client = MagicMock()
        client.hmget.return_value = [None, None]

        assert await _sync_cache(client).get("login:x") is None

    async def test_redis_failure_fails_closed(self):
        """An unreachable counter store surfaces as unavailable rather than allowing traffic."""
        cache = _sync_cache(MagicMock())
        cache._fixed_window.side_effect = RedisConnectionError("down")

        with pytest.raises(StorageUnavailableError):
            await cache.increment("login:x", window_ms=WINDOW_MS, limit=5, now_ms=500)
