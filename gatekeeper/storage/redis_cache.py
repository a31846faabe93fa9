from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from gatekeeper.logging import get_logger
from gatekeeper.storage.errors import StorageUnavailableError
from gatekeeper.storage.models import RateBucket

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed fixed-window counters for the rate limiter."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed-window step: start a fresh window when the bucket is missing or
    # stale, otherwise count the hit only while it is under the limit.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'count', 'reset_at')
local count = tonumber(data[1])
local reset_at = tonumber(data[2])

if count == nil or reset_at == nil or now > reset_at then
  count = 1
  reset_at = now + window
  redis.call('HSET', key, 'count', count, 'reset_at', reset_at)
  redis.call('PEXPIRE', key, window + 1000)
  return {1, count, reset_at}
end

if count < limit then
  count = redis.call('HINCRBY', key, 'count', 1)
  return {1, count, reset_at}
end

return {0, count, reset_at}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the caller's key so addresses and emails cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _to_bucket(raw) -> RateBucket:
        allowed, count, reset_at = raw
        return RateBucket(count=int(count), reset_at=int(reset_at), allowed=bool(int(allowed)))

    async def get(self, key: str) -> Optional[RateBucket]:
        try:
            data = await self.client.hmget(self._normalize_rate_key(key), "count", "reset_at")
        except RedisError as exc:
            logger.error("rate_counter_read_failed", error=str(exc))
            raise StorageUnavailableError("rate limit store unavailable") from exc
        if not data or data[0] is None or data[1] is None:
            return None
        return RateBucket(count=int(data[0]), reset_at=int(data[1]))

    async def increment(
        self, key: str, *, window_ms: int, limit: int, now_ms: int
    ) -> RateBucket:
        try:
            raw = await self._fixed_window(
                keys=[self._normalize_rate_key(key)],
                args=[now_ms, window_ms, limit],
            )
        except RedisError as exc:
            logger.error("rate_counter_increment_failed", error=str(exc))
            raise StorageUnavailableError("rate limit store unavailable") from exc
        return self._to_bucket(raw)

    async def expire(self, key: str) -> None:
        try:
            await self.client.delete(self._normalize_rate_key(key))
        except RedisError as exc:
            logger.error("rate_counter_expire_failed", error=str(exc))
            raise StorageUnavailableError("rate limit store unavailable") from exc

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues in pytest
    while exposing the same awaitable interface as :class:`RedisCache`.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[RateBucket]:
        try:
            data = self._sync_client.hmget(
                RedisCache._normalize_rate_key(key), "count", "reset_at"
            )
        except RedisError as exc:
            raise StorageUnavailableError("rate limit store unavailable") from exc
        if not data or data[0] is None or data[1] is None:
            return None
        return RateBucket(count=int(data[0]), reset_at=int(data[1]))

    async def increment(
        self, key: str, *, window_ms: int, limit: int, now_ms: int
    ) -> RateBucket:
        try:
            raw = self._fixed_window(
                keys=[RedisCache._normalize_rate_key(key)],
                args=[now_ms, window_ms, limit],
            )
        except RedisError as exc:
            raise StorageUnavailableError("rate limit store unavailable") from exc
        return RedisCache._to_bucket(raw)

    async def expire(self, key: str) -> None:
        try:
            self._sync_client.delete(RedisCache._normalize_rate_key(key))
        except RedisError as exc:
            raise StorageUnavailableError("rate limit store unavailable") from exc

    def close_sync(self) -> None:
        self._sync_client.close()

    async def close(self) -> None:
        self.close_sync()
