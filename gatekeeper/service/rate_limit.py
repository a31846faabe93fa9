from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from gatekeeper.logging import get_logger
from gatekeeper.service.errors import RateLimitedError
from gatekeeper.service.tokens import Clock, utc_now
from gatekeeper.storage.models import RateBucket

logger = get_logger(__name__)


class CounterStore(Protocol):
    """Key-value counters backing the fixed-window limiter.

    ``increment`` must be atomic per key: it starts a new window when the
    bucket is absent or stale and only counts a hit while under ``limit``.
    """

    async def get(self, key: str) -> Optional[RateBucket]:
        ...

    async def increment(
        self, key: str, *, window_ms: int, limit: int, now_ms: int
    ) -> RateBucket:
        ...

    async def expire(self, key: str) -> None:
        ...


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    limit: int
    reset_at_ms: int
    retry_after_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimiter:
    """Fixed-window throttle keyed by ``client_address:key``."""

    def __init__(
        self,
        store: CounterStore,
        *,
        name: str,
        window_ms: int,
        max_requests: int,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.name = name
        self.window_ms = window_ms
        self.max_requests = max_requests
        self._clock = clock or utc_now

    def _now_ms(self) -> int:
        now: datetime = self._clock()
        return int(now.timestamp() * 1000)

    def bucket_key(self, client_address: str, key: str) -> str:
        return f"{self.name}:{client_address}:{key}"

    async def check(self, client_address: str, key: str) -> RateDecision:
        now_ms = self._now_ms()
        bucket = await self.store.increment(
            self.bucket_key(client_address, key),
            window_ms=self.window_ms,
            limit=self.max_requests,
            now_ms=now_ms,
        )
        retry_after = 0
        if not bucket.allowed:
            retry_after = max(1, math.ceil((bucket.reset_at - now_ms) / 1000))
        return RateDecision(
            allowed=bucket.allowed,
            count=bucket.count,
            limit=self.max_requests,
            reset_at_ms=bucket.reset_at,
            retry_after_seconds=retry_after,
        )

    async def enforce(self, client_address: str, key: str) -> RateDecision:
        decision = await self.check(client_address, key)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                limiter=self.name,
                client_address=client_address,
                retry_after=decision.retry_after_seconds,
            )
            raise RateLimitedError(
                "Too many requests, please try again later.",
                retry_after=decision.retry_after_seconds,
            )
        return decision

    async def reset(self, client_address: str, key: str) -> None:
        await self.store.expire(self.bucket_key(client_address, key))
