from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from gatekeeper.config import get_settings, reset_settings_cache
from gatekeeper.logging import get_logger
from gatekeeper.service.audit import StoreAuditSink
from gatekeeper.service.auth import AuthService
from gatekeeper.service.email import EmailService
from gatekeeper.service.lockout import LockoutPolicy, LockoutTracker
from gatekeeper.service.otp import PasswordResetFlow
from gatekeeper.service.passwords import PasswordService
from gatekeeper.service.rate_limit import CounterStore, RateLimiter
from gatekeeper.service.session_guard import SessionGuard
from gatekeeper.service.tokens import Clock, TokenService
from gatekeeper.storage.memory import MemoryCounterStore, MemoryStore
from gatekeeper.storage.postgres import PostgresStore
from gatekeeper.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Optional[Clock] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                # Test runs never read back state from a previous run
                fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
                self.store: Union[MemoryStore, PostgresStore] = MemoryStore(fs_root=fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to pytest's event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limit counters; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )
        self.counters: CounterStore = self.cache or MemoryCounterStore()

        self.passwords = PasswordService()
        self.email = EmailService.from_settings(self.settings)
        self.audit = StoreAuditSink(self.store)
        self.tokens = TokenService(self.settings, clock=clock)
        self.sessions = SessionGuard(self.tokens, self.store)
        self.lockout = LockoutTracker(
            self.store, LockoutPolicy.from_settings(self.settings), clock=clock
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.sessions,
            self.lockout,
            self.passwords,
            self.audit,
            self.settings,
            clock=clock,
        )
        self.password_reset = PasswordResetFlow(
            self.store,
            self.passwords,
            self.email,
            self.audit,
            self.settings,
            clock=clock,
        )
        self.login_limiter = RateLimiter(
            self.counters,
            name="login",
            window_ms=self.settings.login_rate_window_ms,
            max_requests=self.settings.login_rate_max,
            clock=clock,
        )
        self.forgot_limiter = RateLimiter(
            self.counters,
            name="forgot",
            window_ms=self.settings.forgot_rate_window_ms,
            max_requests=self.settings.forgot_rate_max,
            clock=clock,
        )
        self.reset_limiter = RateLimiter(
            self.counters,
            name="reset",
            window_ms=self.settings.reset_rate_window_ms,
            max_requests=self.settings.reset_rate_max,
            clock=clock,
        )
        logger.info(
            "runtime_init_completed",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Optional[Clock] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.close_sync()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime
