from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from linesauth.config import get_settings, reset_settings_cache
from linesauth.logging import get_logger
from linesauth.service.auth import AuthService
from linesauth.service.email import EmailService
from linesauth.service.rate_limit import RateLimitDecision, SlidingWindowRateLimiter
from linesauth.service.tokens import TokenIssuer
from linesauth.storage.memory import MemoryStore
from linesauth.storage.postgres import PostgresStore
from linesauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
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

        self.cache = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; unset it to use the in-process rate limiter."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    mode="TEST_MODE",
                )

        self.rate_limiter = SlidingWindowRateLimiter(
            max_requests=self.settings.rate_limit_max_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
        )
        self.email = EmailService.from_settings(self.settings)
        self.tokens = TokenIssuer(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            email=self.email,
            tokens=self.tokens,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            rate_limit=self.settings.rate_limit_max_requests,
            rate_limit_window_seconds=self.settings.rate_limit_window_seconds,
            logout_default_scope=self.settings.logout_default_scope.value,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked fast path serves an existing
    runtime, and the locked second check prevents two concurrent creations.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    asyncio.run(runtime.cache.close())
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except (OSError, RuntimeError) as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(runtime: Runtime, key: str) -> RateLimitDecision:
    """Count one request against ``key`` in the configured sliding window.

    Uses the shared Redis window when Redis is available, otherwise the
    runtime's in-process limiter.
    """
    limit = runtime.settings.rate_limit_max_requests
    if runtime.cache:
        allowed, remaining, retry_after = await runtime.cache.check_sliding_window(
            key, limit, runtime.settings.rate_limit_window_seconds
        )
        decision = RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=remaining,
            retry_after_seconds=retry_after,
        )
    else:
        decision = runtime.rate_limiter.hit(key)
    if not decision.allowed:
        logger.warning(
            "rate_limit_exceeded",
            key=key,
            limit=limit,
            retry_after=decision.retry_after_seconds,
        )
    return decision
