from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from hivelog.config import get_settings, reset_settings_cache
from hivelog.logging import get_logger
from hivelog.service.auth import AuthService, PrincipalResolver
from hivelog.service.ownership import OwnershipVerifier
from hivelog.service.records import RecordService
from hivelog.service.revocation import RevocationService
from hivelog.service.tokens import TokenService
from hivelog.storage.memory import MemoryCache, MemoryStore
from hivelog.storage.postgres import PostgresStore
from hivelog.storage.redis_cache import RedisCache, SyncRedisCache, describe_cache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Cache = self._build_cache()

        self.tokens = TokenService()
        self.revocation = RevocationService(
            self.cache,
            self.tokens,
            max_token_lifetime_seconds=self.settings.max_token_lifetime_seconds,
        )
        self.resolver = PrincipalResolver(
            self.tokens, self.revocation, self.settings.jwt_secret
        )
        self.auth = AuthService(self.store, self.tokens, self.revocation, self.settings)
        self.ownership = OwnershipVerifier(self.store)
        self.records = RecordService(self.store, self.ownership)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=describe_cache(self.cache),
            access_ttl_seconds=self.settings.access_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_ttl_seconds,
        )

    def _build_cache(self) -> Cache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding in pytest
                if self.settings.test_mode:
                    cache: Cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; revoked tokens are "
                "tracked in process memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime exists.
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
        if runtime is not None:
            _close_quietly(runtime)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


_pending_closes: set[asyncio.Task] = set()


def _close_finished(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("runtime_close_failed", error=str(task.exception()))


def _close_quietly(old: Runtime) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop is not None:
        # Hold a reference until the close finishes; the loop only keeps a weak one
        task = loop.create_task(old.close())
        _pending_closes.add(task)
        task.add_done_callback(_close_finished)
        return
    try:
        asyncio.run(old.close())
    except Exception as exc:
        logger.warning("runtime_close_failed", error=str(exc))
