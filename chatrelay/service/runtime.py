from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from chatrelay.config import Settings, get_settings, reset_settings_cache
from chatrelay.logging import get_logger
from chatrelay.service.budget import BudgetLedger
from chatrelay.service.chat import ChatOrchestrator
from chatrelay.service.providers import build_provider_registry
from chatrelay.service.tools import default_tool_registry
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.postgres import PostgresStore
from chatrelay.storage.redis_cache import LocalCache, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in ``url`` with ``***`` for logging."""
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


def _build_cache(settings: Settings):
    """Redis when reachable; the in-process cache in test/dev fallback.

    Returns None when no Redis URL is configured at all, in which case
    budgets fail open and cancellation falls back to polling.
    """
    if settings.use_local_cache:
        return LocalCache()
    if not settings.redis_url:
        logger.warning("redis_not_configured")
        return None
    redis_error: Exception | None = None
    try:
        cache = RedisCache(settings.redis_url)
        cache.verify_connection()
        return cache
    except Exception as exc:
        redis_error = exc
    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for budgets, cancellation and resumable streams; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error
    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error),
        mode=fallback_mode,
    )
    return LocalCache()


class Runtime:
    """Process-lifetime container for stores, providers and services."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = _build_cache(self.settings)
        self.providers = build_provider_registry(self.settings)
        self.tools = default_tool_registry()
        self.ledger = BudgetLedger(self.cache, self.settings)
        self.chat = ChatOrchestrator(
            settings=self.settings,
            store=self.store,
            cache=self.cache,
            providers=self.providers,
            ledger=self.ledger,
            tools=self.tools,
        )
        self.closed = False

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.providers.aclose()
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)
        logger.info("runtime_closed")


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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
