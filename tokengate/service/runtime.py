from __future__ import annotations

import asyncio
import threading
from typing import Optional, Set, Union
from urllib.parse import urlparse, urlunparse

from tokengate.config import get_settings, reset_settings_cache
from tokengate.logging import get_logger
from tokengate.service.accounts import AccountService
from tokengate.service.errors import ConfigurationError
from tokengate.service.external import ExternalIdentityProvider
from tokengate.service.passwords import PasswordHasher
from tokengate.service.tokens import TokenProcessor
from tokengate.storage.memory import MemoryStore
from tokengate.storage.postgres import PostgresStore
from tokengate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the process-wide collaborators for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        self.settings.validate_startup()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
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

        try:
            self.cache = self._connect_cache()
        except ConfigurationError:
            # an opened pool must not outlive a failed startup
            self._close_store()
            raise

        self.tokens = TokenProcessor(self.settings)
        self.passwords = PasswordHasher()
        self.accounts = AccountService(self.store, self.tokens, self.passwords)
        self.external = ExternalIdentityProvider(self.settings, self.cache)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            oauth_provider=self.external.provider,
        )

    def _connect_cache(self) -> Optional[RedisCache]:
        if not self.settings.redis_url:
            logger.info("redis_not_configured", oauth_state="in_process")
            return None
        cache = RedisCache(self.settings.redis_url)
        try:
            cache.verify_connection()
        except Exception as exc:
            if not self.settings.allow_redis_fallback_dev:
                raise ConfigurationError(
                    "REDIS_URL is set but Redis is unreachable; start Redis or set "
                    "ALLOW_REDIS_FALLBACK_DEV=true to keep OAuth state in-process."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return None
        return cache

    def _close_store(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()

    async def aclose(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self._close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
# cleanups scheduled on a running loop; held so they are not garbage collected
_pending_cleanups: Set["asyncio.Task[None]"] = set()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_runtime(previous: Runtime) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(previous.aclose())
        return
    task = loop.create_task(previous.aclose())
    _pending_cleanups.add(task)
    task.add_done_callback(_pending_cleanups.discard)


def reset_runtime_for_tests() -> Runtime:
    """Close the current runtime and rebuild it from a freshly read environment."""
    global runtime

    with _runtime_lock:
        previous, runtime = runtime, None
        if previous is not None:
            _close_runtime(previous)
        reset_settings_cache()
        runtime = Runtime()
        return runtime
