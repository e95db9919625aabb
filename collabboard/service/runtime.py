from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from collabboard.config import StoreBackend, get_settings, reset_settings_cache
from collabboard.logging import get_logger
from collabboard.service.auth import SessionManager
from collabboard.service.cleanup import CleanupService
from collabboard.service.tokens import TokenCodec
from collabboard.storage.memory import MemoryStore
from collabboard.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        backend = self.settings.store_backend
        logger.info(
            "runtime_init_started",
            store_backend=backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            if backend == StoreBackend.REDIS:
                store = RedisStore(self.settings.redis_url, prefix=self.settings.redis_key_prefix)
                store.verify_connection()
            else:
                store = MemoryStore(fs_root=self.settings.shared_fs_root)
            self.store = store
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=backend.value,
                redis_url=_mask_url_password(self.settings.redis_url)
                if backend == StoreBackend.REDIS
                else None,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=backend.value)

        self.codec = TokenCodec(
            self.settings.access_token_secret,
            self.settings.refresh_token_secret,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.sessions = SessionManager(self.store, self.codec)
        self.cleanup = CleanupService(
            self.sessions,
            interval_hours=self.settings.token_cleanup_interval_hours,
        )

    async def close(self) -> None:
        await self.cleanup.stop()
        if isinstance(self.store, RedisStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
        if runtime is not None and isinstance(runtime.store, RedisStore):
            runtime.store.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
