from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from warden.config import TokenBackend, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.auth import AuthService
from warden.service.directory import DirectoryService
from warden.service.permissions import PermissionEvaluator
from warden.service.reaper import ExpiryReaper
from warden.service.tokens import TokenService
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore
from warden.storage.redis_tokens import RedisTokenStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

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
            token_backend=self.settings.token_backend.value,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisTokenStore] = None
        if self.settings.token_backend == TokenBackend.REDIS:
            cache = RedisTokenStore(
                self.settings.redis_url,
                socket_timeout=self.settings.store_timeout_seconds,
            )
            try:
                cache.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_token_cache_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "TOKEN_BACKEND=redis but Redis is unreachable; start Redis or use TOKEN_BACKEND=database"
                ) from exc
            self.cache = cache
        token_store = self.cache if self.cache is not None else self.store

        self.permissions = PermissionEvaluator(self.store)
        self.tokens = TokenService(token_store, self.settings)
        self.auth = AuthService(self.store, self.tokens, self.permissions, self.settings)
        self.directory = DirectoryService(
            self.store, self.tokens, self.permissions, self.auth.hash_password
        )
        self.reaper = ExpiryReaper(self.tokens, self.settings.sweep_interval_seconds)
        logger.info(
            "runtime_ready",
            token_ttl_seconds=self.settings.token_ttl_seconds,
            token_renew_threshold_seconds=self.settings.token_renew_threshold_seconds,
        )

    def close(self) -> None:
        for resource in (self.cache, self.store):
            close = getattr(resource, "close", None)
            if close is not None:
                close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
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
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
