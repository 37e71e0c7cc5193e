from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from convoaccess.config import StoreBackend, get_settings, reset_settings_cache
from convoaccess.logging import get_logger
from convoaccess.service.access import ConversationAccessService
from convoaccess.service.permissions import PermissionEngine
from convoaccess.service.tokens import TokenGenerator
from convoaccess.storage.memory import MemoryStore
from convoaccess.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

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
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, RedisStore]
        if self.settings.store_backend == StoreBackend.REDIS:
            try:
                store = RedisStore(self.settings.redis_url)
                store.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="redis",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            self.store = store
        else:
            self.store = MemoryStore()
        logger.info("runtime_store_initialized", store_type=self.settings.store_backend.value)

        self.permissions = PermissionEngine()
        self.tokens = TokenGenerator(
            self.store.join_token_exists,
            token_bytes=self.settings.join_token_bytes,
            max_attempts=self.settings.token_retry_attempts,
            base_url=self.settings.app_base_url,
        )
        self.access = ConversationAccessService(
            self.store,
            self.store,
            self.tokens,
            self.permissions,
            default_expiry_days=self.settings.join_link_default_expiry_days,
            max_expiry_days=self.settings.join_link_max_expiry_days,
            count_rejoins_against_limit=self.settings.count_rejoins_against_limit,
            mutation_retry_attempts=self.settings.mutation_retry_attempts,
            lock_timeout_seconds=self.settings.lock_timeout_seconds,
            default_list_limit=self.settings.default_list_limit,
        )

    def close(self) -> None:
        if isinstance(self.store, RedisStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for the existing
    runtime and a locked re-check during creation.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = None
        reset_settings_cache()
