from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authsession.config import Settings, StoreBackend, get_settings, reset_settings_cache
from authsession.logging import get_logger
from authsession.service.sessions import SessionManager, SessionPolicy
from authsession.storage.memory import MemoryStore
from authsession.storage.postgres import PostgresStore
from authsession.storage.redis_store import RedisSessionStore

logger = get_logger(__name__)

AnyStore = Union[MemoryStore, PostgresStore, RedisSessionStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

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


def build_store(settings: Settings) -> AnyStore:
    """Instantiate the session store selected by ``settings.session_store``."""
    backend = settings.session_store
    try:
        if backend == StoreBackend.POSTGRES:
            store: AnyStore = PostgresStore(settings.database_url)
            target = _mask_url_password(settings.database_url)
        elif backend == StoreBackend.REDIS:
            store = RedisSessionStore(settings.redis_url)
            store.verify_connection()
            target = _mask_url_password(settings.redis_url)
        else:
            store = MemoryStore(fs_root=settings.state_fs_root)
            target = settings.state_fs_root or "process"
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=backend.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=backend.value, target=target)
    return store


class Runtime:
    """Holds the process-wide session store and manager."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = build_store(self.settings)
        self.refresh_executor: Optional[ThreadPoolExecutor] = None
        if self.settings.refresh_in_background:
            self.refresh_executor = ThreadPoolExecutor(
                max_workers=2, thread_name_prefix="session-refresh"
            )
        self.sessions = SessionManager(
            self.store,
            policy=SessionPolicy.from_settings(self.settings),
            refresh_executor=self.refresh_executor,
        )

    def close(self) -> None:
        if self.refresh_executor is not None:
            self.refresh_executor.shutdown(wait=True)
            self.refresh_executor = None
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path once the runtime exists,
    and a locked re-check before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Tear down and rebuild the runtime from a fresh read of the environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
