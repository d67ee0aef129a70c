from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from vihara.config import get_settings, reset_settings_cache
from vihara.logging import get_logger
from vihara.service.access import AccessGate
from vihara.service.audit import AuditSink
from vihara.service.auth import AuthService
from vihara.service.sessions import SessionManager
from vihara.service.sweeper import SessionSweeper
from vihara.storage.memory import MemoryStore
from vihara.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
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

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(state_dir=self.settings.state_dir)
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

        self.audit = AuditSink(self.store)
        self.sessions = SessionManager(
            self.store,
            self.audit,
            timeout_seconds=self.settings.session_timeout_seconds,
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
            retention_days=self.settings.session_retention_days,
        )
        self.auth = AuthService(self.store, self.sessions, self.audit, self.settings)
        self.access = AccessGate()
        self.sweeper = SessionSweeper(
            self.sessions, interval_seconds=self.settings.session_sweep_interval_seconds
        )
        logger.info(
            "runtime_initialized",
            session_timeout_seconds=self.settings.session_timeout_seconds,
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
            sweeper_enabled=self.settings.session_sweeper_enabled,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
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
