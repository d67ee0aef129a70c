import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Configure the environment before any imports that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("SESSION_SWEEPER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from vihara.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FrozenClock:
    """Manually advanced UTC clock patched over service ``_now`` methods."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock():
    return FrozenClock()


def build_identity(clock, *, store=None, **overrides):
    """Wire store, audit sink, session manager and auth service on a frozen clock."""
    from vihara.config import Settings
    from vihara.service.audit import AuditSink
    from vihara.service.auth import AuthService
    from vihara.service.sessions import SessionManager
    from vihara.storage.memory import MemoryStore

    settings = Settings(**overrides)
    store = store if store is not None else MemoryStore()
    audit = AuditSink(store)
    sessions = SessionManager(
        store,
        audit,
        timeout_seconds=settings.session_timeout_seconds,
        max_concurrent_sessions=settings.max_concurrent_sessions,
        retention_days=settings.session_retention_days,
    )
    auth = AuthService(store, sessions, audit, settings)
    sessions._now = clock
    auth._now = clock
    return SimpleNamespace(
        settings=settings, store=store, audit=audit, sessions=sessions, auth=auth, clock=clock
    )


@pytest.fixture
def identity(clock):
    return build_identity(clock)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
