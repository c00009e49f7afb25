import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Settings are read at import time by idgate.app; set the environment first
_test_tmp_dir = tempfile.mkdtemp(prefix="idgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("APP_KEY", "test-app-key-for-signing-links-only-not-for-production")
# Local token buckets keep rate-limit state from leaking between tests
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

from idgate.service.authorization import RoleAuthorizationGuard  # noqa: E402
from idgate.service.hashing import PasswordHasher  # noqa: E402
from idgate.service.lifecycle import AccountLifecycleManager  # noqa: E402
from idgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from idgate.storage.memory import MemoryStore  # noqa: E402


class FrozenClock:
    """Clock that only moves when a test tells it to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingEmailService:
    """Collects outgoing mail instead of talking to SMTP."""

    is_configured = True

    def __init__(self):
        self.verification_links = []
        self.reset_tokens = []

    def send_verification_link(self, to_email, verify_url, ttl_minutes=60):
        self.verification_links.append((to_email, verify_url))
        return True

    def send_password_reset(self, to_email, token, ttl_minutes=60):
        self.reset_tokens.append((to_email, token))
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state dir per test so the JSON snapshot never carries accounts over
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def app_key():
    return os.environ["APP_KEY"]


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return MemoryStore(persist=False)


@pytest.fixture
def lifecycle(store, clock):
    return AccountLifecycleManager(store, clock=clock)


@pytest.fixture
def guard(lifecycle):
    return RoleAuthorizationGuard(lifecycle)


@pytest.fixture
def fast_hasher():
    return PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1)


@pytest.fixture
def mailer():
    return RecordingEmailService()


@pytest.fixture
def outbox(mailer):
    """Swap the runtime's mailer for the recorder and return it."""
    from idgate.service.runtime import get_runtime

    get_runtime().identity.email = mailer
    return mailer


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
