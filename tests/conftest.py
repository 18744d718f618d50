import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.config import Settings  # noqa: E402
from sessionguard.service.context import RequestContext  # noqa: E402
from sessionguard.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from sessionguard.storage.memory import MemoryUserDirectory  # noqa: E402

ACCESS_SECRET = os.environ["JWT_ACCESS_SECRET"]
REFRESH_SECRET = os.environ["JWT_REFRESH_SECRET"]

DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
PHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


class FakeClock:
    """Injectable wall clock; tests move time forward explicitly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink:
    """Audit sink that keeps every event for assertions."""

    def __init__(self):
        self.events = []

    def record(self, event_type, severity, message, metadata):
        self.events.append((event_type, severity, message, metadata))

    def of_type(self, event_type):
        return [e for e in self.events if e[0] == event_type]


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "test_mode": True,
        "jwt_access_secret": ACCESS_SECRET,
        "jwt_refresh_secret": REFRESH_SECRET,
        "audit_background": False,
    }
    values.update(overrides)
    return Settings(**values)


def make_context(
    ip: str = "203.0.113.10",
    user_agent: str | None = DESKTOP_UA,
    accept_language: str | None = "en-US,en;q=0.9",
    accept_encoding: str | None = "gzip, deflate, br",
) -> RequestContext:
    return RequestContext(
        user_agent=user_agent,
        accept_language=accept_language,
        accept_encoding=accept_encoding,
        client_ip=ip,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit_sink():
    return RecordingSink()


@pytest.fixture
def users():
    return MemoryUserDirectory()


@pytest.fixture
def make_runtime(clock, audit_sink, users):
    """Factory for isolated runtimes sharing the test's clock, sink and users."""
    built = []

    def _make(**overrides) -> Runtime:
        rt = Runtime(make_settings(**overrides), users=users, audit_sinks=[audit_sink], clock=clock)
        built.append(rt)
        return rt

    yield _make
    for rt in built:
        rt.audit.close()
        rt.ledger.close()


@pytest.fixture
def rt(make_runtime):
    return make_runtime()


@pytest.fixture
def user(users):
    return users.create_user("teacher@example.com", "Kim Teacher")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
