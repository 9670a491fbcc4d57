import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the process before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ["REDIS_URL"] = ""
os.environ.setdefault("AUTH_SECRET", "test-signing-secret-for-latchkey-tests-only-0123456789")
os.environ.setdefault("ADMIN_PASSWORD", "correct-horse-battery")
os.environ.setdefault("STAFF_PIN", "2468")
os.environ.setdefault("UPLOAD_PIN", "1357")
os.environ.setdefault("CRON_SECRET", "cron-secret-for-latchkey-tests-only-0123456789")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from latchkey.config import Settings  # noqa: E402
from latchkey.service.auth import AuthService  # noqa: E402
from latchkey.service.runtime import reset_runtime_for_tests  # noqa: E402
from latchkey.service.shares import ShareLinkService  # noqa: E402
from latchkey.service.vote_codes import VoteCodeService  # noqa: E402
from latchkey.storage.memory import MemoryCache  # noqa: E402

ADMIN_PASSWORD = os.environ["ADMIN_PASSWORD"]
STAFF_PIN = os.environ["STAFF_PIN"]
UPLOAD_PIN = os.environ["UPLOAD_PIN"]
CRON_SECRET = os.environ["CRON_SECRET"]


class FakeClock:
    """Deterministic wall clock that tests move forward explicitly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        redis_url=None,
        test_mode=True,
        auth_secret=os.environ["AUTH_SECRET"],
        admin_password=ADMIN_PASSWORD,
        staff_pin=STAFF_PIN,
        upload_pin=UPLOAD_PIN,
        cron_secret=CRON_SECRET,
    )


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def pin_hasher():
    # Cheap parameters keep PIN hashing fast under test
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)


@pytest.fixture
def auth(cache, settings, clock):
    return AuthService(cache, settings, clock=clock)


@pytest.fixture
def shares(cache, settings, clock, pin_hasher):
    return ShareLinkService(cache, settings, clock=clock, password_hasher=pin_hasher)


@pytest.fixture
def vote_codes(cache, settings, clock):
    return VoteCodeService(cache, settings, clock=clock)


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
