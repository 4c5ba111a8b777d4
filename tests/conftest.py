import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionward.config import Settings  # noqa: E402
from sessionward.service.session import SessionService  # noqa: E402
from sessionward.storage.memory import MemoryStore  # noqa: E402

# Start on a 30 second boundary so TOTP step arithmetic in tests is exact
CLOCK_START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
STRONG_PASSWORD = "Str0ngPass!"


class FrozenClock:
    """Manually advanced clock shared by the codec, store and service."""

    def __init__(self, start: datetime = CLOCK_START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []
        self.fail = False

    def send_verification(self, principal, token: str) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.verifications.append((principal.email, token))

    def send_password_reset(self, principal, token: str) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.resets.append((principal.email, token))


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    """Create test settings with a cheap argon2 cost."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        argon2_time_cost=1,
        argon2_memory_cost=8,
        argon2_parallelism=1,
    )


@pytest.fixture
def store(settings, clock):
    return MemoryStore(mfa_encryption_key=settings.jwt_secret, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(store, settings, notifier, clock):
    return SessionService(store, settings, notifier=notifier, clock=clock)


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
