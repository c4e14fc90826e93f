import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402
import structlog  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from piauth.config import Settings  # noqa: E402
from piauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from piauth.storage.models import DeviceInfo, Principal  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced wall clock for deterministic expiry tests."""

    def __init__(self, start: float = START_TIME):
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
    return Settings(jwt_secret=TEST_SECRET, clock_skew_leeway_seconds=30)


@pytest.fixture
def device():
    return DeviceInfo(
        device_id="device-123",
        user_agent="MapOfPi/1.4.0 (Android 14)",
        platform="Android",
        app_version="1.4.0",
        ip_address="41.32.10.5",
    )


@pytest.fixture
def other_device():
    return DeviceInfo(
        device_id="device-999",
        user_agent="Mozilla/5.0 (Windows NT 10.0)",
        platform="Windows",
        app_version="1.4.0",
        ip_address="41.32.10.5",
    )


@pytest.fixture
def principal():
    return Principal(user_id="user-1", pi_id="pi-alice", roles=["user"], kyc_status="verified")


@pytest.fixture
def merchant():
    return Principal(
        user_id="user-2",
        pi_id="pi-bob",
        roles=["user", "merchant"],
        is_merchant=True,
        kyc_status="verified",
    )


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
    # capture_logs only sees loggers that were not cached on first use
    structlog.configure(cache_logger_on_first_use=False)
