import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessiongate.config import Settings  # noqa: E402
from sessiongate.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from sessiongate.storage.memory import MemoryIdentityStore, MemoryKVStore  # noqa: E402
from sessiongate.storage.models import Identity, Role  # noqa: E402

ACCESS_SECRET = "unit-access-secret-0123456789abcdef0123456789abcdef"
REFRESH_SECRET = "unit-refresh-secret-fedcba9876543210fedcba9876543210"
USER_PASSWORD = "CorrectHorseBattery9!"
ADMIN_PASSWORD = "AdminPassphrase-2024!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        jwt_access_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        cookie_secure=False,
    )


@pytest.fixture
def kv():
    return MemoryKVStore()


@pytest.fixture
def user_42():
    return Identity(
        id="42",
        role=Role.USER,
        name="Ada Reader",
        username="ada",
        email="ada@example.com",
    )


@pytest.fixture
def user_7():
    return Identity(
        id="7",
        role=Role.USER,
        name="Grace Reader",
        username="grace",
        email="grace@example.com",
    )


@pytest.fixture
def staff_member():
    return Identity(
        id="s-1",
        role=Role.STAFF,
        name="Sam Staff",
        username="sam",
        email="sam@example.com",
        permissions=frozenset({"books:write", "fines:read"}),
    )


@pytest.fixture
def admin_identity():
    return Identity(
        id="a-1",
        role=Role.ADMIN,
        name="Alex Admin",
        username="alex",
        email="alex@example.com",
    )


@pytest.fixture
def identities(user_42, user_7, staff_member, admin_identity):
    store = MemoryIdentityStore()
    store.add(user_42, password=USER_PASSWORD)
    store.add(user_7, password=USER_PASSWORD)
    store.add(staff_member, password=USER_PASSWORD)
    store.add(admin_identity, password=ADMIN_PASSWORD)
    return store


@pytest.fixture
def runtime(settings, kv, identities):
    """Fully wired services over in-memory backends."""
    return Runtime(settings, store=kv, identities=identities)


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
