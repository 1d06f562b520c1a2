import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="admingate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from admingate.service.replay_guard import ReplayGuard  # noqa: E402
from admingate.service.session import SessionManager  # noqa: E402
from admingate.service.two_factor import TwoFactorAuth  # noqa: E402
from admingate.storage.memory import MemoryStore  # noqa: E402

# RFC 6238 appendix B seed ("12345678901234567890") in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
BACKUP_CODES = ["ABCD1234", "EFGH5678", "JKLM9012"]


class FakeClock:
    """Monotonic clock stand-in that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key")


@pytest.fixture
def guard(clock):
    return ReplayGuard(ttl_seconds=300, clock=clock)


@pytest.fixture
def two_factor(guard):
    return TwoFactorAuth("Admin Console", guard=guard)


@pytest.fixture
def manager(memory_store, two_factor, guard):
    return SessionManager(memory_store, two_factor, guard, validity_minutes=30)


@pytest.fixture
def admin(memory_store):
    """Admin with 2FA enabled on the RFC test secret and three backup codes."""
    user = memory_store.create_admin("admin@example.com", "Site Admin")
    return memory_store.set_two_factor(
        user.id, secret=RFC_SECRET, backup_codes=list(BACKUP_CODES), enabled=True
    )


@pytest.fixture
def plain_admin(memory_store):
    """Admin without two-factor authentication."""
    return memory_store.create_admin("editor@example.com", "Editor")


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
