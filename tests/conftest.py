import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="idwarden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps send windows in-process for deterministic tests
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters; production costs are exercised by config defaults
for _name in ("PASSWORD_HASH", "CODE_HASH"):
    os.environ.setdefault(f"{_name}_TIME_COST", "1")
    os.environ.setdefault(f"{_name}_MEMORY_COST", "1024")
    os.environ.setdefault(f"{_name}_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from idwarden.config import Settings  # noqa: E402
from idwarden.service.runtime import reset_runtime_for_tests  # noqa: E402
from idwarden.storage.memory import MemoryStore  # noqa: E402


class CollectingAudit:
    """AuditEmitter that keeps events in memory."""

    def __init__(self):
        self.events = []

    def record(self, event):
        self.events.append(event)
        return None

    def of_type(self, event_type):
        return [e for e in self.events if e.event_type == event_type]


class CapturingDispatcher:
    """Dispatcher that remembers the last code sent to each target."""

    def __init__(self):
        self.sent = []

    async def deliver(self, target, code, purpose):
        self.sent.append((target, code, purpose))

    def last_code(self, target=None):
        for sent_target, code, _ in reversed(self.sent):
            if target is None or sent_target == target:
                return code
        raise AssertionError(f"no code delivered to {target}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings with fast hashing and a fixed signing key."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        password_hash_parallelism=1,
        code_hash_time_cost=1,
        code_hash_memory_cost=1024,
        code_hash_parallelism=1,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def audit_events():
    return CollectingAudit()


@pytest.fixture
def dispatcher():
    return CapturingDispatcher()


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
