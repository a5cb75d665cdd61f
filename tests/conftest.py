import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="idkeeper_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Revocation and OAuth state fall back to the store and process memory without Redis
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from idkeeper.service.email import NotificationKind  # noqa: E402
from idkeeper.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingNotifier:
    """Notification gateway double that keeps every delivered code."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, NotificationKind, str]] = []

    def deliver(self, recipient, kind, code):
        if self.fail:
            return False
        self.sent.append((recipient, NotificationKind(kind), code))
        return True

    def last_code(self, kind=None):
        for recipient, sent_kind, code in reversed(self.sent):
            if kind is None or sent_kind == kind:
                return code
        raise AssertionError(f"no {kind} notification was sent")


@pytest.fixture
def notifier():
    return RecordingNotifier()


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
