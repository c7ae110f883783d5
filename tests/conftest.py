import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="wastewise_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Rate limit buckets stay in-process so every test starts with a full budget
os.environ["REDIS_URL"] = ""
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from wastewise.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeNotifier:
    """Records every code handed to it instead of sending email."""

    def __init__(self, *, succeed: bool = True):
        self.succeed = succeed
        self.sent: list[tuple[str, str, str]] = []

    def send(self, email: str, code: str, flow: str) -> bool:
        self.sent.append((email, code, flow))
        return self.succeed

    def last_code(self, flow: str | None = None) -> str:
        for _, code, sent_flow in reversed(self.sent):
            if flow is None or sent_flow == flow:
                return code
        raise AssertionError("no code was sent")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def fake_notifier():
    """A recording notifier for services built directly in a test."""
    return FakeNotifier()


@pytest.fixture
def notifier(fake_notifier):
    """Swap the runtime's email notifier for the recording fake."""
    from wastewise.service.runtime import get_runtime

    get_runtime().codes.notifier = fake_notifier
    return fake_notifier


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
