import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="agora_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from agora.config import Settings  # noqa: E402
from agora.service.auth import AuthService  # noqa: E402
from agora.service.hashing import PasswordHashing  # noqa: E402
from agora.service.runtime import reset_runtime_for_tests  # noqa: E402
from agora.service.tokens import TokenService  # noqa: E402
from agora.storage.memory import MemoryStore  # noqa: E402


class RecordingEmail:
    """Email double that records every send instead of talking to SMTP."""

    def __init__(self, succeed: bool = True):
        self.sent = []
        self.succeed = succeed

    def _record(self, kind, *args):
        self.sent.append((kind, args))
        return self.succeed

    def send_reset_password_account(self, to_email, code):
        return self._record("reset_password_account", to_email, code)

    def send_notification_reset_password(self, to_email):
        return self._record("notification_reset_password", to_email)

    def send_detect_other_device(self, to_email, ip_address, user_agent, device_name):
        return self._record("detect_other_device", to_email, ip_address, user_agent, device_name)

    def kinds(self):
        return [kind for kind, _ in self.sent]

    def last(self, kind):
        for sent_kind, args in reversed(self.sent):
            if sent_kind == kind:
                return args
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh JSON state per test so HTTP tests never see each other's users
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def hashing():
    return PasswordHashing()


@pytest.fixture
def email_outbox():
    return RecordingEmail()


@pytest.fixture
def token_service(memory_store, settings, hashing):
    return TokenService(memory_store, settings, hashing)


@pytest.fixture
def auth_service(memory_store, settings, email_outbox, token_service, hashing):
    return AuthService(
        memory_store,
        settings,
        email=email_outbox,
        tokens=token_service,
        hashing=hashing,
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
