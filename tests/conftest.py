import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports keyward.config
_test_tmp_dir = tempfile.mkdtemp(prefix="keyward_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis by default; the runtime falls back to MemoryCache under TEST_MODE
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from keyward.service.admin import AdminService  # noqa: E402
from keyward.service.auth import AuthService  # noqa: E402
from keyward.service.delivery import DeliveryDispatcher  # noqa: E402
from keyward.service.runtime import reset_runtime_for_tests  # noqa: E402
from keyward.service.tokens import PasswordService, TokenSigner  # noqa: E402
from keyward.service.user import UserService  # noqa: E402
from keyward.service.verification import VerificationService  # noqa: E402
from keyward.storage.memory import MemoryStore  # noqa: E402
from keyward.storage.memory_cache import MemoryCache  # noqa: E402
from keyward.storage.models import ChannelType  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class RecordingSender:
    """Code sender double that records deliveries and can fail on demand."""

    def __init__(self, failures: int = 0, *, raises: bool = False):
        self.failures = failures
        self.raises = raises
        self.calls = []
        self.sent = []

    def send_verification_code(self, destination, code):
        self.calls.append((destination, code))
        if self.failures > 0:
            self.failures -= 1
            if self.raises:
                raise ConnectionError("gateway down")
            return False
        self.sent.append((destination, code))
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def passwords():
    return PasswordService(time_cost=1, memory_cost=8 * 1024)


@pytest.fixture
def signer():
    return TokenSigner(TEST_SECRET, issuer="keyward", audience="keyward-clients")


@pytest.fixture
def email_sender():
    return RecordingSender()


@pytest.fixture
def sms_sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(email_sender, sms_sender):
    return DeliveryDispatcher(
        {ChannelType.EMAIL: email_sender, ChannelType.PHONE: sms_sender},
        attempt_timeout=2.0,
        retry_delay=0,
    )


@pytest.fixture
def verification(memory_store, cache, dispatcher):
    return VerificationService(memory_store, memory_store, cache, dispatcher)


@pytest.fixture
def auth_service(memory_store, cache, signer, passwords, verification):
    return AuthService(memory_store, cache, signer, passwords, verification)


@pytest.fixture
def admin_service(memory_store):
    return AdminService(memory_store)


@pytest.fixture
def user_service(memory_store, cache, passwords):
    return UserService(memory_store, cache, passwords)


@pytest.fixture
def make_user(memory_store, passwords):
    """Insert a user directly, bypassing signup."""

    def _make(
        username="alice",
        password="CorrectHorse123!",
        *,
        email="alice@example.com",
        phone=None,
        email_verified=True,
        phone_verified=False,
    ):
        return memory_store.create_user(
            username,
            passwords.hash(password),
            email=email,
            phone=phone,
            email_verified=email_verified,
            phone_verified=phone_verified,
        )

    return _make


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
