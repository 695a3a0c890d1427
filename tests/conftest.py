import asyncio
import inspect
import os
import sys
from pathlib import Path

# Seed the environment before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty URL selects the in-memory coordination store without a connection attempt
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("FIELD_ENCRYPTION_KEY", "11" * 32)
os.environ.setdefault("TRANSPORT_ENCRYPTION_KEY", "22" * 32)
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "64")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authgate.service.auth import AuthService  # noqa: E402
from authgate.service.coordination import RateLimitCoordinator  # noqa: E402
from authgate.service.crypto import FieldCipher, PasswordHasher  # noqa: E402
from authgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from authgate.service.sms import SmsDeliveryError  # noqa: E402
from authgate.service.tokens import TokenIssuer  # noqa: E402
from authgate.storage.memory import MemoryStore  # noqa: E402
from authgate.storage.memory_cache import MemoryCache  # noqa: E402

TEST_FIELD_KEY = "11" * 32
TEST_TRANSPORT_KEY = "22" * 32
TEST_JWT_SECRET = "unit-test-secret-with-at-least-32-characters"


class FakeClock:
    """Manually advanced clock shared by the cache and the token issuer."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSms:
    """SMS double that keeps every message and can be told to fail."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    async def send(self, destination: str, text: str) -> None:
        if self.fail:
            raise SmsDeliveryError("provider down")
        self.sent.append((destination, text))

    @property
    def last_code(self) -> str:
        text = self.sent[-1][1]
        return text.split("code is ")[1][:3]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sms():
    return RecordingSms()


@pytest.fixture
def field_cipher():
    return FieldCipher(TEST_FIELD_KEY)


@pytest.fixture
def tokens(clock):
    return TokenIssuer(
        TEST_JWT_SECRET, issuer="authgate", audience="authgate-clients", ttl_minutes=60, clock=clock
    )


@pytest.fixture
def auth_service(store, cache, tokens, field_cipher, sms):
    return AuthService(
        store,
        RateLimitCoordinator(cache),
        tokens,
        hasher=PasswordHasher(time_cost=1, memory_cost=64),
        field_cipher=field_cipher,
        sms=sms,
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
