import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

_test_tmp_dir = tempfile.mkdtemp(prefix="tokenwarden_test_")


def _generate_private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


TEST_PRIVATE_KEY_PEM = _generate_private_key_pem()

# Set before any import that might build the runtime
os.environ.setdefault("STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PLATFORM_JWT_PRIVATE_KEY", TEST_PRIVATE_KEY_PEM)
os.environ.setdefault("PASSWORD_HASH_WORKERS", "2")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tokenwarden.config import Settings  # noqa: E402
from tokenwarden.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenwarden.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh on-disk state per test so runtime stores never share records
    monkeypatch.setenv("STATE_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def private_key_pem():
    return TEST_PRIVATE_KEY_PEM


@pytest.fixture
def settings(private_key_pem):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        jwt_issuer="tokenwarden-test",
        jwt_audience="tokenwarden-test-clients",
        platform_private_key=private_key_pem,
        platform_issuer="https://auth.example.test",
        platform_audience="platform-test",
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


class FakeClock:
    """Settable clock for expiry and window tests."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        from datetime import timedelta

        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    from datetime import datetime, timezone

    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


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
