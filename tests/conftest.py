import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="keyward_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from keyward.config import Settings  # noqa: E402
from keyward.service.codec import TokenCodec, hash_password  # noqa: E402
from keyward.service.runtime import reset_runtime_for_tests  # noqa: E402
from keyward.service.sessions import SessionManager  # noqa: E402
from keyward.storage.memory import MemoryStore  # noqa: E402
from keyward.storage.models import User  # noqa: E402

TEST_PASSWORD = "Correct-Horse-9"


class FakeClock:
    """Settable clock injected into services in place of wall time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmail:
    """Email dispatcher that records sends instead of talking to SMTP."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    def _record(self, kind, to_email, **fields):
        self.sent.append({"kind": kind, "to": to_email, **fields})
        return self.succeed

    def send_verification_otp(self, to_email, name, otp, ttl_minutes):
        return self._record("verification", to_email, name=name, otp=otp, ttl=ttl_minutes)

    def send_password_reset_otp(self, to_email, name, otp, ttl_minutes):
        return self._record("password_reset", to_email, name=name, otp=otp, ttl=ttl_minutes)

    def send_two_factor_enabled(self, to_email, name):
        return self._record("two_factor_enabled", to_email, name=name)

    def last(self, kind):
        matches = [m for m in self.sent if m["kind"] == kind]
        return matches[-1] if matches else None


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # each test gets its own persisted store state
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="unit-access-secret-0123456789",
        jwt_refresh_secret="unit-refresh-secret-0123456789",
        bcrypt_rounds=4,
        max_login_attempts=5,
        lockout_minutes=15,
        otp_ttl_minutes=10,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def codec(settings):
    return TokenCodec.from_settings(settings)


@pytest.fixture
def sessions(store, codec, settings, clock):
    return SessionManager(store, codec, settings, clock=clock)


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def failing_email():
    return RecordingEmail(succeed=False)


@pytest.fixture
def make_user(store):
    """Factory for persisted users with a known password."""

    def _make(
        email: str = "alice@example.com",
        password: str = TEST_PASSWORD,
        **fields,
    ) -> User:
        user = User.new(
            email,
            hash_password(password, rounds=4),
            name=fields.pop("name", "Alice"),
            role=fields.pop("role", "user"),
            is_email_verified=fields.pop("is_email_verified", True),
        )
        created = store.create_user(user)
        if fields:
            created = store.update_user(created.id, **fields)
        return created

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
