import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before any import that builds settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="medgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "64")
os.environ.setdefault("EMAIL_BACKOFF_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from medgate.config import Settings  # noqa: E402
from medgate.service.auth import AuthService  # noqa: E402
from medgate.service.email import EmailDispatchError, EmailService  # noqa: E402
from medgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from medgate.service.sessions import SessionIssuer  # noqa: E402
from medgate.storage.memory import MemoryStore  # noqa: E402

ADMIN_PASSWORD = "Admin1234"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingDispatcher:
    """Captures outbound mail; can be told to fail the next N sends."""

    def __init__(self):
        self.sent = []
        self.fail_next = 0
        self.fail_always = False

    async def send(self, to_email, subject, html_body, text_body):
        if self.fail_always or self.fail_next > 0:
            if self.fail_next > 0:
                self.fail_next -= 1
            raise EmailDispatchError("smtp unavailable")
        self.sent.append(
            {"to": to_email, "subject": subject, "html": html_body, "text": text_body}
        )
        return f"msg-{len(self.sent)}"

    def last_to(self, email):
        return next(m for m in reversed(self.sent) if m["to"] == email)


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


@pytest.fixture
def settings():
    """Settings with a cheap hash cost and no email backoff."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        password_hash_cost=1,
        password_hash_memory_kib=64,
        email_backoff_seconds=0,
        email_max_attempts=3,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def email_service(settings, dispatcher):
    return EmailService(settings, dispatcher=dispatcher)


@pytest.fixture
def sessions(settings, clock, store):
    return SessionIssuer(settings, clock, store=store)


@pytest.fixture
def auth_service(store, settings, email_service, sessions, clock):
    return AuthService(
        store, settings, email_service=email_service, sessions=sessions, clock=clock
    )


def _hospital_fields(n: int = 1) -> dict:
    return {
        "name": f"General Hospital {n}",
        "email": f"contact{n}@hospital{n}.org",
        "registration_number": f"REG-{n:05d}",
        "license_number": f"LIC-{n:05d}",
        "hospital_number": f"HN-{n:05d}",
    }


def _admin_fields(n: int = 1, password: str = ADMIN_PASSWORD) -> dict:
    return {
        "name": f"Admin Person {n}",
        "job_title": "Chief Administrator",
        "email": f"admin{n}@hospital{n}.org",
        "password": password,
    }


@pytest.fixture
def verified_tenant(auth_service, store):
    """Register and verify hospital #1; returns the login result."""

    async def _setup():
        await auth_service.register_tenant(_hospital_fields(1), _admin_fields(1))
        record = store.latest_verification("admin1@hospital1.org", "hospital_registration")
        return await auth_service.verify_registration("admin1@hospital1.org", record.token)

    return asyncio.run(_setup())


@pytest.fixture
def admin_principal(auth_service, verified_tenant):
    return asyncio.run(auth_service.authenticate(verified_tenant.token))


@pytest.fixture
def hospital_fields():
    return _hospital_fields


@pytest.fixture
def admin_fields():
    return _admin_fields
