import asyncio
import inspect
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="portal_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_PEPPER", "test-pepper-for-testing-only-do-not-use-in-production")
# cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")
os.environ.setdefault("HOME_EMAIL_DOMAIN", "example.com")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from portal.config import Settings  # noqa: E402
from portal.service.auth import AuthService  # noqa: E402
from portal.service.directory import DirectoryService  # noqa: E402
from portal.service.passwords import PasswordService  # noqa: E402
from portal.service.rbac import RbacResolver  # noqa: E402
from portal.service.runtime import reset_runtime_for_tests  # noqa: E402
from portal.service.tokens import TokenIssuer  # noqa: E402
from portal.storage.memory import MemoryStore  # noqa: E402
from portal.storage.models import utcnow  # noqa: E402


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now=None):
        self.now = now or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)


class RecordingMailer:
    """Stands in for EmailService and keeps every message it was asked to send."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    @property
    def is_configured(self) -> bool:
        return True

    def send_email_verification(self, to_email, first_name, token):
        self.sent.append(("verify", to_email, token))
        return self.succeed

    def send_password_reset(self, to_email, first_name, token):
        self.sent.append(("reset", to_email, token))
        return self.succeed

    def last_token(self, kind):
        for sent_kind, _, token in reversed(self.sent):
            if sent_kind == kind:
                return token
        return None


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        shared_fs_root=str(tmp_path),
        jwt_secret="j" * 40,
        password_pepper="p" * 40,
        password_time_cost=1,
        password_memory_cost=8,
        password_parallelism=1,
        home_email_domain="example.com",
    )
    values.update(overrides)
    return Settings(**values)


def build_services(store, settings, mailer, clock):
    passwords = PasswordService(settings)
    tokens = TokenIssuer(store, settings, clock=clock)
    rbac = RbacResolver(store, settings)
    directory = DirectoryService(store, settings)
    auth = AuthService(
        store,
        settings,
        passwords=passwords,
        tokens=tokens,
        rbac=rbac,
        directory=directory,
        email=mailer,
        clock=clock,
    )
    return SimpleNamespace(
        store=store,
        settings=settings,
        mailer=mailer,
        clock=clock,
        passwords=passwords,
        tokens=tokens,
        rbac=rbac,
        directory=directory,
        auth=auth,
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def services(store, settings, mailer, clock):
    return build_services(store, settings, mailer, clock)


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
