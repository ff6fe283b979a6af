import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sportauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-0123456789")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "test-mfa-encryption-key")
os.environ.setdefault("OAUTH_CALLBACK_SECRET", "test-oauth-callback-secret")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sportauth.service.api_keys import ApiKeyManager  # noqa: E402
from sportauth.service.audit import AuditPipeline, RequestContext  # noqa: E402
from sportauth.service.auth import AuthOrchestrator  # noqa: E402
from sportauth.service.events import EventBus  # noqa: E402
from sportauth.service.lockout import LockoutGuard  # noqa: E402
from sportauth.service.mfa import MfaEngine  # noqa: E402
from sportauth.service.oauth import OAuthLinkManager  # noqa: E402
from sportauth.service.passwords import PasswordPolicy  # noqa: E402
from sportauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from sportauth.service.sessions import SessionStore  # noqa: E402
from sportauth.service.tokens import TokenIssuer  # noqa: E402
from sportauth.storage.memory import MemoryStore  # noqa: E402


class FakeEmail:
    """Captures outgoing recovery and verification tokens instead of sending."""

    is_configured = True

    def __init__(self):
        self.password_resets = []
        self.verifications = []

    def send_password_reset(self, to_email, token):
        self.password_resets.append((to_email, token))

    def send_email_verification(self, to_email, token):
        self.verifications.append((to_email, token))

    def shutdown(self, wait=True):
        pass


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh state directory per test keeps persisted accounts from leaking
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def passwords():
    return PasswordPolicy(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def audit(store):
    return AuditPipeline(store)


@pytest.fixture
def tokens():
    return TokenIssuer(
        "unit-access-secret-0123456789abcdef",
        "unit-refresh-secret-0123456789abcdef",
        issuer="sportification-api",
        audience="sportification-client",
        access_ttl_seconds=900,
        refresh_ttl_seconds=3600,
        challenge_ttl_seconds=300,
    )


@pytest.fixture
def sessions(store, audit):
    return SessionStore(store, audit, max_sessions=5)


@pytest.fixture
def lockout(store):
    return LockoutGuard(store, threshold=5, lock_minutes=15)


@pytest.fixture
def mfa(store, passwords, audit):
    return MfaEngine(store, passwords, audit, backup_code_count=4)


@pytest.fixture
def email():
    return FakeEmail()


@pytest.fixture
def auth(store, passwords, tokens, mfa, sessions, lockout, audit, email):
    return AuthOrchestrator(
        store,
        passwords=passwords,
        tokens=tokens,
        mfa=mfa,
        sessions=sessions,
        lockout=lockout,
        audit=audit,
        email=email,
    )


@pytest.fixture
def oauth(store, auth, audit):
    return OAuthLinkManager(store, auth, audit)


@pytest.fixture
def api_keys(store, audit):
    return ApiKeyManager(store, store, audit)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def context():
    return RequestContext(ip_address="203.0.113.7", user_agent="pytest", session_id="req-1")


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
