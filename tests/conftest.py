import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before any import that might build settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="storekeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
# Sessions and rate limits stay process-local in tests
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from storekeep.config import Settings  # noqa: E402
from storekeep.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from storekeep.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "Passw0rd!"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    """Give every test its own store directory and a fresh runtime."""
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(secret_key="unit-test-secret-key-with-enough-length-0123456789")


@pytest.fixture
def store(tmp_path, settings):
    return MemoryStore(fs_root=str(tmp_path / "store"), secret_key=settings.secret_key)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def make_user(runtime):
    """Create an account through the identity provider, with optional roles."""

    def _make_user(
        user_name,
        *,
        email=None,
        password=TEST_PASSWORD,
        roles=(),
        name=None,
        location_id=None,
        is_active=True,
        two_factor=False,
        security_question=None,
        security_answer=None,
    ):
        identity = runtime.identity
        result, user = identity.create_user(
            user_name,
            email or f"{user_name}@example.com",
            password,
            name=name,
            location_id=location_id,
            is_active=is_active,
            security_question=security_question,
            security_answer=security_answer,
        )
        assert result.succeeded, result.messages
        for role_name in roles:
            if identity.find_role_by_name(role_name) is None:
                identity.create_role(role_name)
            assert identity.add_to_role(user, role_name).succeeded
        if two_factor:
            user = identity.set_two_factor_enabled(user, True)
        return identity.find_by_id(user.id)

    return _make_user


@pytest.fixture
def sent_codes(runtime, monkeypatch):
    """Capture two-factor codes instead of handing them to the mailer."""
    codes = []

    def _capture(to_email, code):
        codes.append((to_email, code))
        return True

    monkeypatch.setattr(runtime.email, "send_two_factor_code", _capture)
    return codes


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
