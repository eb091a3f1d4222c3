import asyncio
import inspect
import os
import re
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="gonews_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GONEWS_TOKEN_STORE", "memory")
os.environ.setdefault("GONEWS_TOKEN_STORE_PATH", os.path.join(_test_tmp_dir, "session.json"))
os.environ.setdefault("GONEWS_API_BASE_URL", "http://testserver")
os.environ.setdefault("OTP_RESEND_COOLDOWN_SECONDS", "0")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gonews.app import create_app  # noqa: E402
from gonews.backend.models import User  # noqa: E402
from gonews.config import Settings, TokenStoreBackend  # noqa: E402
from gonews.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from gonews.storage.kv import MemoryKeyValueStore  # noqa: E402

DEMO_EMAIL = "demo@gonews.com"
DEMO_PASSWORD = "Demo12345"

_CODE_RE = re.compile(r"Your verification code: (\d{6})")


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
    """Settings for in-process tests: memory token store, fast retries."""
    return Settings(
        api_base_url="http://testserver",
        jwt_secret="test-secret-key-for-testing-only-do-not-use-in-production",
        token_store_backend=TokenStoreBackend.MEMORY,
        get_retry_delay_seconds=0,
        refresh_backoff_base_seconds=0,
        refresh_backoff_max_seconds=0,
        otp_resend_cooldown_seconds=0,
        test_mode=True,
    )


@pytest.fixture
def backend_app(settings):
    """The reference auth backend with one verified demo user."""
    app = create_app(settings)
    accounts = app.state.accounts
    app.state.store.create_user(
        User.new(email=DEMO_EMAIL, name="Demo User", is_verified=True),
        accounts._hash_password(DEMO_PASSWORD),
    )
    return app


@pytest.fixture
def runtime(settings, backend_app):
    """Client runtime wired to the backend app over ASGI."""
    return Runtime(
        settings,
        kv_store=MemoryKeyValueStore(),
        transport=httpx.ASGITransport(app=backend_app),
    )


def latest_code(app, email: str) -> str:
    """Pull the most recent OTP mailed to ``email`` out of the test outbox."""
    for message in reversed(app.state.email.outbox):
        if message.to == email:
            match = _CODE_RE.search(message.text_body)
            if match:
                return match.group(1)
    raise AssertionError(f"no OTP mailed to {email}")


@pytest.fixture
def otp_code(backend_app):
    return lambda email: latest_code(backend_app, email)


@pytest.fixture
def demo_credentials():
    return DEMO_EMAIL, DEMO_PASSWORD
