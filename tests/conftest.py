import asyncio
import inspect
import os
import sys
from pathlib import Path

# Must be set before anything imports tokengate.config or tokengate.app
os.environ["JWT_SECRET"] = "test-secret-key-for-testing-only-do-not-use-in-production"
os.environ["OAUTH_CLIENT_ID"] = "test-client-id"
os.environ["OAUTH_CLIENT_SECRET"] = "test-client-secret"
os.environ["OAUTH_PROVIDER"] = "google"
os.environ["USE_MEMORY_STORE"] = "true"
os.environ["REDIS_URL"] = ""
os.environ["ALLOWED_RETURN_ORIGINS"] = "http://localhost:5173"
os.environ["CORS_ALLOW_ORIGINS"] = "http://localhost:5173"

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokengate.config import Settings  # noqa: E402
from tokengate.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        oauth_client_id="client-id",
        oauth_client_secret="client-secret",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
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
