import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="findclass_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Blank keeps every test on the in-process fallbacks so state cannot leak between tests
os.environ["REDIS_URL"] = ""
for _smtp_var in ("SMTP_HOST", "SMTP_USER", "SMTP_PASSWORD"):
    os.environ.pop(_smtp_var, None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from findclass.service.runtime import reset_runtime_for_tests  # noqa: E402

STRONG_PASSWORD = "Str0ng@Passw0rd!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from findclass import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def register(client):
    """Register an account over HTTP and return ``(user, headers, tokens)``."""

    def _register(email="parent@example.com", role="PARENT", name="Test User", password=STRONG_PASSWORD):
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": email, "password": password, "name": name, "role": role},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()["data"]
        headers = {"Authorization": f"Bearer {data['tokens']['access_token']}"}
        return data["user"], headers, data["tokens"]

    return _register


@pytest.fixture
def admin_headers(client):
    """Create an ADMIN directly in the store and log in over HTTP."""
    from findclass.service.runtime import get_runtime

    runtime = get_runtime()
    user = runtime.store.create_user(
        "admin@findclass.nz", "Admin", role="ADMIN", status="ACTIVE"
    )
    runtime.auth.save_password(user.id, STRONG_PASSWORD)
    resp = client.post(
        "/api/v1/auth/login", json={"email": "admin@findclass.nz", "password": STRONG_PASSWORD}
    )
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['data']['tokens']['access_token']}"}


@pytest.fixture
def teacher_setup(client, register):
    """A TEACHER account with a teacher profile; returns ``(headers, teacher_id)``."""
    _, headers, _ = register(email="teacher@example.com", role="TEACHER", name="Ms Teacher")
    resp = client.post(
        "/api/v1/teachers/onboarding",
        json={
            "display_name": "Ms Teacher",
            "bio": "Piano and maths tutor",
            "teaching_subjects": ["MATH", "MUSIC"],
            "teaching_modes": ["ONLINE", "OFFLINE"],
            "locations": ["Auckland"],
        },
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    return headers, resp.json()["data"]["teacher_id"]


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
