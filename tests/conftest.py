import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="trustcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit tests; the runtime falls back to process-local state
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from trustcore.config import Settings  # noqa: E402
from trustcore.service.audit import AuditRecorder  # noqa: E402
from trustcore.service.auth import AuthenticationCoordinator  # noqa: E402
from trustcore.service.hashing import CredentialHasher  # noqa: E402
from trustcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from trustcore.service.tokens import TokenIssuer  # noqa: E402
from trustcore.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Correct-Horse-Battery-42"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    # Restore env a test changed before rebuilding the runtime
    monkeypatch.undo()
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()


@pytest.fixture(scope="session")
def hasher():
    # argon2 setup is slow enough to share across the session
    return CredentialHasher()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def recorder(memory_store):
    return AuditRecorder(memory_store)


@pytest.fixture
def coordinator(settings, memory_store, hasher, recorder):
    return AuthenticationCoordinator(
        settings,
        memory_store,
        memory_store,
        hasher=hasher,
        issuer=TokenIssuer(settings),
        audit=recorder,
    )


@pytest.fixture
def secret():
    return TEST_SECRET


@pytest.fixture
def identity(memory_store, hasher):
    digest, algo = hasher.hash_password(TEST_SECRET)
    return memory_store.create_identity(
        "u1",
        email="u1@example.com",
        secret_digest=digest,
        secret_algo=algo,
        email_verified=True,
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
