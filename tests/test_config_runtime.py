import pydantic
import pytest

from trustcore.config import FederationKind, Settings, get_settings, reset_settings_cache
from trustcore.service import runtime as runtime_module
from trustcore.service.runtime import _mask_url_password, get_runtime, reset_runtime_for_tests
from trustcore.storage.memory import MemoryStore

JWT = "Test-Secret-Key_for-Automation-Only-987654321!"


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
    monkeypatch.setenv("FEDERATION_PROVIDER", "GitHub")
    monkeypatch.setenv("REQUIRE_VERIFIED_IDENTITY", "true")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 30
    assert settings.federation_provider == FederationKind.GITHUB
    assert settings.require_verified_identity is True


def test_settings_fall_back_to_dotenv(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("JWT_ISSUER", raising=False)
    (tmp_path / ".env").write_text("JWT_ISSUER=from-dotenv\n")

    assert Settings.from_env().jwt_issuer == "from-dotenv"


def test_settings_reject_non_positive_values():
    with pytest.raises(pydantic.ValidationError):
        Settings(jwt_secret=JWT, access_token_ttl_minutes=0)
    with pytest.raises(pydantic.ValidationError):
        Settings(jwt_secret=JWT, store_timeout_seconds=0)
    with pytest.raises(pydantic.ValidationError):
        Settings(jwt_secret=JWT, federation_provider="myspace")


def test_empty_federation_provider_disables_federation():
    assert Settings(jwt_secret=JWT, federation_provider="").federation_provider is None


def test_generated_jwt_secret_is_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None).jwt_secret
    second = Settings(jwt_secret=None).jwt_secret

    assert first == second
    assert len(first) >= 32
    assert (tmp_path / ".jwt_secret").read_text() == first


def test_settings_are_cached(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("JWT_ISSUER", "changed")
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().jwt_issuer == "changed"


def test_mask_url_password():
    assert _mask_url_password("redis://:secret@localhost:6379/0") == "redis://:***@localhost:6379/0"
    assert (
        _mask_url_password("postgresql://app:pw@db:5432/trust")
        == "postgresql://app:***@db:5432/trust"
    )
    assert _mask_url_password("redis://localhost:6379") == "redis://localhost:6379"
    assert _mask_url_password("") == ""
    assert _mask_url_password(None) is None


def test_runtime_uses_memory_store_without_redis():
    runtime = get_runtime()

    assert runtime is get_runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert runtime.cache is None
    assert runtime.federation is None
    assert runtime.retention.cipher is not None


def test_runtime_reset_refused_outside_test_mode(monkeypatch):
    with monkeypatch.context() as patch:
        patch.setenv("TEST_MODE", "false")
        with pytest.raises(RuntimeError):
            reset_runtime_for_tests()
    reset_settings_cache()


def test_runtime_requires_redis_outside_test_mode(monkeypatch):
    with monkeypatch.context() as patch:
        patch.setenv("TEST_MODE", "false")
        patch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
        reset_settings_cache()
        with pytest.raises(RuntimeError, match="Redis is required"):
            runtime_module.Runtime()
    reset_settings_cache()


async def test_runtime_wires_login_and_audit(secret):
    runtime = get_runtime()
    digest, algo = runtime.hasher.hash_password(secret)
    runtime.store.create_identity("operator", secret_digest=digest, secret_algo=algo)

    result = await runtime.auth.authenticate("operator", secret)

    assert result.ok
    report = await runtime.integrity.generate_report(1, 1)
    assert report.all_verified
    await runtime.aclose()


async def test_runtime_start_launches_retention():
    runtime = get_runtime()
    await runtime.start()
    assert runtime.retention.running
    await runtime.aclose()
    assert not runtime.retention.running
