"""Federated sign-on: provider exchange, state handling and provisioning."""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from trustcore.config import FederationKind, Settings
from trustcore.service.auth import AuthenticationCoordinator
from trustcore.service.errors import ConfigurationError, ErrorKind, FederationError
from trustcore.service.federation import (
    GITHUB_EMAILS_URL,
    FederationBridge,
    OIDCProvider,
    StaticCodeProvider,
    build_federation_provider,
    parse_userinfo,
)
from trustcore.service.tokens import TokenIssuer
from trustcore.storage.models import AuditCategory, AuditSeverity

REDIRECT = "https://app.example.com/callback"


def _oidc(handler, name="oidc"):
    return OIDCProvider(
        name,
        client_id="client",
        client_secret="shh",
        auth_url="https://idp.example.com/authorize",
        token_url="https://idp.example.com/token",
        userinfo_url="https://idp.example.com/userinfo",
        transport=httpx.MockTransport(handler),
    )


def _happy_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/token":
        body = parse_qs(request.content.decode())
        assert body["code"] == ["good-code"]
        assert body["grant_type"] == ["authorization_code"]
        return httpx.Response(200, json={"access_token": "at-1", "id_token": "idt"})
    if request.url.path == "/userinfo":
        assert request.headers["Authorization"] == "Bearer at-1"
        return httpx.Response(
            200,
            json={
                "sub": "ext-42",
                "email": "fed@example.com",
                "email_verified": True,
                "given_name": "Fed",
                "family_name": "User",
            },
        )
    return httpx.Response(404)


@pytest.fixture
def static_provider():
    provider = StaticCodeProvider()
    provider.register_code(
        "code-1",
        {"sub": "ext-1", "email": "fed@example.com", "email_verified": True},
    )
    return provider


@pytest.fixture
def federated_coordinator(settings, memory_store, hasher, recorder, static_provider):
    return AuthenticationCoordinator(
        settings,
        memory_store,
        memory_store,
        hasher=hasher,
        issuer=TokenIssuer(settings),
        audit=recorder,
        federation=FederationBridge(static_provider),
    )


class TestParseUserinfo:
    def test_google(self):
        profile = parse_userinfo(
            "google",
            {"id": "g1", "email": "a@example.com", "verified_email": True, "given_name": "A"},
        )
        assert profile.subject_external_id == "g1"
        assert profile.email_verified is True
        assert profile.display_name == "A"

    def test_github_name_split_and_unverified(self):
        profile = parse_userinfo("github", {"id": 7, "email": None, "name": "Ada Lovelace"})
        assert profile.subject_external_id == "7"
        assert profile.email == ""
        assert profile.given_name == "Ada"
        assert profile.family_name == "Lovelace"
        assert profile.email_verified is False

    def test_microsoft_falls_back_to_upn(self):
        profile = parse_userinfo("microsoft", {"id": "m1", "userPrincipalName": "m@corp.example"})
        assert profile.email == "m@corp.example"

    def test_missing_subject(self):
        with pytest.raises(FederationError):
            parse_userinfo("oidc", {"email": "x@example.com"})


async def test_oidc_exchange_happy_path():
    bridge = FederationBridge(_oidc(_happy_handler))
    profile = await bridge.exchange("good-code", REDIRECT)

    assert profile.provider == "oidc"
    assert profile.subject_external_id == "ext-42"
    assert profile.email == "fed@example.com"
    assert profile.display_name == "Fed User"


async def test_oidc_http_error_becomes_federation_error():
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant"})

    bridge = FederationBridge(_oidc(handler))
    with pytest.raises(FederationError) as exc:
        await bridge.exchange("bad-code", REDIRECT)
    assert exc.value.detail["status_code"] == 400


async def test_oidc_transport_error_becomes_federation_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    bridge = FederationBridge(_oidc(handler))
    with pytest.raises(FederationError):
        await bridge.exchange("good-code", REDIRECT)


async def test_token_response_without_access_token():
    def handler(request):
        return httpx.Response(200, json={"error": "invalid_request"})

    bridge = FederationBridge(_oidc(handler))
    with pytest.raises(FederationError):
        await bridge.exchange("good-code", REDIRECT)


async def test_timeout_becomes_federation_error():
    class SlowProvider(StaticCodeProvider):
        async def exchange_code(self, code, redirect_uri, code_verifier=None):
            await asyncio.sleep(1)

    bridge = FederationBridge(SlowProvider(), timeout=0.05)
    with pytest.raises(FederationError, match="timed out"):
        await bridge.exchange("anything", REDIRECT)


async def test_missing_email_is_rejected():
    def handler(request):
        if request.url.path == "/token":
            return httpx.Response(200, json={"access_token": "at"})
        return httpx.Response(200, json={"sub": "ext-9"})

    bridge = FederationBridge(_oidc(handler))
    with pytest.raises(FederationError, match="no email"):
        await bridge.exchange("good-code", REDIRECT)


async def test_github_private_email_fallback():
    def handler(request):
        if request.url.path.endswith("/access_token"):
            return httpx.Response(200, json={"access_token": "gh"})
        if str(request.url) == GITHUB_EMAILS_URL:
            return httpx.Response(
                200,
                json=[
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "main@example.com", "primary": True, "verified": True},
                ],
            )
        return httpx.Response(200, json={"id": 99, "email": None, "name": "Octo Cat"})

    settings = Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        federation_provider="github",
        oauth_github_client_id="id",
        oauth_github_client_secret="secret",
    )
    provider = build_federation_provider(settings, transport=httpx.MockTransport(handler))
    profile = await FederationBridge(provider).exchange("code", REDIRECT)

    assert profile.email == "main@example.com"
    assert profile.email_verified is True


async def test_state_round_trip_carries_pkce_verifier():
    seen = {}

    def handler(request):
        if request.url.path == "/token":
            seen.update(parse_qs(request.content.decode()))
        return _happy_handler(request)

    bridge = FederationBridge(_oidc(handler))
    started = await bridge.begin(REDIRECT)

    query = parse_qs(urlparse(started["authorization_url"]).query)
    assert query["state"] == [started["state"]]
    assert query["code_challenge_method"] == ["S256"]

    await bridge.exchange("good-code", REDIRECT, state=started["state"])
    assert seen["code_verifier"]

    # States are single use
    with pytest.raises(FederationError):
        await bridge.exchange("good-code", REDIRECT, state=started["state"])


async def test_state_rejects_mismatched_redirect(static_provider):
    bridge = FederationBridge(static_provider)
    started = await bridge.begin(REDIRECT)
    with pytest.raises(FederationError, match="redirect"):
        await bridge.exchange("code-1", "https://evil.example.com/cb", state=started["state"])


async def test_expired_state(static_provider):
    bridge = FederationBridge(static_provider, state_ttl=timedelta(seconds=-1))
    started = await bridge.begin(REDIRECT)
    with pytest.raises(FederationError):
        await bridge.exchange("code-1", REDIRECT, state=started["state"])


def test_cleanup_expired_states(static_provider):
    bridge = FederationBridge(static_provider, state_ttl=timedelta(seconds=-1))
    asyncio.run(bridge.begin(REDIRECT))
    assert bridge.cleanup_expired_states() == 1
    assert bridge.cleanup_expired_states() == 0


def test_build_provider_requires_configuration():
    base = {"jwt_secret": "Test-Secret-Key_for-Automation-Only-987654321!"}
    assert build_federation_provider(Settings(**base)) is None
    with pytest.raises(ConfigurationError):
        build_federation_provider(Settings(**base, federation_provider="google"))
    with pytest.raises(ConfigurationError):
        build_federation_provider(Settings(**base, federation_provider="oidc"))
    static = build_federation_provider(Settings(**base, federation_provider="static"))
    assert static.name == FederationKind.STATIC.value


async def test_callback_provisions_identity(federated_coordinator, memory_store):
    result = await federated_coordinator.process_federated_callback("code-1", REDIRECT)

    assert result.ok
    identity = memory_store.find_by_email("fed@example.com")
    assert identity is not None
    assert identity.federated_provider == "static"
    assert identity.federated_subject == "ext-1"
    actions = [e.action for _, e in sorted(memory_store.audit_entries.items())]
    assert actions == ["CREATE_FEDERATED_USER", "FEDERATED_LOGIN"]


async def test_callback_links_existing_identity(federated_coordinator, memory_store):
    existing = memory_store.create_identity("fed", email="FED@example.com")

    result = await federated_coordinator.process_federated_callback("code-1", REDIRECT)

    assert result.ok
    assert result.value.subject_id == existing.subject_id
    assert len(memory_store.identities) == 1


async def test_failed_callback_changes_nothing(federated_coordinator, memory_store):
    result = await federated_coordinator.process_federated_callback("unknown", REDIRECT)

    assert result.kind == ErrorKind.FEDERATION_ERROR
    assert memory_store.identities == {}
    assert memory_store.refresh_tokens == {}
    entries = list(memory_store.audit_entries.values())
    assert len(entries) == 1
    assert entries[0].action == "FEDERATED_LOGIN_FAILED"
    assert entries[0].category == AuditCategory.SECURITY
    assert entries[0].severity == AuditSeverity.HIGH


async def test_callback_for_disabled_identity(federated_coordinator, memory_store):
    existing = memory_store.create_identity("fed", email="fed@example.com")
    memory_store.set_identity_active(existing.subject_id, False)

    result = await federated_coordinator.process_federated_callback("code-1", REDIRECT)
    assert result.kind == ErrorKind.ACCOUNT_INACTIVE
    assert memory_store.refresh_tokens == {}


async def test_begin_without_federation(coordinator):
    result = await coordinator.begin_federated_login(REDIRECT)
    assert result.kind == ErrorKind.CONFIGURATION_ERROR


async def test_begin_returns_state(federated_coordinator):
    result = await federated_coordinator.begin_federated_login(REDIRECT)
    assert result.ok
    assert result.value["provider"] == "static"
    assert result.value["authorization_url"].startswith("static://authorize")


class UnavailableCache:
    async def set_oauth_state(self, state, payload, expires_at):
        raise RedisConnectionError("connection refused")

    async def pop_oauth_state(self, state):
        raise RedisConnectionError("connection refused")


def _coordinator_for(settings, memory_store, hasher, recorder, bridge):
    return AuthenticationCoordinator(
        settings,
        memory_store,
        memory_store,
        hasher=hasher,
        issuer=TokenIssuer(settings),
        audit=recorder,
        federation=bridge,
    )


async def test_unverified_email_cannot_claim_existing_account(
    federated_coordinator, memory_store, static_provider, identity
):
    static_provider.register_code(
        "code-claim",
        {"sub": "someone-else", "email": "u1@example.com", "email_verified": False},
    )

    result = await federated_coordinator.process_federated_callback("code-claim", REDIRECT)

    assert result.kind == ErrorKind.FEDERATION_ERROR
    assert memory_store.refresh_tokens == {}
    assert memory_store.get_identity(identity.subject_id).federated_subject is None
    failed = [
        e for e in memory_store.audit_entries.values() if e.action == "FEDERATED_LOGIN_FAILED"
    ]
    assert len(failed) == 1
    assert failed[0].subject_id == identity.subject_id
    assert failed[0].details["reason"] == "unverified_email_link"


async def test_unverified_email_signs_into_its_own_federated_account(
    federated_coordinator, memory_store, static_provider
):
    claims = {"sub": "ext-9", "email": "own@example.com", "email_verified": False}
    static_provider.register_code("code-own-1", claims)
    static_provider.register_code("code-own-2", claims)
    first = await federated_coordinator.process_federated_callback("code-own-1", REDIRECT)
    again = await federated_coordinator.process_federated_callback("code-own-2", REDIRECT)

    assert first.ok and again.ok
    assert again.value.subject_id == first.value.subject_id


async def test_unverified_profile_not_provisioned_when_verification_required(
    memory_store, hasher, recorder, static_provider
):
    settings = Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        require_verified_identity=True,
    )
    static_provider.register_code(
        "code-new", {"sub": "ext-7", "email": "new@example.com", "email_verified": False}
    )
    coordinator = _coordinator_for(
        settings, memory_store, hasher, recorder, FederationBridge(static_provider)
    )

    result = await coordinator.process_federated_callback("code-new", REDIRECT)

    assert result.kind == ErrorKind.UNVERIFIED_IDENTITY
    assert memory_store.identities == {}
    assert memory_store.refresh_tokens == {}


async def test_state_store_outage_is_a_federation_error(
    settings, memory_store, hasher, recorder, static_provider
):
    bridge = FederationBridge(static_provider, cache=UnavailableCache())
    coordinator = _coordinator_for(settings, memory_store, hasher, recorder, bridge)

    with pytest.raises(FederationError):
        await bridge.begin(REDIRECT)
    begun = await coordinator.begin_federated_login(REDIRECT)
    result = await coordinator.process_federated_callback("code-1", REDIRECT, state="s-1")

    assert begun.kind == ErrorKind.FEDERATION_ERROR
    assert result.kind == ErrorKind.FEDERATION_ERROR
    assert memory_store.identities == {}
    actions = [e.action for e in memory_store.audit_entries.values()]
    assert actions == ["FEDERATED_LOGIN_FAILED"]
