from __future__ import annotations

import asyncio
import base64
import hashlib
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol, Tuple, Union
from urllib.parse import urlencode

import httpx
from redis.exceptions import RedisError

from trustcore.config import FederationKind, Settings
from trustcore.logging import get_logger
from trustcore.service.errors import ConfigurationError, FederationError
from trustcore.storage.models import FederatedProfile, ProviderTokens
from trustcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}

GITHUB_EMAILS_URL = "https://api.github.com/user/emails"


class FederationProvider(Protocol):
    name: str

    def authorization_url(
        self, redirect_uri: str, state: str, code_challenge: Optional[str] = None
    ) -> str: ...

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: Optional[str] = None
    ) -> ProviderTokens: ...

    async def fetch_user_info(self, access_token: str) -> FederatedProfile: ...


def _split_name(full_name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not full_name:
        return None, None
    parts = full_name.strip().split(" ", 1)
    return parts[0] or None, (parts[1] if len(parts) > 1 else None)


def parse_userinfo(provider: str, userinfo: Dict[str, Any]) -> FederatedProfile:
    """Map a provider's userinfo document onto a ``FederatedProfile``.

    The email may come back empty; callers decide whether that is fatal.
    """
    if provider == "google":
        uid = userinfo.get("id") or userinfo.get("sub")
        email = userinfo.get("email")
        verified = bool(userinfo.get("verified_email", userinfo.get("email_verified")))
        given, family = userinfo.get("given_name"), userinfo.get("family_name")
    elif provider == "github":
        uid = userinfo.get("id")
        email = userinfo.get("email")
        # GitHub only exposes a public email; treat it as unverified
        verified = False
        given, family = _split_name(userinfo.get("name"))
    elif provider == "microsoft":
        uid = userinfo.get("id")
        email = userinfo.get("mail") or userinfo.get("userPrincipalName")
        verified = False
        given, family = userinfo.get("givenName"), userinfo.get("surname")
    else:
        uid = userinfo.get("sub") or userinfo.get("id")
        email = userinfo.get("email")
        verified = bool(userinfo.get("email_verified"))
        given, family = userinfo.get("given_name"), userinfo.get("family_name")
    if not uid:
        raise FederationError(
            "provider profile has no subject", detail={"provider": provider}
        )
    return FederatedProfile(
        provider=provider,
        subject_external_id=str(uid),
        email=email or "",
        email_verified=verified,
        given_name=given,
        family_name=family,
    )


class OIDCProvider:
    """Authorization-code provider speaking plain OAuth2/OIDC over httpx."""

    def __init__(
        self,
        name: str,
        *,
        client_id: str,
        client_secret: str,
        auth_url: str,
        token_url: str,
        userinfo_url: str,
        scope: str = "openid email profile",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.client_id = client_id
        self.client_secret = client_secret
        self.auth_url = auth_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.scope = scope
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def authorization_url(
        self, redirect_uri: str, state: str, code_challenge: Optional[str] = None
    ) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        if self.name == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return f"{self.auth_url}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: Optional[str] = None
    ) -> ProviderTokens:
        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        if code_verifier:
            token_data["code_verifier"] = code_verifier
        async with self._client() as client:
            response = await client.post(
                self.token_url, data=token_data, headers={"Accept": "application/json"}
            )
            response.raise_for_status()
            try:
                result = response.json()
            except ValueError as exc:
                raise FederationError(
                    "token response was not JSON", detail={"provider": self.name}
                ) from exc
        access_token = result.get("access_token") if isinstance(result, dict) else None
        if not access_token:
            raise FederationError(
                "token response had no access token",
                detail={"provider": self.name, "error": (result or {}).get("error")},
            )
        return ProviderTokens(access_token=access_token, id_token=result.get("id_token"))

    async def fetch_user_info(self, access_token: str) -> FederatedProfile:
        headers = {"Authorization": f"Bearer {access_token}"}
        # GitHub requires a special header
        if self.name == "github":
            headers["Accept"] = "application/vnd.github+json"
        async with self._client() as client:
            response = await client.get(self.userinfo_url, headers=headers)
            response.raise_for_status()
            try:
                userinfo = response.json()
            except ValueError as exc:
                raise FederationError(
                    "userinfo response was not JSON", detail={"provider": self.name}
                ) from exc
            if not isinstance(userinfo, dict):
                raise FederationError(
                    "userinfo response has an invalid format",
                    detail={"provider": self.name},
                )
            profile = parse_userinfo(self.name, userinfo)

            # GitHub hides private emails from /user
            if self.name == "github" and not profile.email:
                emails_response = await client.get(GITHUB_EMAILS_URL, headers=headers)
                if emails_response.status_code == 200:
                    emails = emails_response.json()
                    primary = next(
                        (
                            e["email"]
                            for e in emails
                            if isinstance(e, dict) and e.get("primary") and e.get("verified")
                        ),
                        None,
                    )
                    if primary:
                        profile.email = primary
                        profile.email_verified = True
        return profile


class StaticCodeProvider:
    """Serves pre-registered authorization codes; for tests and offline use."""

    name = FederationKind.STATIC.value

    def __init__(self) -> None:
        self._codes: Dict[str, FederatedProfile] = {}
        self._tokens: Dict[str, FederatedProfile] = {}
        self._lock = threading.Lock()

    def register_code(
        self, code: str, profile: Union[FederatedProfile, Dict[str, Any]]
    ) -> None:
        if isinstance(profile, dict):
            profile = parse_userinfo(self.name, profile)
        with self._lock:
            self._codes[code] = profile

    def authorization_url(
        self, redirect_uri: str, state: str, code_challenge: Optional[str] = None
    ) -> str:
        params = {"redirect_uri": redirect_uri, "state": state}
        if code_challenge:
            params["code_challenge"] = code_challenge
        return f"static://authorize?{urlencode(params)}"

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: Optional[str] = None
    ) -> ProviderTokens:
        with self._lock:
            profile = self._codes.pop(code, None)
            if profile is None:
                raise FederationError("unknown authorization code")
            access_token = secrets.token_urlsafe(24)
            self._tokens[access_token] = profile
        return ProviderTokens(access_token=access_token)

    async def fetch_user_info(self, access_token: str) -> FederatedProfile:
        with self._lock:
            profile = self._tokens.pop(access_token, None)
        if profile is None:
            raise FederationError("unknown provider access token")
        return profile


def build_federation_provider(
    settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Optional[FederationProvider]:
    """Select the configured provider variant, or None when federation is off."""
    kind = settings.federation_provider
    if kind is None:
        return None
    kind = FederationKind(kind)
    timeout = settings.federation_timeout_seconds
    if kind is FederationKind.STATIC:
        return StaticCodeProvider()
    if kind is FederationKind.OIDC:
        missing = [
            name
            for name in (
                "oidc_client_id",
                "oidc_client_secret",
                "oidc_authorize_url",
                "oidc_token_url",
                "oidc_userinfo_url",
            )
            if not getattr(settings, name)
        ]
        if missing:
            raise ConfigurationError(
                "OIDC provider is not fully configured", detail={"missing": missing}
            )
        return OIDCProvider(
            kind.value,
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            auth_url=settings.oidc_authorize_url,
            token_url=settings.oidc_token_url,
            userinfo_url=settings.oidc_userinfo_url,
            scope=settings.oidc_scope,
            timeout=timeout,
            transport=transport,
        )
    client_id = getattr(settings, f"oauth_{kind.value}_client_id")
    client_secret = getattr(settings, f"oauth_{kind.value}_client_secret")
    if not client_id or not client_secret:
        logger.warning("oauth_not_configured", provider=kind.value)
        raise ConfigurationError(
            f"OAuth provider {kind.value} is not configured",
            detail={"provider": kind.value},
        )
    endpoints = OAUTH_PROVIDERS[kind.value]
    return OIDCProvider(
        kind.value,
        client_id=client_id,
        client_secret=client_secret,
        auth_url=endpoints["auth_url"],
        token_url=endpoints["token_url"],
        userinfo_url=endpoints["userinfo_url"],
        scope=endpoints["scope"],
        timeout=timeout,
        transport=transport,
    )


def _code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _state_store_unavailable(exc: Exception) -> FederationError:
    logger.error("federation_state_store_unavailable", error_type=type(exc).__name__)
    return FederationError("federation state store unavailable")


class FederationBridge:
    """Turns an authorization code into verified federated identity claims.

    Every failure mode (bad code, provider error, timeout, missing email,
    stale state) surfaces as ``FederationError``.
    """

    def __init__(
        self,
        provider: FederationProvider,
        *,
        timeout: float = 10.0,
        cache: Optional[RedisCache] = None,
        state_ttl: timedelta = timedelta(minutes=10),
    ) -> None:
        self.provider = provider
        self.timeout = timeout
        self.cache = cache
        self.state_ttl = state_ttl
        self._states: Dict[str, Tuple[Dict[str, Any], datetime]] = {}
        self._state_lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [s for s, (_, exp) in self._states.items() if exp <= now]
            for state in expired:
                self._states.pop(state, None)
        return len(expired)

    async def begin(self, redirect_uri: str) -> Dict[str, str]:
        if not redirect_uri:
            raise FederationError("redirect URI is required")
        self.cleanup_expired_states()
        state = secrets.token_urlsafe(24)
        verifier = secrets.token_urlsafe(48)
        expires_at = self._now() + self.state_ttl
        payload = {
            "provider": self.provider.name,
            "redirect_uri": redirect_uri,
            "code_verifier": verifier,
        }
        if self.cache:
            try:
                await self.cache.set_oauth_state(state, payload, expires_at)
            except (RedisError, OSError) as exc:
                raise _state_store_unavailable(exc) from exc
        else:
            with self._state_lock:
                self._states[state] = (payload, expires_at)
        return {
            "authorization_url": self.provider.authorization_url(
                redirect_uri, state, _code_challenge(verifier)
            ),
            "state": state,
            "provider": self.provider.name,
        }

    async def _consume_state(self, state: str) -> Dict[str, Any]:
        if self.cache:
            try:
                payload = await self.cache.pop_oauth_state(state)
            except (RedisError, OSError) as exc:
                raise _state_store_unavailable(exc) from exc
            expires_at = None
            if payload and isinstance(payload.get("expires_at"), str):
                expires_at = datetime.fromisoformat(payload["expires_at"])
        else:
            with self._state_lock:
                stored = self._states.pop(state, None)
            payload, expires_at = stored if stored else (None, None)
        if not payload:
            raise FederationError("unknown or already used federation state")
        if expires_at and expires_at <= self._now():
            raise FederationError("federation state expired")
        if payload.get("provider") != self.provider.name:
            raise FederationError("federation state belongs to another provider")
        return payload

    async def _exchange(
        self, code: str, redirect_uri: str, code_verifier: Optional[str]
    ) -> FederatedProfile:
        tokens = await self.provider.exchange_code(code, redirect_uri, code_verifier)
        return await self.provider.fetch_user_info(tokens.access_token)

    async def exchange(
        self, code: str, redirect_uri: str, *, state: Optional[str] = None
    ) -> FederatedProfile:
        provider = self.provider.name
        if not code:
            raise FederationError("authorization code is required")
        code_verifier = None
        if state is not None:
            payload = await self._consume_state(state)
            if payload.get("redirect_uri") != redirect_uri:
                raise FederationError("redirect URI does not match federation state")
            code_verifier = payload.get("code_verifier")
        try:
            profile = await asyncio.wait_for(
                self._exchange(code, redirect_uri, code_verifier), self.timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning("federation_timeout", provider=provider, timeout=self.timeout)
            raise FederationError(
                "federation provider timed out", detail={"provider": provider}
            ) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "federation_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise FederationError(
                "federation provider rejected the request",
                detail={"provider": provider, "status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("federation_transport_error", provider=provider, error=str(exc))
            raise FederationError(
                "federation provider unreachable", detail={"provider": provider}
            ) from exc
        if not profile.email:
            raise FederationError(
                "federated profile has no email", detail={"provider": provider}
            )
        logger.info(
            "federation_exchange_success",
            provider=provider,
            subject_external_id=profile.subject_external_id,
        )
        return profile
